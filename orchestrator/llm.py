from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Union

import requests

MAX_CONTEXT_TASKS = 20
EMPTY_COMPLETION = "No response from LLM"

ROLE_LABELS = {"assistant": "Assistant", "user": "User"}

logger = logging.getLogger("orchestrator.llm")


class CompletionError(RuntimeError):
    """Raised when the completion service is unreachable or returns an error."""


@dataclass
class Turn:
    role: str
    content: str


def render_history(turns: Sequence[Turn]) -> str:
    return "\n\n".join(
        f"{ROLE_LABELS.get(turn.role, 'System')}: {turn.content}" for turn in turns
    )


def render_task_context(tasks: Sequence[Dict[str, Any]], limit: int = MAX_CONTEXT_TASKS) -> str:
    lines = [
        f"- [{'x' if task.get('completed') else ' '}] {task.get('text', '')}"
        for task in list(tasks)[:limit]
    ]
    return "\n\nCurrent tasks:\n" + "\n".join(lines)


def build_prompt(
    system: str,
    turns: Sequence[Turn],
    tasks: Optional[Sequence[Dict[str, Any]]] = None,
    *,
    max_tasks: int = MAX_CONTEXT_TASKS,
) -> str:
    """
    Flatten the system instruction, the role-labelled history and an optional
    checklist of tasks into the single prompt sent to the completion service.
    """
    prompt = f"System: {system}\n\n{render_history(turns)}"
    if tasks is not None:
        prompt += render_task_context(tasks, max_tasks)
    return prompt


def decode_frames(lines: Iterable[Union[bytes, str]]) -> Iterator[str]:
    """
    Yield the text delta of each line-delimited JSON frame. Lines that are
    blank, not JSON, or carry no text are skipped.
    """
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = raw.strip()
        if not line:
            continue
        try:
            frame = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Dropping malformed stream frame: %.80s", line)
            continue
        if not isinstance(frame, dict):
            continue
        delta = frame.get("response")
        if isinstance(delta, str) and delta:
            yield delta


class CompletionClient:
    """
    Minimal HTTP client for an Ollama-compatible generate endpoint.
    """

    def __init__(self, base_url: str, model: str, timeout: Optional[float] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @property
    def generate_url(self) -> str:
        return f"{self.base_url}/api/generate"

    def _payload(self, prompt: str, stream: bool) -> Dict[str, Any]:
        return {"model": self.model, "prompt": prompt, "stream": stream}

    def generate(self, prompt: str) -> str:
        try:
            response = requests.post(
                self.generate_url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(self._payload(prompt, stream=False)),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CompletionError(f"Completion service unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise CompletionError(
                f"Completion service returned {response.status_code}: {response.text}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionError("Failed to decode completion response as JSON.") from exc
        text = data.get("response") if isinstance(data, dict) else None
        return text or EMPTY_COMPLETION

    def open_stream(self, prompt: str) -> requests.Response:
        """
        Start a streamed generation and return the open response.

        The caller owns the response and must close it.
        """
        try:
            response = requests.post(
                self.generate_url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(self._payload(prompt, stream=True)),
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CompletionError(f"Completion service unreachable: {exc}") from exc
        if response.status_code >= 400:
            response.close()
            raise CompletionError(f"Completion service returned {response.status_code}")
        return response

    def healthy(self) -> bool:
        try:
            response = requests.get(f"{self.base_url}/api/version", timeout=3)
        except requests.RequestException:
            return False
        return response.status_code < 400


def parse_turns(messages: Any) -> List[Turn]:
    turns: List[Turn] = []
    if not isinstance(messages, list):
        return turns
    for item in messages:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if content is None:
            continue
        turns.append(Turn(role=str(item.get("role") or "user"), content=str(content)))
    return turns
