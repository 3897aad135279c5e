from __future__ import annotations

import codecs
import logging
import threading
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests

logger = logging.getLogger("orchestrator.client")


class RelayError(RuntimeError):
    """Raised when the relay cannot be reached or reports a failure."""


class StreamCancelled(Exception):
    """Raised when a streamed request is aborted by its caller."""


class RelayClient:
    """
    HTTP client for the relay endpoints, used by the chat session.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _body(
        self,
        messages: Sequence[Dict[str, str]],
        tasks: Optional[Sequence[Dict[str, Any]]],
        conversation_id: Optional[str],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"messages": list(messages)}
        if tasks is not None:
            body["includeTasks"] = True
            body["tasks"] = list(tasks)
        if conversation_id:
            body["conversationId"] = conversation_id
        return body

    def ping(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=3)
        except requests.RequestException:
            return False
        return response.status_code < 400

    def complete(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        tasks: Optional[Sequence[Dict[str, Any]]] = None,
        conversation_id: Optional[str] = None,
    ) -> str:
        try:
            response = self.session.post(
                f"{self.base_url}/llm",
                json=self._body(messages, tasks, conversation_id),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RelayError("LLM request failed.") from exc
        if response.status_code >= 400:
            raise RelayError(f"LLM request failed with status {response.status_code}.")
        try:
            data = response.json()
        except ValueError as exc:
            raise RelayError("LLM request failed: malformed response.") from exc
        message = data.get("message") or {}
        return message.get("content") or data.get("text") or ""

    def stream(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        tasks: Optional[Sequence[Dict[str, Any]]] = None,
        conversation_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """
        Yield text chunks from the streaming endpoint as they arrive.

        Setting ``cancel`` aborts the underlying response and raises StreamCancelled,
        even while the read is blocked waiting for the first byte.
        """
        try:
            response = self.session.post(
                f"{self.base_url}/llm/stream",
                json=self._body(messages, tasks, conversation_id),
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RelayError("Stream failed.") from exc
        finished = threading.Event()
        if cancel is not None:
            threading.Thread(
                target=_close_on_cancel, args=(cancel, finished, response), daemon=True
            ).start()
        try:
            if response.status_code >= 400:
                raise RelayError(f"Stream failed with status {response.status_code}.")
            decoder = codecs.getincrementaldecoder("utf-8")("replace")
            for chunk in response.iter_content(chunk_size=None):
                if cancel is not None and cancel.is_set():
                    raise StreamCancelled()
                text = decoder.decode(chunk)
                if text:
                    yield text
            if cancel is not None and cancel.is_set():
                raise StreamCancelled()
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
        except (StreamCancelled, RelayError):
            raise
        except requests.RequestException as exc:
            if cancel is not None and cancel.is_set():
                raise StreamCancelled() from exc
            raise RelayError("Stream failed.") from exc
        except Exception as exc:
            # Closing a response mid-read surfaces as whatever the transport raises.
            if cancel is not None and cancel.is_set():
                raise StreamCancelled() from exc
            raise
        finally:
            finished.set()
            response.close()


def _close_on_cancel(cancel: threading.Event, finished: threading.Event, response: Any) -> None:
    while not finished.is_set():
        if cancel.wait(0.05):
            if not finished.is_set():
                logger.debug("Stream cancelled, closing response.")
                response.close()
            return


def turns_from(messages: Sequence[Any]) -> List[Dict[str, str]]:
    return [message.to_turn() for message in messages]
