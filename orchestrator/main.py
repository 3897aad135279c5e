from __future__ import annotations

import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.concurrency import run_in_threadpool

from .llm import CompletionClient, CompletionError, Turn, build_prompt, parse_turns
from .relay import StreamRelay
from .settings import SettingsManager
from .storage import new_id, utcnow

DATA_DIR = Path(os.environ.get("ORCHESTRATOR_DATA_DIR", "data"))
LOG_FILE = DATA_DIR / "server.log"
SETTINGS_PATH = DATA_DIR / "settings.json"


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger("orchestrator")
    if logger.handlers:
        return logger
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", LOG_FILE)
    return logger


logger = _configure_logging()


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _parse_relay_request(body: Any) -> Tuple[List[Turn], Optional[List[Dict[str, Any]]], Optional[str]]:
    """
    Extract the turns, optional task context and conversation id from a relay body.

    A bare ``prompt`` is treated as a single user turn.
    """
    if not isinstance(body, dict):
        return [], None, None
    turns = parse_turns(body.get("messages"))
    if not turns:
        prompt = body.get("prompt")
        if isinstance(prompt, str) and prompt.strip():
            turns = [Turn(role="user", content=prompt)]
    tasks = body.get("tasks")
    task_context = None
    if body.get("includeTasks") and isinstance(tasks, list):
        task_context = [task for task in tasks if isinstance(task, dict)]
    conversation_id = body.get("conversationId")
    return turns, task_context, conversation_id if isinstance(conversation_id, str) else None


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


class TaskList:
    """
    In-memory fallback task list served by the /tasks endpoints.
    """

    def __init__(self) -> None:
        self._tasks: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(task) for task in self._tasks]

    def create(self, task: Dict[str, Any]) -> Dict[str, Any]:
        record = {
            "text": str(task.get("text", "")),
            "completed": bool(task.get("completed", False)),
            "createdAt": task.get("createdAt") or utcnow(),
            "id": new_id(),
        }
        with self._lock:
            self._tasks.append(record)
        return dict(record)

    def toggle(self, task_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            for record in self._tasks:
                if record["id"] == task_id:
                    record["completed"] = not record["completed"]
                    return dict(record)
        return None

    def delete(self, task_id: str) -> bool:
        with self._lock:
            for index, record in enumerate(self._tasks):
                if record["id"] == task_id:
                    del self._tasks[index]
                    return True
        return False


def create_app(
    settings_manager: Optional[SettingsManager] = None,
    completion_client: Optional[CompletionClient] = None,
) -> FastAPI:
    settings_manager = settings_manager or SettingsManager(SETTINGS_PATH)
    task_list = TaskList()
    app = FastAPI(title="Task Orchestrator")
    relay_logger = logging.getLogger("orchestrator.relay")

    def _client() -> CompletionClient:
        if completion_client is not None:
            return completion_client
        config = settings_manager.completion
        return CompletionClient(
            base_url=config["base_url"],
            model=config["model"],
            timeout=config.get("timeout"),
        )

    def _prompt(system_key: str, turns: List[Turn], tasks: Optional[List[Dict[str, Any]]]) -> str:
        settings = settings_manager.settings
        return build_prompt(
            settings[system_key],
            turns,
            tasks,
            max_tasks=int(settings.get("max_context_tasks", 20)),
        )

    @app.post("/llm")
    async def llm(request: Request) -> JSONResponse:
        turns, tasks, conversation_id = _parse_relay_request(await _read_json(request))
        if not turns:
            return _error("Messages required", status.HTTP_400_BAD_REQUEST)
        conversation_id = conversation_id or new_id()
        prompt = _prompt("system_prompt", turns, tasks)
        client = _client()
        try:
            text = await run_in_threadpool(client.generate, prompt)
        except CompletionError as exc:
            relay_logger.error("LLM request failed for %s: %s", conversation_id, exc)
            return _error("LLM request failed", status.HTTP_502_BAD_GATEWAY)
        relay_logger.info(
            "Completed buffered request for %s (turns=%d tasks=%d)",
            conversation_id,
            len(turns),
            len(tasks or ()),
        )
        return JSONResponse(
            {
                "conversationId": conversation_id,
                "text": text,
                "message": {"role": "assistant", "content": text},
            }
        )

    @app.post("/llm/stream")
    async def llm_stream(request: Request) -> Response:
        turns, tasks, conversation_id = _parse_relay_request(await _read_json(request))
        if not turns:
            return _error("Messages required", status.HTTP_400_BAD_REQUEST)
        prompt = _prompt("stream_system_prompt", turns, tasks)
        client = _client()
        try:
            upstream = await run_in_threadpool(client.open_stream, prompt)
        except CompletionError as exc:
            relay_logger.error("Upstream stream failed for %s: %s", conversation_id, exc)
            return Response(
                "Upstream error",
                status_code=status.HTTP_502_BAD_GATEWAY,
                media_type="text/plain",
            )
        relay = StreamRelay(
            upstream, max_pending=int(settings_manager.settings.get("stream_buffer", 64))
        )
        relay_logger.info("Streaming reply for %s (turns=%d)", conversation_id, len(turns))
        return StreamingResponse(relay.stream(), media_type="text/plain; charset=utf-8")

    @app.get("/tasks")
    async def list_tasks() -> JSONResponse:
        return JSONResponse(task_list.all())

    @app.post("/tasks")
    async def change_task(request: Request) -> JSONResponse:
        body = await _read_json(request)
        if not isinstance(body, dict) or not isinstance(body.get("task"), dict):
            return _error("Invalid request", status.HTTP_400_BAD_REQUEST)
        action = body.get("action")
        if action == "create":
            record = task_list.create(body["task"])
            logger.info("Created task %s", record["id"])
            return JSONResponse(record)
        if action == "toggle":
            record = task_list.toggle(body["task"].get("id"))
            if record is None:
                return _error("Task not found", status.HTTP_404_NOT_FOUND)
            return JSONResponse(record)
        return _error("Invalid action", status.HTTP_400_BAD_REQUEST)

    @app.delete("/tasks")
    async def delete_task(task_id: Optional[str] = Query(default=None, alias="id")) -> JSONResponse:
        if not task_id:
            return _error("Task ID required", status.HTTP_400_BAD_REQUEST)
        if not task_list.delete(task_id):
            return _error("Task not found", status.HTTP_404_NOT_FOUND)
        logger.info("Deleted task %s", task_id)
        return JSONResponse({"success": True})

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"ok": True, "timestamp": utcnow()})

    @app.get("/health/llm")
    async def llm_health() -> JSONResponse:
        ok = await run_in_threadpool(_client().healthy)
        state = "ok" if ok else "warn"
        label = "LLM Connected" if ok else "LLM Offline"
        return JSONResponse({"status": state, "label": label})

    return app


app = create_app()

# Convenience include for uvicorn.
__all__ = ["app", "create_app"]
