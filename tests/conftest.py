import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Keep the module-level app's settings and log file out of the working tree.
os.environ.setdefault("ORCHESTRATOR_DATA_DIR", tempfile.mkdtemp(prefix="orchestrator-test-"))

from orchestrator.llm import CompletionError  # noqa: E402
from orchestrator.storage import LocalStore  # noqa: E402


class FakeUpstream:
    """Stands in for a streamed requests.Response from the completion service."""

    def __init__(self, lines: Iterable[Any], fail_after: Optional[int] = None) -> None:
        self.lines = list(lines)
        self.fail_after = fail_after
        self.status_code = 200
        self.closed = False

    def iter_lines(self) -> Iterator[Any]:
        for index, line in enumerate(self.lines):
            if self.fail_after is not None and index >= self.fail_after:
                raise ConnectionError("upstream dropped")
            yield line

    def close(self) -> None:
        self.closed = True


class EndlessUpstream(FakeUpstream):
    def __init__(self) -> None:
        super().__init__([])

    def iter_lines(self) -> Iterator[Any]:
        while not self.closed:
            yield b'{"response": "tick"}'


class FakeCompletionClient:
    def __init__(
        self,
        reply: str = "ok",
        lines: Optional[List[Any]] = None,
        fail: bool = False,
        healthy: bool = True,
    ) -> None:
        self.reply = reply
        self.lines = lines or []
        self.fail = fail
        self._healthy = healthy
        self.prompts: List[str] = []
        self.upstreams: List[FakeUpstream] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail:
            raise CompletionError("Completion service returned 500")
        return self.reply

    def open_stream(self, prompt: str) -> FakeUpstream:
        self.prompts.append(prompt)
        if self.fail:
            raise CompletionError("Completion service unreachable")
        upstream = FakeUpstream(self.lines)
        self.upstreams.append(upstream)
        return upstream

    def healthy(self) -> bool:
        return self._healthy


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "store.json"


@pytest.fixture
def store(store_path: Path) -> LocalStore:
    return LocalStore(store_path)


@pytest.fixture
def completion_factory() -> Callable[..., FakeCompletionClient]:
    return FakeCompletionClient


@pytest.fixture
def upstream_factory() -> Callable[..., FakeUpstream]:
    return FakeUpstream


@pytest.fixture
def endless_upstream() -> EndlessUpstream:
    return EndlessUpstream()
