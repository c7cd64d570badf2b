from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from bridge.schemas import AgentResponse  # noqa: E402


class FakeAgentStream:
    """Scripted stand-in for a Dialogflow stream.

    Tests push responses (or exceptions) with ``push``; ``end`` finishes the
    response stream the way Dialogflow does after a single-utterance turn.
    """

    def __init__(self, *, first_turn: bool) -> None:
        self.first_turn = first_turn
        self.chunks: list[bytes] = []
        self.half_closed = False
        self.close_calls = 0
        self._script: asyncio.Queue = asyncio.Queue()

    @property
    def send_closed(self) -> bool:
        return self.half_closed or self.close_calls > 0

    async def write(self, chunk: bytes) -> bool:
        if self.send_closed:
            return False
        self.chunks.append(chunk)
        return True

    def half_close(self) -> None:
        self.half_closed = True

    def close(self) -> None:
        self.close_calls += 1
        self._script.put_nowait(None)

    def push(self, item: AgentResponse | BaseException) -> None:
        self._script.put_nowait(item)

    def end(self) -> None:
        self._script.put_nowait(None)

    async def responses(self):
        while True:
            item = await self._script.get()
            if item is None:
                return
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeAgentFactory:
    def __init__(self, *, fail_with: BaseException | None = None) -> None:
        self.streams: list[FakeAgentStream] = []
        self.opened: list[tuple[str, bool]] = []
        self._fail_with = fail_with

    async def open(self, session_id: str, *, first_turn: bool) -> FakeAgentStream:
        self.opened.append((session_id, first_turn))
        if self._fail_with is not None:
            raise self._fail_with
        stream = FakeAgentStream(first_turn=first_turn)
        self.streams.append(stream)
        return stream


class FakeCallController:
    def __init__(self) -> None:
        self.calls: list[tuple[str | None, object]] = []

    async def end_interaction(self, call_sid, query_result) -> bool:
        self.calls.append((call_sid, query_result))
        return True


@pytest.fixture()
def agent_factory() -> FakeAgentFactory:
    return FakeAgentFactory()


@pytest.fixture(scope="session")
def app():
    import importlib

    for module_name in [
        "config.settings",
        "api.dependencies",
        "api.twilio_routes",
        "api.routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app
