"""Shared fixtures and fakes for the test suite."""

from types import SimpleNamespace

import pytest

from storage.DatabaseProvider import DatabaseProvider
from storage.MemoryStorage import MemoryStorage
from storage.SqliteStorage import SqliteStorage

# 15 s into a minute-aligned window, so a fresh window resets 45 s later.
WINDOW_START_MS = 1_700_000_040_000
START_MS = WINDOW_START_MS + 15_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeChatClient:
    """Quacks like ``openai.OpenAI`` for ``chat.completions.create``."""

    def __init__(self, reply: str = "Hello from the character!", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, model, messages, stream=False):
        self.calls.append({"model": model, "messages": messages, "stream": stream})
        if self.error is not None:
            raise self.error
        if stream:
            chunks = [self.reply[i:i + 5] for i in range(0, len(self.reply), 5)]
            return iter(
                SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=chunk))])
                for chunk in chunks
            )
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.reply))]
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def sqlite_storage():
    provider = DatabaseProvider()
    yield SqliteStorage(provider.get_connection())
    provider.close()


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Every storage backend, so port behaviour is checked on both."""
    if request.param == "memory":
        yield MemoryStorage()
        return
    provider = DatabaseProvider()
    yield SqliteStorage(provider.get_connection())
    provider.close()
