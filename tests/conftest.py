"""Shared fakes for the store, auth, generation provider and notifier."""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from chat_state_sync.config import Settings
from chat_state_sync.domain.models import User
from chat_state_sync.repositories.memory import InMemoryDatabase, InMemoryTable
from chat_state_sync.services.auth import StaticAuthProvider
from chat_state_sync.services.conversation_store import ConversationStore
from chat_state_sync.services.llm import ChatTurn, GenerationProvider, GenerationResult
from chat_state_sync.services.notifications import Notifier, Severity

USER = User(id="user-1", email="user@example.com")


class StoreUnavailable(Exception):
    pass


class FlakyTable(InMemoryTable):
    """In-memory table that records calls and fails on demand.

    ``fail`` maps an operation name to the 1-based call numbers that raise;
    an empty tuple means every call raises.
    """

    def __init__(self, name: str, timestamp_fields: tuple = (), journal: Optional[list] = None) -> None:
        super().__init__(name, timestamp_fields)
        self.journal = journal if journal is not None else []
        self.calls: List[Tuple[str, Any]] = []
        self.fail: Dict[str, Tuple[int, ...]] = {}
        self._counts: Dict[str, int] = {}

    def _check(self, op: str, arg: Any) -> None:
        self._counts[op] = self._counts.get(op, 0) + 1
        self.calls.append((op, arg))
        self.journal.append((self.name, op, arg))
        if op in self.fail:
            numbers = self.fail[op]
            if not numbers or self._counts[op] in numbers:
                raise StoreUnavailable(f"{self.name}.{op} unavailable")

    async def list(self, where=None, order_by=None, descending=False, limit=None):
        self._check("list", dict(where or {}))
        return await super().list(where, order_by, descending, limit)

    async def create(self, record):
        self._check("create", record.id)
        return await super().create(record)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        self._check("update", record_id)
        await super().update(record_id, fields)

    async def delete(self, record_id: str) -> None:
        self._check("delete", record_id)
        await super().delete(record_id)

    def ops(self, op: str) -> List[Any]:
        return [arg for name, arg in self.calls if name == op]


class FlakyDatabase(InMemoryDatabase):
    def __init__(self) -> None:
        super().__init__()
        self.journal: List[Tuple[str, str, Any]] = []
        self._conversations = FlakyTable("conversations", ("created_at", "updated_at"), self.journal)
        self._messages = FlakyTable("messages", ("timestamp",), self.journal)

    def go_offline(self) -> None:
        for table in (self._conversations, self._messages):
            for op in ("list", "create", "update", "delete"):
                table.fail[op] = ()


class ScriptedProvider(GenerationProvider):
    """Replays fixed chunks; can fail, pause, or return sources."""

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", " there"),
        sources: Sequence[str] = (),
        fail_after: Optional[int] = None,
        final_text: Optional[str] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.sources = list(sources)
        self.fail_after = fail_after
        self.final_text = final_text
        self.requests: List[List[ChatTurn]] = []
        self.searches: List[bool] = []
        self.gate: Optional[asyncio.Event] = None
        # Only this request number (0-based) waits on the gate; None gates all.
        self.gate_request: Optional[int] = None
        self.last_callback = None
        self.started = asyncio.Event()

    async def stream_text(self, messages, on_chunk, *, search=True, cancel_event=None):
        request_number = len(self.requests)
        self.requests.append(list(messages))
        self.last_callback = on_chunk
        self.searches.append(search)
        self.started.set()
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise RuntimeError("generation backend down")
            gated = self.gate_request is None or self.gate_request == request_number
            if self.gate is not None and gated and index == 1:
                await self.gate.wait()
            await asyncio.sleep(0)
            on_chunk(chunk)
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise RuntimeError("generation backend down")
        text = self.final_text if self.final_text is not None else "".join(self.chunks)
        return GenerationResult(text=text, sources=self.sources)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.notifications: List[Tuple[str, str, Severity]] = []

    def notify(self, title: str, description: str, severity: Severity = Severity.NORMAL) -> None:
        self.notifications.append((title, description, severity))

    @property
    def titles(self) -> List[str]:
        return [title for title, _, _ in self.notifications]


@pytest.fixture
def settings() -> Settings:
    return Settings(gemini_api_key=None, local_user_id=None)


@pytest.fixture
def database() -> FlakyDatabase:
    return FlakyDatabase()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_store(database, provider, notifier, settings):
    """Build a store; ``authenticated`` picks the auth provider's answer."""

    def factory(authenticated: bool = True, **overrides) -> ConversationStore:
        return ConversationStore(
            database=overrides.get("database", database),
            auth=StaticAuthProvider(USER if authenticated else None),
            provider=overrides.get("provider", provider),
            notifier=overrides.get("notifier", notifier),
            settings=overrides.get("settings", settings),
        )

    return factory
