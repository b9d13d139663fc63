"""In-memory store implementation."""

import asyncio
from typing import Any, Dict, Generic, List, Mapping, Optional

import structlog

from ..domain.records import ConversationRecord, MessageRecord
from ..domain.models import utcnow
from .base import Database, RecordT, Table

logger = structlog.get_logger()


class InMemoryTable(Table[RecordT], Generic[RecordT]):
    """Coroutine-safe in-memory table keeping records as plain dicts."""

    def __init__(self, name: str, timestamp_fields: tuple = ()) -> None:
        self.name = name
        self._timestamp_fields = timestamp_fields
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def list(
        self,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List records, filtering on exact field equality."""
        async with self._lock:
            rows = [
                dict(row)
                for row in self._rows.values()
                if all(row.get(key) == value for key, value in (where or {}).items())
            ]
        if order_by is not None:
            rows.sort(key=lambda row: row.get(order_by) or "", reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def create(self, record: RecordT) -> Dict[str, Any]:
        """Insert a record, filling missing timestamps the way a server would."""
        row = record.model_dump()
        if not row.get("id"):
            raise ValueError(f"{self.name}: record has no id")
        now = utcnow().isoformat()
        for field in self._timestamp_fields:
            if not row.get(field):
                row[field] = now
        async with self._lock:
            if row["id"] in self._rows:
                raise ValueError(f"{self.name}: duplicate id {row['id']}")
            self._rows[row["id"]] = row
        logger.debug("record_created", table=self.name, record_id=row["id"])
        return dict(row)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        async with self._lock:
            row = self._rows.get(record_id)
            if row is None:
                logger.warning("record_not_found", table=self.name, record_id=record_id)
                raise KeyError(record_id)
            row.update(fields)

    async def delete(self, record_id: str) -> None:
        async with self._lock:
            if self._rows.pop(record_id, None) is None:
                logger.warning("record_not_found", table=self.name, record_id=record_id)
                raise KeyError(record_id)
        logger.debug("record_deleted", table=self.name, record_id=record_id)

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryDatabase(Database):
    """Process-local stand-in for the remote store."""

    def __init__(self) -> None:
        self._conversations: InMemoryTable[ConversationRecord] = InMemoryTable(
            "conversations", timestamp_fields=("created_at", "updated_at")
        )
        self._messages: InMemoryTable[MessageRecord] = InMemoryTable(
            "messages", timestamp_fields=("timestamp",)
        )
        logger.info("repository_initialized", backend="memory")

    @property
    def conversations(self) -> InMemoryTable[ConversationRecord]:
        return self._conversations

    @property
    def messages(self) -> InMemoryTable[MessageRecord]:
        return self._messages
