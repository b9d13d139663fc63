"""Base persistent store interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar

from pydantic import BaseModel

from ..domain.records import ConversationRecord, MessageRecord

RecordT = TypeVar("RecordT", bound=BaseModel)


class Table(ABC, Generic[RecordT]):
    """One record kind in the remote store."""

    @abstractmethod
    async def list(
        self,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List raw records matching every ``where`` field, optionally ordered and bounded."""
        pass

    @abstractmethod
    async def create(self, record: RecordT) -> Dict[str, Any]:
        """Insert a record and return it as stored."""
        pass

    @abstractmethod
    async def update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        """Apply a partial update to one record."""
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Delete one record."""
        pass


class Database(ABC):
    """The two tables the chat state is mirrored into."""

    @property
    @abstractmethod
    def conversations(self) -> Table[ConversationRecord]:
        pass

    @property
    @abstractmethod
    def messages(self) -> Table[MessageRecord]:
        pass
