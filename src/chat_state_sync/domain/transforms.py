"""
Record Transform Layer

Converts between the flat records the remote store speaks and the typed
domain entities the rest of the client works with. Record-to-domain
conversion never raises: a malformed record becomes ``None`` and the batch
helpers drop it while keeping the order of the valid ones.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, NamedTuple, Optional, Tuple, TypeVar, Union

import structlog
from pydantic import ValidationError

from .models import ROLES, Conversation, Message, utcnow
from .records import ConversationRecord, MessageRecord

logger = structlog.get_logger()

T = TypeVar("T")
RawConversation = Union[ConversationRecord, Mapping[str, Any]]
RawMessage = Union[MessageRecord, Mapping[str, Any]]


class TransformStats(NamedTuple):
    """How many records a batch transform looked at and how many survived."""

    attempted: int
    succeeded: int

    @property
    def rejected(self) -> int:
        return self.attempted - self.succeeded


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime, or None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif not isinstance(value, str):
        logger.warning("timestamp_not_text", kind=type(value).__name__)
        return None
    else:
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning("timestamp_unparsable", value=str(value))
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_sources(value: Any) -> Optional[List[str]]:
    """Decode a JSON-encoded citation list. Any failure means no sources."""
    if not value:
        return None
    if not isinstance(value, str):
        logger.warning("sources_not_json_text", kind=type(value).__name__)
        return None
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        logger.warning("sources_unparsable", raw=value[:200])
        return None
    if not isinstance(decoded, list):
        logger.warning("sources_not_a_list", raw=value[:200])
        return None
    sources = [str(item) for item in decoded if item is not None]
    return sources or None


def _coerce(record: Any, schema: type) -> Any:
    if isinstance(record, schema):
        return record
    return schema.model_validate(record)


def to_domain_conversation(record: RawConversation) -> Optional[Conversation]:
    """Build a Conversation from a record; messages are loaded separately."""
    try:
        parsed = _coerce(record, ConversationRecord)
    except (ValidationError, TypeError, ValueError) as e:
        logger.warning("conversation_record_invalid", error=str(e))
        return None

    if not parsed.id or not parsed.title:
        logger.warning("conversation_record_missing_fields", conversation_id=parsed.id)
        return None

    # Conversations always get a date, falling back to now.
    now = utcnow()
    return Conversation(
        id=parsed.id,
        title=parsed.title,
        messages=[],
        created_at=parse_timestamp(parsed.created_at) or now,
        updated_at=parse_timestamp(parsed.updated_at) or now,
    )


def to_domain_message(record: RawMessage) -> Optional[Message]:
    """Build a Message from a record, rejecting anything that could misorder history."""
    try:
        parsed = _coerce(record, MessageRecord)
    except (ValidationError, TypeError, ValueError) as e:
        logger.warning("message_record_invalid", error=str(e))
        return None

    if not parsed.id or not parsed.content or not parsed.role:
        logger.warning("message_record_missing_fields", message_id=parsed.id)
        return None

    if parsed.role not in ROLES:
        logger.warning("message_record_bad_role", message_id=parsed.id, role=parsed.role)
        return None

    timestamp = parse_timestamp(parsed.timestamp)
    if timestamp is None:
        logger.warning("message_record_bad_timestamp", message_id=parsed.id)
        return None

    return Message(
        id=parsed.id,
        role=parsed.role,
        content=parsed.content,
        timestamp=timestamp,
        sources=parse_sources(parsed.sources),
    )


def transform_batch(
    records: Iterable[Any], transform: Callable[[Any], Optional[T]]
) -> Tuple[List[T], TransformStats]:
    """Apply ``transform`` to each record, keeping only the successes in order."""
    results: List[T] = []
    attempted = 0
    for record in records:
        attempted += 1
        item = transform(record)
        if item is not None:
            results.append(item)
    return results, TransformStats(attempted=attempted, succeeded=len(results))


def to_domain_conversations(records: Iterable[RawConversation]) -> List[Conversation]:
    conversations, stats = transform_batch(records, to_domain_conversation)
    logger.info("conversations_transformed", attempted=stats.attempted, succeeded=stats.succeeded)
    return conversations


def to_domain_messages(records: Iterable[RawMessage]) -> List[Message]:
    messages, stats = transform_batch(records, to_domain_message)
    logger.info("messages_transformed", attempted=stats.attempted, succeeded=stats.succeeded)
    return messages


def to_conversation_record(conversation: Conversation, user_id: str) -> ConversationRecord:
    """Persistable shape for a conversation owned by ``user_id``."""
    return ConversationRecord(
        id=conversation.id,
        user_id=user_id,
        title=conversation.title,
        created_at=conversation.created_at.isoformat(),
        updated_at=conversation.updated_at.isoformat(),
    )


def to_message_record(message: Message, conversation_id: str, user_id: str) -> MessageRecord:
    """Persistable shape for a message; empty sources are stored as None."""
    return MessageRecord(
        id=message.id,
        conversation_id=conversation_id,
        user_id=user_id,
        role=message.role,
        content=message.content,
        timestamp=message.timestamp.isoformat(),
        sources=json.dumps(message.sources) if message.sources else None,
    )
