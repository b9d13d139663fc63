"""
Streaming Response Folder

Folds an incrementally generated assistant response into the conversation
state under a single message id, then finalizes and persists it.

States: IDLE -> STREAMING -> FINALIZING -> COMPLETED, with FAILED reachable
from STREAMING or FINALIZING and CANCELLED reachable from STREAMING.
"""

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence

import structlog

from ..domain.ids import generate_id
from ..domain.models import Message
from .llm import ChatTurn, GenerationError, GenerationProvider, GenerationResult
from .notifications import Severity

if TYPE_CHECKING:
    from .conversation_store import ConversationStore

logger = structlog.get_logger()

MAX_CONTEXT_MESSAGES = 20
ERROR_MESSAGE_TEXT = "Sorry, I encountered an error while processing your request. Please try again."


class GenerationState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {GenerationState.COMPLETED, GenerationState.FAILED, GenerationState.CANCELLED}
)


def fold_chunk(accumulated: str, chunk: str) -> str:
    """Incorporate one chunk into the accumulated text.

    Strings are immutable, so each call copies the text so far and a whole
    reply costs quadratic time in its length. Chat-sized replies stay cheap.
    """
    return accumulated + chunk


def build_context_window(
    prior_messages: Sequence[Message], content: str, limit: int = MAX_CONTEXT_MESSAGES
) -> List[ChatTurn]:
    """Most recent ``limit`` prior messages plus the new user message, oldest first."""
    recent = list(prior_messages)[-limit:] if limit > 0 else []
    turns = [ChatTurn(role=m.role, content=m.content) for m in recent]
    turns.append(ChatTurn(role="user", content=content))
    return turns


class StreamingResponseFolder:
    """One in-flight generation for one conversation."""

    def __init__(
        self,
        store: "ConversationStore",
        conversation_id: str,
        provider: GenerationProvider,
        search: bool = True,
    ) -> None:
        self.conversation_id = conversation_id
        self.message_id = generate_id()
        self.state = GenerationState.IDLE
        self.accumulated = ""
        self._store = store
        self._provider = provider
        self._search = search
        self._placeholder: Optional[Message] = None
        self._cancel_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _transition(self, state: GenerationState) -> None:
        logger.debug(
            "generation_state_changed",
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            old=self.state.value,
            new=state.value,
        )
        self.state = state

    def cancel(self) -> None:
        """Stop the generation; chunks arriving afterwards are ignored."""
        if self.state in TERMINAL_STATES or self.cancelled:
            return
        self._cancel_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info(
            "generation_cancel_requested",
            conversation_id=self.conversation_id,
            message_id=self.message_id,
        )

    def on_chunk(self, chunk: str) -> None:
        """Provider callback, invoked once per text fragment."""
        if self.state is not GenerationState.STREAMING or self.cancelled:
            logger.debug(
                "chunk_ignored",
                conversation_id=self.conversation_id,
                state=self.state.value,
                cancelled=self.cancelled,
            )
            return
        self.accumulated = fold_chunk(self.accumulated, chunk)
        self._store.replace_message(
            self.conversation_id,
            self._placeholder.model_copy(update={"content": self.accumulated, "is_loading": True}),
        )

    async def run(self, prior_messages: Sequence[Message], content: str) -> Message:
        """Drive the generation to a terminal state and return the final assistant message."""
        context = build_context_window(prior_messages, content)

        # The placeholder is in place before the first chunk can arrive.
        self._placeholder = Message(id=self.message_id, role="assistant", content="", is_loading=True)
        self._store.append_local_message(self.conversation_id, self._placeholder)
        self._transition(GenerationState.STREAMING)

        if self.cancelled:
            return self._finish_cancelled()

        self._task = asyncio.ensure_future(
            self._provider.stream_text(
                context, self.on_chunk, search=self._search, cancel_event=self._cancel_event
            )
        )
        try:
            result = await self._task
        except asyncio.CancelledError:
            self._finish_cancelled()
            if not self.cancelled:
                # The caller itself was cancelled.
                raise
            return self._placeholder_snapshot()
        except Exception as e:
            if self.cancelled:
                return self._finish_cancelled()
            return self._fail(e)

        if self.cancelled:
            return self._finish_cancelled()
        return await self._finalize(result)

    def _placeholder_snapshot(self) -> Message:
        conversation = self._store.get_conversation(self.conversation_id)
        if conversation is not None:
            for message in conversation.messages:
                if message.id == self.message_id:
                    return message
        return self._placeholder.model_copy(update={"content": self.accumulated, "is_loading": False})

    async def _finalize(self, result: Optional[GenerationResult]) -> Message:
        text = self.accumulated or (result.text if result is not None else "")
        if not text:
            return self._fail(GenerationError("Provider returned an empty response"))

        self._transition(GenerationState.FINALIZING)
        final = Message(
            id=self.message_id,
            role="assistant",
            content=text,
            timestamp=self._placeholder.timestamp,
            is_loading=False,
            sources=list(result.sources) if result is not None else None,
        )
        self._store.replace_message(self.conversation_id, final)
        await self._store.persist_message(
            self.conversation_id, final, failure_description="Failed to save response to database."
        )
        self._transition(GenerationState.COMPLETED)
        logger.info(
            "generation_completed",
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            response_length=len(text),
            sources=len(final.sources or []),
        )
        return final

    def _fail(self, error: Exception) -> Message:
        logger.error(
            "generation_failed",
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            accumulated_length=len(self.accumulated),
            error=str(error),
        )
        self._transition(GenerationState.FAILED)
        error_message = Message(id=generate_id(), role="assistant", content=ERROR_MESSAGE_TEXT)
        if self.accumulated:
            # Keep what was shown, then explain.
            self._store.replace_message(
                self.conversation_id,
                self._placeholder.model_copy(update={"content": self.accumulated, "is_loading": False}),
            )
            self._store.append_local_message(self.conversation_id, error_message)
        else:
            self._store.replace_message(self.conversation_id, error_message, target_id=self.message_id)
        self._store.notify("Error", "Failed to generate response", Severity.DESTRUCTIVE)
        return error_message

    def _finish_cancelled(self) -> Message:
        if self.state in TERMINAL_STATES:
            return self._placeholder_snapshot()
        self._transition(GenerationState.CANCELLED)
        stopped = self._placeholder.model_copy(update={"content": self.accumulated, "is_loading": False})
        self._store.replace_message(self.conversation_id, stopped)
        logger.info(
            "generation_cancelled",
            conversation_id=self.conversation_id,
            message_id=self.message_id,
            accumulated_length=len(self.accumulated),
        )
        return stopped
