"""
Conversation Store

Owns the in-memory list of conversations and the selected conversation id.
Every mutation updates memory first and then mirrors to the remote store on
a best-effort basis: remote failures are logged and reported to the user,
and the local state stays usable.

State changes replace whole Conversation objects (snapshot then replace) so
observers never see a message list and ``updated_at`` out of step.
"""

import asyncio
from typing import Callable, Coroutine, Dict, List, Optional, Set, Tuple

import structlog

from ..config import Settings, get_settings
from ..domain.ids import generate_id
from ..domain.models import Conversation, Message, User, utcnow
from ..domain.transforms import to_conversation_record, to_message_record
from ..repositories.base import Database
from .auth import AuthProvider
from .conversation_lock import ConversationLock
from .initialization import InitializationSequencer
from .llm import GenerationProvider
from .notifications import LoggingNotifier, Notifier, Severity
from .streaming import ERROR_MESSAGE_TEXT, StreamingResponseFolder

logger = structlog.get_logger()

TITLE_MAX_LENGTH = 50
TITLE_ELLIPSIS = "..."

Listener = Callable[["ConversationStore"], None]


def derive_title(seed_text: str) -> str:
    """Seed text cut to TITLE_MAX_LENGTH characters, ellipsis included."""
    if len(seed_text) <= TITLE_MAX_LENGTH:
        return seed_text
    return seed_text[: TITLE_MAX_LENGTH - len(TITLE_ELLIPSIS)] + TITLE_ELLIPSIS


class ConversationStore:
    """State manager for conversations, mirrored to a remote store."""

    def __init__(
        self,
        database: Database,
        auth: AuthProvider,
        provider: GenerationProvider,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._database = database
        self._auth = auth
        self._provider = provider
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or get_settings()

        self._conversations: List[Conversation] = []
        self._current_id: Optional[str] = None
        self._user: Optional[User] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

        self._send_lock = ConversationLock()
        self._generations: Dict[str, StreamingResponseFolder] = {}
        self._active_sends = 0
        self._listeners: List[Listener] = []
        self._background: Set[asyncio.Task] = set()

    @property
    def conversations(self) -> Tuple[Conversation, ...]:
        return tuple(self._conversations)

    @property
    def current_conversation_id(self) -> Optional[str]:
        return self._current_id

    @property
    def current_conversation(self) -> Optional[Conversation]:
        if self._current_id is None:
            return None
        return self.get_conversation(self._current_id)

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def is_generating(self) -> bool:
        return self._active_sends > 0

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` after every state change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error("state_listener_failed", error=str(e))

    def notify(self, title: str, description: str, severity: Severity = Severity.NORMAL) -> None:
        try:
            self._notifier.notify(title, description, severity)
        except Exception as e:
            logger.error("notification_failed", title=title, error=str(e))

    async def initialize(self) -> None:
        """Load the initial state once; later calls return immediately."""
        async with self._init_lock:
            if self._initialized:
                return
            sequencer = InitializationSequencer(
                self._database,
                self._auth,
                notifier=self._notifier,
                conversation_page_size=self._settings.conversation_page_size,
                message_page_size=self._settings.message_page_size,
            )
            state = await sequencer.run()
            self._user = state.user
            self._conversations = list(state.conversations)
            self._current_id = state.selected_id
            self._initialized = True
            logger.info(
                "store_initialized",
                authenticated=self.is_authenticated,
                conversations=len(self._conversations),
            )
        self._emit()

    def _replace_conversation(
        self, conversation_id: str, change: Callable[[Conversation], Conversation]
    ) -> Optional[Conversation]:
        for index, conversation in enumerate(self._conversations):
            if conversation.id == conversation_id:
                updated = change(conversation)
                conversations = list(self._conversations)
                conversations[index] = updated
                self._conversations = conversations
                self._emit()
                return updated
        logger.warning("conversation_not_found", conversation_id=conversation_id)
        return None

    def append_local_message(self, conversation_id: str, message: Message) -> Optional[Conversation]:
        """Append to memory only, advancing ``updated_at``."""
        return self._replace_conversation(
            conversation_id,
            lambda c: c.model_copy(update={"messages": [*c.messages, message], "updated_at": utcnow()}),
        )

    def replace_message(
        self, conversation_id: str, message: Message, target_id: Optional[str] = None
    ) -> Optional[Conversation]:
        """Swap the message with id ``target_id`` (default: ``message.id``) in memory."""
        target = target_id or message.id
        return self._replace_conversation(
            conversation_id,
            lambda c: c.model_copy(
                update={
                    "messages": [message if m.id == target else m for m in c.messages],
                    "updated_at": utcnow(),
                }
            ),
        )

    async def persist_message(
        self, conversation_id: str, message: Message, failure_description: str
    ) -> bool:
        """Write a message to the remote store when signed in; warn the user on failure."""
        if self._user is None:
            return False
        try:
            await self._database.messages.create(
                to_message_record(message, conversation_id, self._user.id)
            )
            logger.info(
                "message_persisted",
                conversation_id=conversation_id,
                message_id=message.id,
                role=message.role,
            )
            return True
        except Exception as e:
            logger.error(
                "message_persist_failed",
                conversation_id=conversation_id,
                message_id=message.id,
                error=str(e),
            )
            self.notify("Warning", failure_description, Severity.DESTRUCTIVE)
            return False

    def _spawn(self, coroutine: Coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for fire-and-forget remote writes still in flight."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def create_conversation(self) -> Conversation:
        """Create, select and return a new conversation; local-only if the remote insert fails."""
        now = utcnow()
        conversation = Conversation(
            id=generate_id(),
            title=self._settings.default_title,
            messages=[],
            created_at=now,
            updated_at=now,
        )
        if self._user is not None:
            try:
                await self._database.conversations.create(
                    to_conversation_record(conversation, self._user.id)
                )
                logger.info("conversation_created", conversation_id=conversation.id, persisted=True)
            except Exception as e:
                logger.error("conversation_persist_failed", conversation_id=conversation.id, error=str(e))
                self.notify(
                    "Warning",
                    "Failed to save conversation to database. Working in offline mode.",
                    Severity.DESTRUCTIVE,
                )
        else:
            logger.info("conversation_created", conversation_id=conversation.id, persisted=False)

        self._conversations = [conversation, *self._conversations]
        self._current_id = conversation.id
        self._emit()
        return conversation

    async def select_conversation(self, conversation_id: str) -> None:
        if self.get_conversation(conversation_id) is None:
            logger.warning("select_unknown_conversation", conversation_id=conversation_id)
            return
        self._current_id = conversation_id
        self._emit()

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete remotely (messages first), then always drop it from memory."""
        folder = self._generations.get(conversation_id)
        if folder is not None:
            folder.cancel()

        if self._user is not None:
            try:
                records = await self._database.messages.list(where={"conversation_id": conversation_id})
                logger.info("deleting_messages", conversation_id=conversation_id, count=len(records))
                for record in records:
                    await self._database.messages.delete(record["id"])
                await self._database.conversations.delete(conversation_id)
                logger.info("conversation_deleted", conversation_id=conversation_id)
            except Exception as e:
                logger.error("conversation_delete_failed", conversation_id=conversation_id, error=str(e))
                self.notify("Error", "Failed to delete conversation", Severity.DESTRUCTIVE)

        remaining = [c for c in self._conversations if c.id != conversation_id]
        self._conversations = remaining
        if self._current_id == conversation_id:
            self._current_id = remaining[0].id if remaining else None
        self._emit()

    async def update_title(self, conversation_id: str, seed_text: str) -> str:
        """Set a title derived from ``seed_text``; the remote write is fire-and-forget."""
        title = derive_title(seed_text)
        updated = self._replace_conversation(
            conversation_id,
            lambda c: c.model_copy(update={"title": title, "updated_at": utcnow()}),
        )
        if updated is not None and self._user is not None:
            self._spawn(self._mirror_title(conversation_id, title))
        return title

    async def _mirror_title(self, conversation_id: str, title: str) -> None:
        try:
            await self._database.conversations.update(conversation_id, {"title": title})
        except Exception as e:
            logger.warning("title_update_failed", conversation_id=conversation_id, error=str(e))

    async def append_message(self, conversation_id: str, message: Message) -> bool:
        """Append in memory, then persist when signed in. False if the conversation is unknown."""
        if self.append_local_message(conversation_id, message) is None:
            return False
        await self.persist_message(
            conversation_id,
            message,
            failure_description="Failed to save message to database. Your conversation may not persist.",
        )
        return True

    async def send_message(self, content: str) -> Optional[Message]:
        """
        Send a user message to the selected conversation and stream the reply.

        Creates a conversation first when none is selected. Sends to the same
        conversation run one after another. Returns the terminal assistant
        message, or None for blank input.
        """
        if not content or not content.strip():
            return None

        self._active_sends += 1
        self._emit()
        conversation_id: Optional[str] = None
        try:
            conversation = self.current_conversation
            if conversation is None:
                conversation = await self.create_conversation()
            conversation_id = conversation.id

            async with self._send_lock.hold(conversation_id):
                conversation = self.get_conversation(conversation_id)
                if conversation is None:
                    logger.warning("conversation_deleted_before_send", conversation_id=conversation_id)
                    return None
                prior = list(conversation.messages)

                user_message = Message(id=generate_id(), role="user", content=content)
                await self.append_message(conversation_id, user_message)
                if not prior:
                    await self.update_title(conversation_id, content)

                folder = StreamingResponseFolder(
                    self, conversation_id, self._provider, search=self._settings.enable_search
                )
                self._generations[conversation_id] = folder
                try:
                    return await folder.run(prior, content)
                finally:
                    self._generations.pop(conversation_id, None)
        except Exception as e:
            logger.error("send_message_failed", conversation_id=conversation_id, error=str(e))
            error_message = None
            if conversation_id is not None:
                error_message = Message(id=generate_id(), role="assistant", content=ERROR_MESSAGE_TEXT)
                self.append_local_message(conversation_id, error_message)
            self.notify("Error", "Failed to generate response", Severity.DESTRUCTIVE)
            return error_message
        finally:
            self._active_sends -= 1
            self._emit()

    def stop_generation(self, conversation_id: Optional[str] = None) -> None:
        """Cancel in-flight generations (all, or only ``conversation_id``'s)."""
        targets = [
            folder
            for cid, folder in self._generations.items()
            if conversation_id is None or cid == conversation_id
        ]
        for folder in targets:
            folder.cancel()
