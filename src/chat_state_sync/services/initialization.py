"""Startup load of the conversation state."""

from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ..domain.models import Conversation, User
from ..domain.transforms import to_domain_conversations, to_domain_messages
from ..repositories.base import Database
from .auth import AuthProvider
from .notifications import LoggingNotifier, Notifier, Severity

logger = structlog.get_logger()


@dataclass
class InitialState:
    """What the store starts with."""

    user: Optional[User] = None
    conversations: List[Conversation] = field(default_factory=list)
    selected_id: Optional[str] = None


class InitializationSequencer:
    """
    Resolves the user and bulk-loads their conversations and messages.

    Never raises: an unauthenticated user gets an empty local-only state, a
    failed conversation load gets an empty state, and a failed message load
    leaves that one conversation without messages.
    """

    def __init__(
        self,
        database: Database,
        auth: AuthProvider,
        notifier: Optional[Notifier] = None,
        conversation_page_size: int = 20,
        message_page_size: int = 100,
    ) -> None:
        self._database = database
        self._auth = auth
        self._notifier = notifier or LoggingNotifier()
        self.conversation_page_size = conversation_page_size
        self.message_page_size = message_page_size

    def _notify(self, description: str) -> None:
        try:
            self._notifier.notify("Warning", description, Severity.DESTRUCTIVE)
        except Exception as e:
            logger.error("notification_failed", error=str(e))

    async def run(self) -> InitialState:
        try:
            user = await self._auth.current_user()
        except Exception as e:
            # Expected when nobody is signed in.
            logger.info("auth_unavailable_local_mode", reason=str(e))
            return InitialState()
        logger.info("user_authenticated", user_id=user.id)

        try:
            records = await self._database.conversations.list(
                where={"user_id": user.id},
                order_by="updated_at",
                descending=True,
                limit=self.conversation_page_size,
            )
        except Exception as e:
            logger.error("conversation_load_failed", user_id=user.id, error=str(e))
            self._notify("Failed to load your conversations.")
            return InitialState(user=user)

        conversations = []
        failed = 0
        for conversation in to_domain_conversations(records):
            try:
                message_records = await self._database.messages.list(
                    where={"conversation_id": conversation.id},
                    order_by="timestamp",
                    descending=False,
                    limit=self.message_page_size,
                )
                messages = to_domain_messages(message_records)
            except Exception as e:
                logger.error("message_load_failed", conversation_id=conversation.id, error=str(e))
                failed += 1
                messages = []
            conversations.append(conversation.model_copy(update={"messages": messages}))

        if failed:
            self._notify(f"Failed to load messages for {failed} conversation(s).")
        logger.info("initial_load_complete", conversations=len(conversations), message_failures=failed)
        return InitialState(
            user=user,
            conversations=conversations,
            selected_id=conversations[0].id if conversations else None,
        )
