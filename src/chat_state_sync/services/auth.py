"""Authentication provider interface."""

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from ..domain.models import User

logger = structlog.get_logger()


class NotAuthenticated(Exception):
    """Raised by an auth provider when there is no signed-in user."""
    pass


class AuthProvider(ABC):
    """Resolves the signed-in user."""

    @abstractmethod
    async def current_user(self) -> User:
        """Return the current user or raise. Any failure means "not authenticated"."""
        pass


class StaticAuthProvider(AuthProvider):
    """Auth provider with a fixed answer, for local runs and tests."""

    def __init__(self, user: Optional[User] = None) -> None:
        self.user = user

    async def current_user(self) -> User:
        if self.user is None:
            raise NotAuthenticated("no user configured")
        return self.user
