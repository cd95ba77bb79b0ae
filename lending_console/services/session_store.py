from __future__ import annotations

import logging
from collections.abc import MutableMapping
from typing import Any

from pydantic import ValidationError

from schemas.session import ConsoleSession, ConsoleUser


TOKEN_KEY = "token"
USER_KEY = "user"
REMEMBER_KEY = "rememberMe"

SESSION_LOGGER = logging.getLogger("lending_console.session")


class SessionStore:
    """Token, user and remember-me flag kept in a key-value area.

    The web app hands in ``request.session`` (a signed cookie), the terminal
    watcher a plain dict. Writes always replace the whole record.
    """

    def __init__(self, storage: MutableMapping[str, Any]):
        self._storage = storage

    def get_token(self) -> str | None:
        token = self._storage.get(TOKEN_KEY)
        if isinstance(token, str) and token:
            return token
        return None

    def get_user(self) -> ConsoleUser | None:
        raw_user = self._storage.get(USER_KEY)
        if not isinstance(raw_user, str) or not raw_user:
            return None
        try:
            return ConsoleUser.model_validate_json(raw_user)
        except ValidationError:
            SESSION_LOGGER.warning("Discarding unreadable session user record")
            return None

    def read(self) -> ConsoleSession | None:
        token = self.get_token()
        user = self.get_user()
        if token is None or user is None:
            return None
        return ConsoleSession(token=token, user=user)

    @property
    def remember(self) -> bool:
        return bool(self._storage.get(REMEMBER_KEY))

    def write(self, token: str, user: ConsoleUser, remember: bool = False) -> None:
        self._storage[TOKEN_KEY] = token
        self._storage[USER_KEY] = user.model_dump_json()
        if remember:
            self._storage[REMEMBER_KEY] = True
        else:
            self._storage.pop(REMEMBER_KEY, None)

    def clear_credentials(self) -> None:
        self._storage.pop(TOKEN_KEY, None)
        self._storage.pop(USER_KEY, None)

    def clear(self) -> None:
        self.clear_credentials()
        self._storage.pop(REMEMBER_KEY, None)
