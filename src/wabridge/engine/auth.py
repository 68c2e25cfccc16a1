"""Operator authentication for the Telegram side.

Sessions are in-memory only; a restart requires operators to authenticate
again. Privileged operators bypass the timeout entirely.
"""

from __future__ import annotations

import hmac
import logging
import time
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)


class OperatorAuth:
    def __init__(
        self,
        *,
        password: str | None,
        timeout_seconds: float,
        privileged_ids: Iterable[int] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.privileged_ids = frozenset(privileged_ids)
        self._clock = clock
        self._granted_at: dict[int, float] = {}

    def is_authenticated(self, user_id: int | None) -> bool:
        if user_id is None:
            return False
        if user_id in self.privileged_ids:
            return True
        granted = self._granted_at.get(user_id)
        if granted is None:
            return False
        if self._clock() - granted < self.timeout_seconds:
            return True
        del self._granted_at[user_id]
        return False

    def grant(self, user_id: int) -> None:
        self._granted_at[user_id] = self._clock()

    def authenticate(self, user_id: int, password: str) -> bool:
        """Check `password` and start a session on success."""

        if not self.password:
            logger.warning("Operator %s tried to authenticate but no password is set", user_id)
            return False
        if not hmac.compare_digest(password.strip().encode(), self.password.encode()):
            logger.info("Rejected password from operator %s", user_id)
            return False
        self.grant(user_id)
        logger.info("Operator %s authenticated", user_id)
        return True

    def revoke(self, user_id: int) -> None:
        self._granted_at.pop(user_id, None)
