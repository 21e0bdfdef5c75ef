"""
One-time token store.

Short-lived, single-use tokens that hand a payment result from the gateway
redirect to the result page without putting trade data in the URL.

Consumed and expired tokens are kept as payload-free tombstones for one
further lifetime, so a repeated attempt is reported as consumed or expired
rather than unknown. The store is bounded; once full, the oldest entries are
evicted first.
"""

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from structlog import get_logger

from storefront.exceptions import TokenConsumedError, TokenExpiredError, TokenNotFoundError
from storefront.models.domain import OneTimeToken

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass
class _Entry:
    token: OneTimeToken
    payload: Any
    consumed: bool = False


class OneTimeTokenStore:
    """In-memory one-time token store."""

    _MAX_ENTRIES = 10000

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._entries: dict[str, _Entry] = {}

    def issue(self, purpose: str, payload: Any) -> OneTimeToken:
        """Issue a fresh unguessable token bound to a purpose."""
        self._cleanup()
        issued_at = self.clock()
        token = OneTimeToken(
            value=secrets.token_hex(32),
            purpose=purpose,
            issued_at=issued_at,
            expires_at=issued_at + self.ttl,
        )
        self._entries[token.value] = _Entry(token=token, payload=payload)
        logger.info("one_time_token_issued", purpose=purpose)
        return token

    def consume(self, value: str, purpose: str) -> Any:
        """
        Consume a token and return its payload.

        Raises:
            TokenNotFoundError: If the token is unknown or bound to another purpose
            TokenExpiredError: If the token expired before use
            TokenConsumedError: If the token was already used
        """
        entry = self._entries.get(value)
        if entry is None or not secrets.compare_digest(entry.token.purpose, purpose):
            logger.warning("one_time_token_unknown", purpose=purpose)
            raise TokenNotFoundError(purpose)

        if entry.consumed:
            logger.warning("one_time_token_replayed", purpose=purpose)
            raise TokenConsumedError(purpose)

        if self.clock() >= entry.token.expires_at:
            entry.payload = None
            logger.info("one_time_token_expired", purpose=purpose)
            raise TokenExpiredError(purpose)

        entry.consumed = True
        payload = entry.payload
        entry.payload = None
        return payload

    def _cleanup(self) -> None:
        """Make room for one more entry once the store is full."""
        if len(self._entries) < self._MAX_ENTRIES:
            return

        now = self.clock()
        stale = [v for v, e in self._entries.items() if now >= e.token.expires_at + self.ttl]
        for v in stale:
            del self._entries[v]

        evicted = 0
        while len(self._entries) >= self._MAX_ENTRIES:
            # dicts keep insertion order, so the first key is the oldest token
            del self._entries[next(iter(self._entries))]
            evicted += 1
        if evicted:
            logger.warning("one_time_tokens_evicted", count=evicted, max_entries=self._MAX_ENTRIES)

    def __len__(self) -> int:
        return len(self._entries)
