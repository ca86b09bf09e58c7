"""
auth/revocation.py -- Revocation ledger for session tokens.

Tokens are stateless; the only way to invalidate one before its exp is to add
it here. The ledger is an allow-list by absence: a verified token is trusted
unless its exact string is present.

Every authenticated request performs one point lookup (is_revoked), after
signature verification so malformed tokens never cost a store round-trip.
Entries expire with the token they describe and are pruned by
purge_expired().

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from auth.models import REVOCATION_REASONS, RequestOrigin, RevokedToken

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("admingate.auth")


class RevocationLedger:
    def __init__(self, store: UserStore) -> None:
        self._store = store

    def revoke(
        self,
        token: str,
        user_id: int,
        expires_at: datetime,
        reason: str = "logout",
        origin: RequestOrigin | None = None,
    ) -> bool:
        """Add token to the ledger.

        Idempotent: revoking an already revoked token is not an error and
        returns False. Raises ValueError for an unknown reason.
        """
        if reason not in REVOCATION_REASONS:
            raise ValueError(f"Unknown revocation reason: {reason!r}")
        origin = origin or RequestOrigin()
        added = self._store.add_revoked_token(
            RevokedToken(
                token=token,
                user_id=user_id,
                reason=reason,
                expires_at=expires_at,
                ip_address=origin.ip_address,
                user_agent=origin.user_agent,
            )
        )
        if not added:
            logger.debug("Token for user %s already revoked", user_id)
        return added

    def is_revoked(self, token: str) -> bool:
        return self._store.is_token_revoked(token)

    def purge_expired(self, now: datetime | None = None) -> int:
        removed = self._store.purge_revoked_tokens(now or datetime.now(timezone.utc))
        if removed:
            logger.info("Purged %d expired revocation entries", removed)
        return removed
