from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    IdentityInactive,
    InvalidToken,
    RefreshTokenExpired,
    RefreshTokenInvalid,
    SessionRevoked,
    TokenExpired,
    TokenRevoked,
)
from sessionguard.service.identity import IdentityService
from sessionguard.service.issuer import CredentialIssuer
from sessionguard.service.session_store import SessionStore
from sessionguard.service.tokens import TokenType, hash_token
from sessionguard.service.verifier import TokenVerifier
from sessionguard.storage.models import utcnow

logger = get_logger(__name__)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str


class RefreshCoordinator:
    """Trades a valid refresh token for a new access token.

    The refresh token itself is reused until its own expiry; only the
    access token rotates. Concurrent refreshes on one session each mint a
    token and the last persisted hash wins.
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        sessions: SessionStore,
        issuer: CredentialIssuer,
        identities: IdentityService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.verifier = verifier
        self.sessions = sessions
        self.issuer = issuer
        self.identities = identities
        self.clock = clock

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            verified = await self.verifier.verify(
                refresh_token, TokenType.REFRESH, touch=False
            )
        except TokenExpired as exc:
            raise RefreshTokenExpired() from exc
        except (InvalidToken, TokenRevoked) as exc:
            raise RefreshTokenInvalid() from exc

        session = verified.session
        if not hmac.compare_digest(session.refresh_token_hash, hash_token(refresh_token)):
            logger.warning("refresh_token_mismatch", session_id=session.id)
            raise RefreshTokenInvalid()

        try:
            identity = self.identities.require_active(verified.identity_id)
        except IdentityInactive:
            logger.warning(
                "refresh_inactive_identity",
                session_id=session.id,
                identity_id=verified.identity_id,
            )
            raise

        now = self.clock()
        access = self.issuer.mint_access(identity.id, session.id, identity.role, now)
        session.access_token_hash = access.token_hash
        session.last_used_at = now
        session.refresh_count += 1
        if not await self.sessions.update(session):
            # Swept, deleted or logged out between lookup and write
            raise SessionRevoked()
        logger.info(
            "access_token_refreshed",
            session_id=session.id,
            refresh_count=session.refresh_count,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh_token,
            expires_in=int(self.issuer.access_ttl.total_seconds()),
            session_id=session.id,
        )
