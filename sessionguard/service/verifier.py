from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    SessionRevoked,
    TokenRevoked,
)
from sessionguard.service.revocation import RevocationRegistry
from sessionguard.service.session_store import SessionStore
from sessionguard.service.tokens import TokenClaims, TokenCodec, TokenType
from sessionguard.storage.models import Session

logger = get_logger(__name__)


@dataclass
class VerifiedToken:
    claims: TokenClaims
    session: Session

    @property
    def identity_id(self) -> str:
        return self.claims.identity_id

    @property
    def session_id(self) -> str:
        return self.claims.session_id

    @property
    def role(self) -> Optional[str]:
        return self.claims.role


class TokenVerifier:
    """Checks a presented token against its signature, session and revocations.

    Steps run in a fixed order and the first failure wins:

    1. structure, algorithm, signature, issuer, audience
    2. expiry
    3. token type
    4. session lookup (missing, deactivated, expired or foreign session)
    5. revocation registry
    6. optional ``last_used_at`` bump, which cannot change the outcome
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        revocations: RevocationRegistry,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.revocations = revocations

    async def verify(
        self, token: str, expected_type: TokenType, *, touch: bool = True
    ) -> VerifiedToken:
        try:
            claims = self.codec.decode(token, expected_type)
        except AuthenticationError as exc:
            logger.info(
                "token_rejected", reason=exc.reason, expected_type=expected_type.value
            )
            raise

        session = await self.sessions.get(claims.session_id)
        if (
            session is None
            or not session.is_active
            or session.identity_id != claims.identity_id
        ):
            logger.info(
                "token_rejected",
                reason=SessionRevoked.reason,
                session_id=claims.session_id,
                session_found=session is not None,
            )
            raise SessionRevoked()

        if await self.revocations.contains(token):
            logger.info(
                "token_rejected", reason=TokenRevoked.reason, session_id=claims.session_id
            )
            raise TokenRevoked()

        if touch:
            await self.sessions.touch(session)
        return VerifiedToken(claims=claims, session=session)
