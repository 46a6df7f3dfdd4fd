from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import IdentityInactive
from sessionguard.service.session_store import SessionStore
from sessionguard.service.tokens import MintedToken, TokenCodec, TokenType
from sessionguard.storage.models import Identity, Session, utcnow

logger = get_logger(__name__)


@dataclass
class ClientMeta:
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None


@dataclass
class IssuedCredentials:
    session: Session
    access: MintedToken
    refresh: MintedToken
    expires_in: int

    @property
    def access_token(self) -> str:
        return self.access.token

    @property
    def refresh_token(self) -> str:
        return self.refresh.token


class CredentialIssuer:
    """Creates a session and mints its first access/refresh pair.

    Nothing is returned unless the session record was persisted.
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock

    def mint_access(self, identity_id: str, session_id: str, role: str, now: datetime) -> MintedToken:
        return self.codec.mint(
            TokenType.ACCESS,
            identity_id=identity_id,
            session_id=session_id,
            role=role,
            ttl=self.access_ttl,
            now=now,
        )

    async def issue(self, identity: Identity, client: Optional[ClientMeta] = None) -> IssuedCredentials:
        if not identity.is_active:
            raise IdentityInactive()
        client = client or ClientMeta()
        now = self.clock()
        session = Session.new(
            identity.id,
            ttl_minutes=int(self.refresh_ttl.total_seconds() // 60),
            user_agent=client.user_agent,
            ip_addr=client.ip_addr,
            now=now,
        )
        access = self.mint_access(identity.id, session.id, identity.role, now)
        refresh = self.codec.mint(
            TokenType.REFRESH,
            identity_id=identity.id,
            session_id=session.id,
            ttl=self.refresh_ttl,
            now=now,
        )
        # The session lives exactly as long as its refresh token
        session.expires_at = refresh.claims.expires_at
        session.access_token_hash = access.token_hash
        session.refresh_token_hash = refresh.token_hash
        await self.sessions.put(session)
        logger.info("session_created", session_id=session.id, identity_id=identity.id)
        return IssuedCredentials(
            session=session,
            access=access,
            refresh=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
        )
