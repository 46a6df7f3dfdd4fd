from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidToken,
)
from sessionguard.service.identity import IdentityService
from sessionguard.service.issuer import ClientMeta, CredentialIssuer
from sessionguard.service.refresh import RefreshCoordinator, TokenPair
from sessionguard.service.revocation import RevocationRegistry
from sessionguard.service.session_store import SessionStore
from sessionguard.service.tokens import TokenClaims, TokenCodec, TokenType
from sessionguard.service.verifier import TokenVerifier
from sessionguard.storage.models import Identity

logger = get_logger(__name__)


@dataclass
class AuthContext:
    identity_id: str
    session_id: str
    role: str


@dataclass
class LoginResult:
    identity: Identity
    session_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


def role_allows(role: str, required: str) -> bool:
    if role == required:
        return True
    if role == "admin" and required in {"admin", "user"}:
        return True
    return False


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthService:
    """Login, verification, refresh and logout over the session components."""

    def __init__(
        self,
        identities: IdentityService,
        sessions: SessionStore,
        revocations: RevocationRegistry,
        codec: TokenCodec,
        issuer: CredentialIssuer,
        verifier: TokenVerifier,
        refresher: RefreshCoordinator,
    ) -> None:
        self.identities = identities
        self.sessions = sessions
        self.revocations = revocations
        self.codec = codec
        self.issuer = issuer
        self.verifier = verifier
        self.refresher = refresher

    async def issue_for_identity(
        self, identity: Identity, client: Optional[ClientMeta] = None
    ) -> LoginResult:
        issued = await self.issuer.issue(identity, client)
        self.identities.record_login(identity.id)
        return LoginResult(
            identity=identity,
            session_id=issued.session.id,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
        )

    async def login(
        self, email: str, password: str, client: Optional[ClientMeta] = None
    ) -> LoginResult:
        try:
            identity = self.identities.authenticate(email, password)
        except AuthenticationError as exc:
            logger.info("login_failed", reason=exc.reason)
            raise
        result = await self.issue_for_identity(identity, client)
        logger.info("login_succeeded", identity_id=identity.id, session_id=result.session_id)
        return result

    async def verify_access(self, token: str) -> AuthContext:
        verified = await self.verifier.verify(token, TokenType.ACCESS)
        return AuthContext(
            identity_id=verified.identity_id,
            session_id=verified.session_id,
            role=verified.role or "user",
        )

    async def authenticate(
        self, authorization: Optional[str], *, required_role: Optional[str] = None
    ) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise InvalidToken()
        ctx = await self.verify_access(token)
        if required_role and not role_allows(ctx.role, required_role):
            logger.warning(
                "role_check_failed",
                identity_id=ctx.identity_id,
                role=ctx.role,
                required=required_role,
            )
            raise ForbiddenError("insufficient role")
        return ctx

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            return await self.refresher.refresh(refresh_token)
        except AuthenticationError as exc:
            logger.info("refresh_failed", reason=exc.reason)
            raise

    def _logout_claims(
        self, token: Optional[str], token_type: TokenType
    ) -> Optional[TokenClaims]:
        if not token:
            return None
        try:
            return self.codec.decode(token, token_type, verify_exp=False)
        except AuthenticationError as exc:
            logger.info("logout_token_ignored", token_type=token_type.value, reason=exc.reason)
            return None

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """End the session behind ``access_token``.

        Expired, revoked or already logged-out tokens still end their
        session, as long as the signature holds. The session id comes from
        the access token, or from the refresh token when the access token
        is unusable. Returns False when neither token names a session.
        """
        access_claims = self._logout_claims(access_token, TokenType.ACCESS)
        refresh_claims = self._logout_claims(refresh_token, TokenType.REFRESH)
        if access_claims is not None:
            session_id = access_claims.session_id
        elif refresh_claims is not None:
            session_id = refresh_claims.session_id
        else:
            return False

        found = await self.sessions.invalidate(session_id)
        if access_claims is not None:
            await self.revocations.add(access_token, access_claims)
        if refresh_claims is not None:
            if refresh_claims.session_id == session_id:
                await self.revocations.add(refresh_token, refresh_claims)
            else:
                logger.warning("logout_refresh_token_foreign_session", session_id=session_id)
        logger.info("logout", session_id=session_id, found=found)
        return found

    async def invalidate_session(self, session_id: str) -> bool:
        return await self.sessions.invalidate(session_id)

    async def invalidate_identity_sessions(self, identity_id: str) -> int:
        return len(await self.sessions.invalidate_identity(identity_id))
