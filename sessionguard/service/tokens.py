from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import InvalidToken, TokenExpired
from sessionguard.storage.models import utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


def hash_token(token: str) -> str:
    """SHA-256 hex digest used wherever a token must be stored or compared."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class TokenClaims:
    identity_id: str
    session_id: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str
    role: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MintedToken:
    token: str
    claims: TokenClaims

    @property
    def token_hash(self) -> str:
        return hash_token(self.token)


class TokenCodec:
    """HS256 envelope codec with a distinct signing secret per token type."""

    ALGORITHM = "HS256"

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        clock: Clock = utcnow,
        leeway_seconds: int = 0,
    ) -> None:
        self._secrets = {
            TokenType.ACCESS: access_secret.encode(),
            TokenType.REFRESH: refresh_secret.encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self.clock = clock
        self.leeway = timedelta(seconds=leeway_seconds)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: TokenType, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def mint(
        self,
        token_type: TokenType,
        *,
        identity_id: str,
        session_id: str,
        ttl: timedelta,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MintedToken:
        issued = (now or self.clock()).astimezone(timezone.utc)
        expires = issued + ttl
        jti = str(uuid.uuid4())
        payload: Dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": identity_id,
            "sid": session_id,
            "token_type": token_type.value,
            "jti": jti,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        if token_type is TokenType.ACCESS and role is not None:
            payload["role"] = role
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(token_type, signing_input)}"
        return MintedToken(token=token, claims=self._claims_from_payload(payload, token_type))

    def _claims_from_payload(self, payload: Dict[str, Any], token_type: TokenType) -> TokenClaims:
        return TokenClaims(
            identity_id=str(payload["sub"]),
            session_id=str(payload["sid"]),
            token_type=token_type,
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=str(payload.get("jti", "")),
            role=payload.get("role"),
            payload=payload,
        )

    def decode(
        self, token: str, expected_type: TokenType, *, verify_exp: bool = True
    ) -> TokenClaims:
        """Validate structure, signature, expiry and type, in that order.

        Raises :class:`InvalidToken` for anything malformed or forged and
        :class:`TokenExpired` once ``exp`` has passed. Never consults
        session or revocation state. ``verify_exp=False`` still checks the
        signature; logout uses it to end sessions behind expired tokens.
        """
        if not isinstance(token, str) or not token.isascii() or token.count(".") != 2:
            raise InvalidToken()
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken() from None
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken()

        expected_sig = self._sign(expected_type, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidToken()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken() from None
        if not isinstance(payload, dict):
            raise InvalidToken()
        if payload.get("iss") != self.issuer:
            raise InvalidToken()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidToken()
        if not payload.get("sub") or not payload.get("sid"):
            raise InvalidToken()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken() from None

        now_ts = self.clock().timestamp()
        if verify_exp and exp_ts <= now_ts - self.leeway.total_seconds():
            raise TokenExpired()

        if payload.get("token_type") != expected_type.value:
            raise InvalidToken()

        try:
            return self._claims_from_payload(payload, expected_type)
        except (TypeError, ValueError, OverflowError, OSError):
            raise InvalidToken() from None
