from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    IdentityInactive,
    InvalidCredentials,
    PersistenceFailure,
    ValidationError,
)
from sessionguard.storage.errors import StorageUnavailable
from sessionguard.storage.models import Identity, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8


class IdentityStore(Protocol):
    def create_identity(
        self, email: str, *, role: str = "user", is_active: bool = True
    ) -> Identity:
        ...

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        ...

    def set_identity_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        ...

    def record_login(self, identity_id: str, at: datetime) -> None:
        ...

    def save_password(self, identity_id: str, password_hash: str, password_algo: str) -> None:
        ...

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        ...


class IdentityService:
    """Identity lookup and argon2id credential checks.

    Identities are owned elsewhere; this service only reads them, records
    login times and manages password records.
    """

    def __init__(
        self,
        store: IdentityStore,
        *,
        clock: Callable[[], datetime] = utcnow,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Compared against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("sessionguard-timing-equalizer")

    def hash_password(self, password: str) -> tuple[str, str]:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def save_password(self, identity_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(identity_id, pwd_hash, algo)

    def register(self, email: str, password: str, *, role: str = "user") -> Identity:
        pwd_hash, algo = self.hash_password(password)
        identity = self.store.create_identity(email, role=role)
        self.store.save_password(identity.id, pwd_hash, algo)
        logger.info("identity_registered", identity_id=identity.id, role=role)
        return identity

    def verify_password(self, identity_id: str, password: str) -> bool:
        record = self.store.get_password_record(identity_id)
        if not record:
            logger.warning("password_record_missing", identity_id=identity_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", identity_id=identity_id, algo=algo)
            return False
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", identity_id=identity_id)
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            self.store.save_password(identity_id, self._pwd_hasher.hash(password), PASSWORD_ALGO)
            logger.info("password_rehashed", identity_id=identity_id)
        return True

    def authenticate(self, email: str, password: str) -> Identity:
        """Resolve ``email`` + ``password`` to an active identity."""
        try:
            identity = self.store.get_identity_by_email(email)
            if identity is None:
                try:
                    self._pwd_hasher.verify(self._dummy_hash, password or "")
                except (VerifyMismatchError, VerificationError):
                    pass
                raise InvalidCredentials()
            if not self.verify_password(identity.id, password):
                raise InvalidCredentials()
        except StorageUnavailable as exc:
            logger.error("identity_lookup_failed", error=str(exc))
            raise PersistenceFailure() from exc
        if not identity.is_active:
            logger.warning("login_inactive_identity", identity_id=identity.id)
            raise IdentityInactive()
        return identity

    def get(self, identity_id: str) -> Optional[Identity]:
        try:
            return self.store.get_identity(identity_id)
        except StorageUnavailable as exc:
            logger.error("identity_lookup_failed", identity_id=identity_id, error=str(exc))
            raise PersistenceFailure() from exc

    def require_active(self, identity_id: str) -> Identity:
        identity = self.get(identity_id)
        if identity is None or not identity.is_active:
            raise IdentityInactive()
        return identity

    def set_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        return self.store.set_identity_active(identity_id, is_active)

    def record_login(self, identity_id: str) -> None:
        try:
            self.store.record_login(identity_id, self.clock())
        except StorageUnavailable as exc:
            logger.warning("record_login_failed", identity_id=identity_id, error=str(exc))
