from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, StorageUnavailable
from sessionguard.storage.models import (
    Identity,
    RevokedToken,
    Session,
    ensure_utc,
    utcnow,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Holds identities, password records, session records and revoked token
    hashes behind a single re-entrant lock. When ``fs_root`` is given the
    state is mirrored to ``<fs_root>/state/memory_store.json`` after every
    mutation and reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.revoked: Dict[str, RevokedToken] = {}
        # RLock so identity helpers can nest inside session operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # identities
    def create_identity(
        self, email: str, *, role: str = "user", is_active: bool = True
    ) -> Identity:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.identities.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=str(uuid.uuid4()), email=normalized, role=role, is_active=is_active
            )
            self.identities[identity.id] = identity
            self._persist_state()
            return identity

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self.identities.get(identity_id)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (i for i in self.identities.values() if i.email == normalized), None
            )

    def set_identity_active(self, identity_id: str, is_active: bool) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.is_active = is_active
            self._persist_state()
            return identity

    def update_identity_role(self, identity_id: str, role: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return None
            identity.role = role
            self._persist_state()
            return identity

    def record_login(self, identity_id: str, at: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.last_login_at = ensure_utc(at)
                self._persist_state()

    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for credentials", {"identity_id": identity_id}
                )
            self.credentials[identity_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(identity_id)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.identity_id not in self.identities:
                raise ConstraintViolation(
                    "identity does not exist", {"identity_id": session.identity_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            stored = self.sessions.get(session_id)
            # Callers mutate what they get back; hand out copies
            return replace(stored) if stored else None

    def update_session(self, session: Session) -> bool:
        with self._data_lock:
            stored = self.sessions.get(session.id)
            if not stored or not stored.is_active:
                return False
            stored.access_token_hash = session.access_token_hash
            stored.refresh_token_hash = session.refresh_token_hash
            stored.last_used_at = ensure_utc(session.last_used_at)
            stored.refresh_count = session.refresh_count
            self._persist_state()
            return True

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            stored = self.sessions.get(session_id)
            if not stored or not stored.is_active:
                return False
            stored.last_used_at = ensure_utc(at)
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            stored = self.sessions.get(session_id)
            if not stored:
                return False
            changed = stored.is_active
            stored.is_active = False
            if changed:
                self._persist_state()
            return True

    def deactivate_identity_sessions(self, identity_id: str) -> List[str]:
        with self._data_lock:
            affected = [
                sess.id
                for sess in self.sessions.values()
                if sess.identity_id == identity_id and sess.is_active
            ]
            for sid in affected:
                self.sessions[sid].is_active = False
            if affected:
                self._persist_state()
            return affected

    def list_identity_sessions(self, identity_id: str) -> List[Session]:
        with self._data_lock:
            return [
                replace(sess)
                for sess in self.sessions.values()
                if sess.identity_id == identity_id
            ]

    def delete_expired_sessions(
        self, now: datetime, inactive_before: Optional[datetime] = None
    ) -> int:
        now = ensure_utc(now)
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if ensure_utc(sess.expires_at) < now
                or (
                    inactive_before is not None
                    and not sess.is_active
                    and ensure_utc(sess.last_used_at) < ensure_utc(inactive_before)
                )
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # revocations
    def add_revoked_token(self, entry: RevokedToken) -> None:
        with self._data_lock:
            existing = self.revoked.get(entry.token_hash)
            if existing and ensure_utc(existing.expires_at) >= ensure_utc(entry.expires_at):
                return
            self.revoked[entry.token_hash] = entry
            self._persist_state()

    def is_token_revoked(self, token_hash: str, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now or utcnow())
        with self._data_lock:
            entry = self.revoked.get(token_hash)
            return bool(entry and ensure_utc(entry.expires_at) > now)

    def delete_expired_revocations(self, now: datetime) -> int:
        now = ensure_utc(now)
        with self._data_lock:
            stale = [
                h for h, entry in self.revoked.items()
                if ensure_utc(entry.expires_at) <= now
            ]
            for token_hash in stale:
                self.revoked.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def verify_schema(self) -> None:
        return None

    # persistence
    @staticmethod
    def _serialize_identity(identity: Identity) -> Dict[str, Any]:
        return {
            "id": identity.id,
            "email": identity.email,
            "role": identity.role,
            "is_active": identity.is_active,
            "created_at": ensure_utc(identity.created_at).isoformat(),
            "last_login_at": (
                ensure_utc(identity.last_login_at).isoformat()
                if identity.last_login_at
                else None
            ),
        }

    @staticmethod
    def _deserialize_identity(data: Dict[str, Any]) -> Identity:
        last_login = data.get("last_login_at")
        return Identity(
            id=data["id"],
            email=data["email"],
            role=data.get("role", "user"),
            is_active=bool(data.get("is_active", True)),
            created_at=ensure_utc(datetime.fromisoformat(data["created_at"])),
            last_login_at=(
                ensure_utc(datetime.fromisoformat(last_login)) if last_login else None
            ),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "credentials": [
                {
                    "identity_id": identity_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for identity_id, creds in self.credentials.items()
            ],
            "sessions": [s.to_dict() for s in self.sessions.values()],
            "revoked_tokens": [
                {
                    "token_hash": entry.token_hash,
                    "expires_at": ensure_utc(entry.expires_at).isoformat(),
                    "token_type": entry.token_type,
                    "session_id": entry.session_id,
                    "revoked_at": ensure_utc(entry.revoked_at).isoformat(),
                }
                for entry in self.revoked.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.credentials = {
            entry["identity_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: Session.from_dict(s) for s in data.get("sessions", [])
        }
        self.revoked = {
            entry["token_hash"]: RevokedToken(
                token_hash=entry["token_hash"],
                expires_at=ensure_utc(datetime.fromisoformat(entry["expires_at"])),
                token_type=entry.get("token_type", "access"),
                session_id=entry.get("session_id"),
                revoked_at=ensure_utc(datetime.fromisoformat(entry["revoked_at"])),
            )
            for entry in data.get("revoked_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            sessions=len(self.sessions),
        )
        return True
