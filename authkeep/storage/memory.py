from __future__ import annotations

import copy
import hmac
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from authkeep.logging import get_logger
from authkeep.storage.errors import ConstraintViolation, StaleWriteError
from authkeep.storage.models import (
    Account,
    OAuthIdentity,
    RefreshSession,
    hash_token,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-process account and session store with a JSON snapshot on disk.

    Every public method runs under one re-entrant lock, and records handed
    out are copies, so a caller mutating an ``Account`` has no effect until it
    passes it back through :meth:`save_account`.
    """

    def __init__(self, fs_root: str = "/tmp/authkeep") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # token digest -> session
        self.sessions: Dict[str, RefreshSession] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "authkeep_store.json"

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = self._find_by_email(normalized)
            return copy.deepcopy(account) if account else None

    def get_account_by_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        now = now or utcnow()
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.email_verification_token
                    and account.email_verification_expires
                    and account.email_verification_expires > now
                    and hmac.compare_digest(account.email_verification_token, token)
                ):
                    return copy.deepcopy(account)
            return None

    def get_account_by_email_code(
        self, email: str, code: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        now = now or utcnow()
        with self._data_lock:
            account = self._find_by_email(normalize_email(email))
            if not account or not account.email_verification_code:
                return None
            expires = account.email_verification_code_expires
            if not expires or expires <= now:
                return None
            if not hmac.compare_digest(account.email_verification_code, code):
                return None
            return copy.deepcopy(account)

    def get_account_by_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[Account]:
        now = now or utcnow()
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.password_reset_token
                    and account.password_reset_expires
                    and account.password_reset_expires > now
                    and hmac.compare_digest(account.password_reset_token, token)
                ):
                    return copy.deepcopy(account)
            return None

    def get_account_by_oauth(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_oauth(provider, provider_id)
            return copy.deepcopy(account) if account else None

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            account.email = normalize_email(account.email)
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            self._check_unique(account)
            now = utcnow()
            account.created_at = now
            account.updated_at = now
            account.version = 1
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def save_account(self, account: Account) -> Account:
        """Replace the stored document, failing if it changed since it was read."""
        with self._data_lock:
            current = self.accounts.get(account.id)
            if current is None:
                raise ConstraintViolation("account does not exist", {"account_id": account.id})
            if current.version != account.version:
                raise StaleWriteError(
                    "stale account",
                    {"account_id": account.id, "expected_version": current.version},
                )
            account.email = normalize_email(account.email)
            self._check_unique(account)
            account.version = current.version + 1
            account.updated_at = utcnow()
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            for digest, sess in list(self.sessions.items()):
                if sess.account_id == account_id:
                    self.sessions.pop(digest, None)
            self._persist_state()
            return True

    def list_accounts(self, limit: int = 100) -> list[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return [copy.deepcopy(a) for a in ordered[:limit]]

    def _find_by_email(self, normalized: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == normalized), None)

    def _find_by_oauth(self, provider: str, provider_id: str) -> Optional[Account]:
        for account in self.accounts.values():
            for identity in account.oauth_profiles:
                if identity.provider == provider and identity.provider_id == provider_id:
                    return account
        return None

    def _check_unique(self, account: Account) -> None:
        owner = self._find_by_email(account.email)
        if owner and owner.id != account.id:
            raise ConstraintViolation("email already exists", {"field": "email"})
        seen: set[str] = set()
        for identity in account.oauth_profiles:
            if identity.provider in seen:
                raise ConstraintViolation(
                    "provider already linked", {"provider": identity.provider}
                )
            seen.add(identity.provider)
            linked = self._find_by_oauth(identity.provider, identity.provider_id)
            if linked and linked.id != account.id:
                raise ConstraintViolation(
                    "oauth identity already linked", {"provider": identity.provider}
                )

    # refresh sessions
    def create_session(
        self,
        account_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshSession:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            sess = RefreshSession.new(
                account_id, token, expires_at, user_agent=user_agent, ip_addr=ip_addr
            )
            if sess.token_hash in self.sessions:
                raise ConstraintViolation("refresh token already stored", {"field": "token"})
            self.sessions[sess.token_hash] = sess
            self._persist_state()
            return copy.deepcopy(sess)

    def get_valid_session(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[RefreshSession]:
        with self._data_lock:
            sess = self.sessions.get(hash_token(token))
            if not sess or not sess.is_valid(now or utcnow()):
                return None
            return copy.deepcopy(sess)

    def revoke_session(self, token: str) -> bool:
        """Mark one session inactive; True only for the caller that flipped it."""
        with self._data_lock:
            sess = self.sessions.get(hash_token(token))
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.updated_at = utcnow()
            self._persist_state()
            return True

    def revoke_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for sess in self.sessions.values():
                if sess.account_id == account_id and sess.is_active:
                    sess.is_active = False
                    sess.updated_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def purge_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                digest
                for digest, sess in self.sessions.items()
                if not sess.is_active or sess.expires_at <= now
            ]
            for digest in stale:
                self.sessions.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    # snapshot
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_identity(self, identity: OAuthIdentity) -> dict[str, Any]:
        return {
            "provider": identity.provider,
            "provider_id": identity.provider_id,
            "email": identity.email,
            "first_name": identity.first_name,
            "last_name": identity.last_name,
            "profile_image": identity.profile_image,
            "linked_at": self._serialize_datetime(identity.linked_at),
        }

    def _deserialize_identity(self, data: dict) -> OAuthIdentity:
        return OAuthIdentity(
            provider=data["provider"],
            provider_id=data["provider_id"],
            email=data.get("email"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            profile_image=data.get("profile_image"),
            linked_at=self._deserialize_datetime(data.get("linked_at")) or utcnow(),
        )

    _ACCOUNT_DATETIMES = (
        "email_verification_code_expires",
        "email_verification_expires",
        "password_reset_expires",
        "last_login",
        "created_at",
        "updated_at",
    )
    _ACCOUNT_PLAIN = (
        "id",
        "email",
        "first_name",
        "last_name",
        "password_hash",
        "role",
        "is_active",
        "is_email_verified",
        "profile_image",
        "auth_provider",
        "email_verification_code",
        "email_verification_token",
        "password_reset_token",
        "version",
    )

    def _serialize_account(self, account: Account) -> dict[str, Any]:
        data: dict[str, Any] = {name: getattr(account, name) for name in self._ACCOUNT_PLAIN}
        for name in self._ACCOUNT_DATETIMES:
            data[name] = self._serialize_datetime(getattr(account, name))
        data["oauth_profiles"] = [
            self._serialize_identity(identity) for identity in account.oauth_profiles
        ]
        return data

    def _deserialize_account(self, data: dict) -> Account:
        kwargs: dict[str, Any] = {
            name: data[name] for name in self._ACCOUNT_PLAIN if name in data
        }
        for name in self._ACCOUNT_DATETIMES:
            value = self._deserialize_datetime(data.get(name))
            if value is not None:
                kwargs[name] = value
        kwargs["oauth_profiles"] = [
            self._deserialize_identity(item) for item in data.get("oauth_profiles", [])
        ]
        return Account(**kwargs)

    def _serialize_session(self, sess: RefreshSession) -> dict[str, Any]:
        return {
            "id": sess.id,
            "account_id": sess.account_id,
            "token_hash": sess.token_hash,
            "expires_at": self._serialize_datetime(sess.expires_at),
            "is_active": sess.is_active,
            "created_at": self._serialize_datetime(sess.created_at),
            "updated_at": self._serialize_datetime(sess.updated_at),
            "user_agent": sess.user_agent,
            "ip_addr": sess.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> RefreshSession:
        return RefreshSession(
            id=data["id"],
            account_id=data["account_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["token_hash"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True
