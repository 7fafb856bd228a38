from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

ROLES = ("user", "admin")
AUTH_PROVIDERS = ("local", "google", "github", "facebook")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_token(token: str) -> str:
    """Digest used as the storage key for refresh tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class OAuthIdentity:
    provider: str
    provider_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    first_name: str
    last_name: str = ""
    password_hash: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    is_email_verified: bool = False
    profile_image: Optional[str] = None
    auth_provider: str = "local"
    oauth_profiles: List[OAuthIdentity] = field(default_factory=list)
    email_verification_code: Optional[str] = None
    email_verification_code_expires: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Bumped by the store on every save; writers must present the version they read
    version: int = 0

    @classmethod
    def new(
        cls,
        email: str,
        first_name: str,
        last_name: str = "",
        *,
        password_hash: Optional[str] = None,
        role: str = "user",
        auth_provider: str = "local",
        is_email_verified: bool = False,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            role=role,
            auth_provider=auth_provider,
            is_email_verified=is_email_verified,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def effective_profile_image(self) -> Optional[str]:
        if self.profile_image:
            return self.profile_image
        for identity in self.oauth_profiles:
            if identity.profile_image:
                return identity.profile_image
        return None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def linked_identity(self, provider: str) -> Optional[OAuthIdentity]:
        for identity in self.oauth_profiles:
            if identity.provider == provider:
                return identity
        return None

    def clear_verification_fields(self) -> None:
        self.email_verification_code = None
        self.email_verification_code_expires = None
        self.email_verification_token = None
        self.email_verification_expires = None

    def clear_password_reset_fields(self) -> None:
        self.password_reset_token = None
        self.password_reset_expires = None


@dataclass
class RefreshSession:
    """Stored record of one issued refresh token, keyed by the token's digest."""

    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "RefreshSession":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=hash_token(token),
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and (now or utcnow()) < self.expires_at
