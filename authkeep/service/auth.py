from __future__ import annotations

import asyncio
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, TypeVar
from urllib.parse import urlencode, urlparse

import httpx

from authkeep.config import Settings
from authkeep.logging import get_logger
from authkeep.service.dedup import CooldownGate, DuplicateCallSuppressor
from authkeep.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from authkeep.service.hashing import CredentialHasher
from authkeep.service.tokens import (
    TokenError,
    TokenExpiredError,
    TokenPair,
    TokenPurpose,
    TokenSigner,
    extract_bearer,
)
from authkeep.storage.errors import ConstraintViolation, StaleWriteError
from authkeep.storage.models import (
    Account,
    OAuthIdentity,
    RefreshSession,
    normalize_email,
)

logger = get_logger(__name__)

T = TypeVar("T")

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "facebook": {
        "auth_url": "https://www.facebook.com/v19.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v19.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/me?fields=id,name,email,first_name,last_name,picture.type(large)",
        "scope": "email public_profile",
    },
}

INVALID_CREDENTIALS = "invalid email or password"
INVALID_REFRESH_TOKEN = "invalid refresh token"
INVALID_OTP = "invalid or expired code"
EMAIL_VERIFICATION_INVALID = "email verification token is invalid or has expired"
PASSWORD_RESET_INVALID = "password reset token is invalid or has expired"
ACCOUNT_NOT_FOUND = "user not found"

# Optimistic writes retried this many times before reporting a conflict
_SAVE_ATTEMPTS = 3


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_verification_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def get_account_by_email_code(
        self, email: str, code: str, now: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def get_account_by_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[Account]: ...

    def get_account_by_oauth(
        self, provider: str, provider_id: str
    ) -> Optional[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def save_account(self, account: Account) -> Account: ...

    def delete_account(self, account_id: str) -> bool: ...

    def list_accounts(self, limit: int = 100) -> list[Account]: ...


class SessionStore(Protocol):
    def create_session(
        self,
        account_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> RefreshSession: ...

    def get_valid_session(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[RefreshSession]: ...

    def revoke_session(self, token: str) -> bool: ...

    def revoke_account_sessions(self, account_id: str) -> int: ...

    def purge_sessions(self, now: Optional[datetime] = None) -> int: ...


class Notifier(Protocol):
    def send_verification(self, to_email: str, name: str, code: str, link: str) -> bool: ...

    def send_password_reset(self, to_email: str, name: str, link: str) -> bool: ...

    def send_welcome(self, to_email: str, name: str) -> bool: ...


@dataclass
class AuthContext:
    account_id: str
    email: str
    role: str
    is_email_verified: bool
    account: Account


@dataclass
class OAuthProfile:
    """Identity asserted by a provider callback, already normalised per provider."""

    provider: str
    provider_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image: Optional[str] = None


def _split_name(full: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not full or not full.strip():
        return None, None
    parts = full.strip().split()
    return parts[0], " ".join(parts[1:]) or None


class AuthService:
    """Account lifecycle: registration, sessions, verification, recovery and OAuth."""

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionStore,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        signer: Optional[TokenSigner] = None,
        hasher: Optional[CredentialHasher] = None,
        cache: Any = None,
        suppressor: Optional[DuplicateCallSuppressor] = None,
        cooldown: Optional[CooldownGate] = None,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.settings = settings
        self.notifier = notifier
        self.signer = signer or TokenSigner(settings)
        self.hasher = hasher or CredentialHasher()
        self.cache = cache
        self.suppressor = suppressor or DuplicateCallSuppressor()
        self.cooldown = cooldown or CooldownGate(cache)
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_code_registry: dict[tuple[str, str], OAuthProfile] = {}
        self._dummy_hash: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # helpers
    def _claims(self, account: Account) -> dict[str, Any]:
        return {"sub": account.id, "email": account.email, "role": account.role}

    def _start_session(
        self,
        account: Account,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> TokenPair:
        tokens = self.signer.generate_tokens(self._claims(account))
        self.sessions.create_session(
            account.id,
            tokens.refresh_token,
            tokens.refresh_expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        return tokens

    def _issue_verification(self, account: Account) -> None:
        """Attach a fresh code and link token, superseding any pending pair."""
        now = self._now()
        account.email_verification_code = f"{secrets.randbelow(10**6):06d}"
        account.email_verification_code_expires = now + timedelta(
            minutes=self.settings.email_code_ttl_minutes
        )
        ttl = timedelta(minutes=self.settings.email_verification_ttl_minutes)
        account.email_verification_token = self.signer.issue(
            {"sub": account.id, "email": account.email},
            TokenPurpose.EMAIL_VERIFICATION,
            ttl,
        )
        account.email_verification_expires = now + ttl

    def _link(self, path: str, token: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/{path}?{urlencode({'token': token})}"

    async def _notify(self, kind: str, send: Callable[..., bool], *args: Any) -> bool:
        # Delivery problems never fail the operation that triggered them
        if self.notifier is None:
            return False
        try:
            delivered = await asyncio.to_thread(send, *args)
        except Exception as exc:
            logger.warning("notification_failed", kind=kind, error=str(exc))
            return False
        if not delivered:
            logger.warning("notification_not_delivered", kind=kind)
        return bool(delivered)

    async def _send_verification(self, account: Account) -> None:
        if self.notifier is None:
            return
        await self._notify(
            "verification",
            self.notifier.send_verification,
            account.email,
            account.first_name,
            account.email_verification_code,
            self._link("verify-email", account.email_verification_token),
        )

    async def _send_welcome(self, account: Account) -> None:
        if self.notifier is None:
            return
        key = f"welcome:{account.email}"

        async def _deliver() -> None:
            if not await self.cooldown.acquire(
                key, self.settings.welcome_cooldown_seconds
            ):
                logger.info("welcome_email_suppressed", account_id=account.id)
                return
            await self._notify(
                "welcome", self.notifier.send_welcome, account.email, account.first_name
            )

        try:
            await self.suppressor.run(key, _deliver)
        except Exception as exc:
            logger.warning("welcome_email_failed", account_id=account.id, error=str(exc))

    def _check_password(self, account: Optional[Account], password: str) -> bool:
        if account is None or not account.password_hash:
            # Spend the same hashing time for unknown accounts
            if self._dummy_hash is None:
                self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
            self.hasher.verify(password, self._dummy_hash)
            return False
        return self.hasher.verify(password, account.password_hash)

    def _update_account(
        self,
        load: Callable[[], Optional[Account]],
        mutate: Callable[[Account], T],
        missing: Callable[[], Exception],
    ) -> tuple[Account, T]:
        """Read-modify-write with compare-and-set on the account version.

        ``load`` is re-run after a lost race so preconditions are checked
        against the winner's state; ``missing`` builds the error raised when
        the document no longer qualifies.
        """
        for _ in range(_SAVE_ATTEMPTS):
            account = load()
            if account is None:
                raise missing()
            result = mutate(account)
            try:
                return self.accounts.save_account(account), result
            except StaleWriteError:
                logger.info("account_write_conflict", account_id=account.id)
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
        raise ConflictError("account was modified concurrently; retry the request")

    # registration and login
    async def register(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> Account:
        normalized = normalize_email(email)
        if self.accounts.get_account_by_email(normalized):
            raise ConflictError("user already exists with this email")
        account = Account.new(
            normalized,
            first_name,
            last_name,
            password_hash=self.hasher.hash(password),
        )
        self._issue_verification(account)
        try:
            account = self.accounts.create_account(account)
        except ConstraintViolation as exc:
            raise ConflictError("user already exists with this email") from exc
        logger.info("account_registered", account_id=account.id)
        await self._send_verification(account)
        return account

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Account, TokenPair]:
        account = self.accounts.get_account_by_email(email)
        if not self._check_password(account, password) or not account.is_active:
            logger.info("login_failed")
            raise AuthenticationError(INVALID_CREDENTIALS)

        def _stamp(acct: Account) -> None:
            acct.last_login = self._now()

        account, _ = self._update_account(
            lambda: self.accounts.get_account(account.id),
            _stamp,
            lambda: AuthenticationError(INVALID_CREDENTIALS),
        )
        tokens = self._start_session(account, user_agent=user_agent, ip_addr=ip_addr)
        logger.info("login_succeeded", account_id=account.id)
        return account, tokens

    # sessions
    async def refresh_token(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Account, TokenPair]:
        """Rotate a refresh token: retire the presented one, issue a new pair.

        Every failure is reported as the same error; a token that still has a
        valid signature but no live session is logged as possible reuse.
        """
        try:
            payload = self.signer.verify(refresh_token, TokenPurpose.REFRESH)
        except TokenError:
            raise AuthenticationError(INVALID_REFRESH_TOKEN) from None
        session = self.sessions.get_valid_session(refresh_token, self._now())
        if session is None or session.account_id != payload.get("sub"):
            logger.warning("refresh_token_reuse_or_revoked", account_id=payload.get("sub"))
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        account = self.accounts.get_account(session.account_id)
        if account is None or not account.is_active:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        # Revoke first: only the caller that flips the record may mint a pair
        if not self.sessions.revoke_session(refresh_token):
            logger.warning("refresh_token_race_lost", account_id=account.id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        try:
            tokens = self._start_session(
                account,
                user_agent=user_agent or session.user_agent,
                ip_addr=ip_addr or session.ip_addr,
            )
        except ConstraintViolation:
            # Account removed after the old session was retired
            logger.warning("refresh_token_account_vanished", account_id=account.id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN) from None
        logger.info("refresh_token_rotated", account_id=account.id)
        return account, tokens

    async def logout(self, refresh_token: str) -> None:
        if self.sessions.revoke_session(refresh_token):
            logger.info("session_revoked")

    async def logout_all(self, account_id: str) -> int:
        revoked = self.sessions.revoke_account_sessions(account_id)
        logger.info("sessions_revoked", account_id=account_id, count=revoked)
        return revoked

    async def purge_sessions(self) -> int:
        purged = self.sessions.purge_sessions(self._now())
        cleaned = self.cleanup_expired_states()
        self.cooldown.sweep()
        if purged or cleaned:
            logger.info("session_sweep", purged=purged, oauth_states=cleaned)
        return purged

    # passwords
    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = self.accounts.get_account(account_id)
        if account is None:
            raise NotFoundError(ACCOUNT_NOT_FOUND)
        if not account.has_password or not self.hasher.verify(
            current_password, account.password_hash
        ):
            raise AuthenticationError("current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "new password must be different from current password",
                detail={"field": "new_password"},
            )
        new_hash = self.hasher.hash(new_password)
        expected_hash = account.password_hash

        def _load() -> Optional[Account]:
            acct = self.accounts.get_account(account_id)
            # A concurrent change already replaced the password we checked
            if acct is None or acct.password_hash != expected_hash:
                return None
            return acct

        def _apply(acct: Account) -> None:
            acct.password_hash = new_hash
            acct.clear_password_reset_fields()

        self._update_account(
            _load, _apply, lambda: AuthenticationError("current password is incorrect")
        )
        await self.logout_all(account_id)
        logger.info("password_changed", account_id=account_id)

    async def generate_reset_token(self, email: str) -> str:
        account = self.accounts.get_account_by_email(email)
        if account is None or not account.is_active:
            raise NotFoundError(ACCOUNT_NOT_FOUND)
        ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)

        def _apply(acct: Account) -> str:
            token = self.signer.issue(
                {"sub": acct.id, "email": acct.email}, TokenPurpose.PASSWORD_RESET, ttl
            )
            acct.password_reset_token = token
            acct.password_reset_expires = self._now() + ttl
            return token

        account, token = self._update_account(
            lambda: self.accounts.get_account(account.id),
            _apply,
            lambda: NotFoundError(ACCOUNT_NOT_FOUND),
        )
        logger.info("password_reset_requested", account_id=account.id)
        if self.notifier is not None:
            await self._notify(
                "password_reset",
                self.notifier.send_password_reset,
                account.email,
                account.first_name,
                self._link("reset-password", token),
            )
        return token

    async def reset_password(self, token: str, new_password: str) -> None:
        try:
            payload = self.signer.verify(token, TokenPurpose.PASSWORD_RESET)
        except TokenError:
            raise AuthenticationError(PASSWORD_RESET_INVALID) from None
        new_hash = self.hasher.hash(new_password)

        def _load() -> Optional[Account]:
            acct = self.accounts.get_account_by_reset_token(token, self._now())
            if acct is None or acct.id != payload.get("sub") or not acct.is_active:
                return None
            return acct

        def _apply(acct: Account) -> None:
            acct.password_hash = new_hash
            acct.clear_password_reset_fields()

        account, _ = self._update_account(
            _load, _apply, lambda: AuthenticationError(PASSWORD_RESET_INVALID)
        )
        await self.logout_all(account.id)
        logger.info("password_reset_completed", account_id=account.id)

    # email verification
    def _mark_verified(self, account: Account) -> bool:
        if account.is_email_verified:
            return False
        account.is_email_verified = True
        account.clear_verification_fields()
        return True

    async def _finish_verification(
        self, load: Callable[[], Optional[Account]], invalid: str
    ) -> tuple[Account, TokenPair]:
        account, newly_verified = self._update_account(
            load, self._mark_verified, lambda: AuthenticationError(invalid)
        )
        tokens = self._start_session(account)
        if newly_verified:
            logger.info("email_verified", account_id=account.id)
            await self._send_welcome(account)
        else:
            logger.info("email_already_verified", account_id=account.id)
        return account, tokens

    async def verify_email(self, token: str) -> tuple[Account, TokenPair]:
        """Link path. Re-clicking a link for a verified account still signs in."""
        try:
            payload = self.signer.verify(token, TokenPurpose.EMAIL_VERIFICATION)
        except TokenError:
            raise AuthenticationError(EMAIL_VERIFICATION_INVALID) from None
        subject = payload.get("sub")

        def _load() -> Optional[Account]:
            acct = self.accounts.get_account_by_verification_token(token, self._now())
            if acct is None:
                acct = self.accounts.get_account(subject) if subject else None
                if acct is None or not acct.is_email_verified:
                    return None
            if acct.id != subject or not acct.is_active:
                return None
            return acct

        return await self._finish_verification(_load, EMAIL_VERIFICATION_INVALID)

    async def verify_email_with_otp(
        self, email: str, code: str
    ) -> tuple[Account, TokenPair]:
        normalized = normalize_email(email)

        async def _verify() -> tuple[Account, TokenPair]:
            def _load() -> Optional[Account]:
                acct = self.accounts.get_account_by_email_code(
                    normalized, code, self._now()
                )
                if acct is None or not acct.is_active:
                    return None
                return acct

            return await self._finish_verification(_load, INVALID_OTP)

        return await self.suppressor.run(f"verify-otp:{normalized}:{code}", _verify)

    async def resend_verification(self, email: str) -> None:
        account = self.accounts.get_account_by_email(email)
        if account is None:
            raise NotFoundError(ACCOUNT_NOT_FOUND)
        if account.is_email_verified:
            raise ConflictError("email is already verified")

        def _load() -> Optional[Account]:
            acct = self.accounts.get_account(account.id)
            if acct is not None and acct.is_email_verified:
                raise ConflictError("email is already verified")
            return acct

        account, _ = self._update_account(
            _load, self._issue_verification, lambda: NotFoundError(ACCOUNT_NOT_FOUND)
        )
        logger.info("verification_resent", account_id=account.id)
        await self._send_verification(account)

    # account
    async def get_profile(self, account_id: str) -> Account:
        account = self.accounts.get_account(account_id)
        if account is None:
            raise NotFoundError(ACCOUNT_NOT_FOUND)
        return account

    async def update_profile(
        self,
        account_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> Account:
        """Apply the supplied fields; ``profile_image=""`` removes the image."""

        def _apply(acct: Account) -> None:
            if first_name is not None:
                acct.first_name = first_name
            if last_name is not None:
                acct.last_name = last_name
            if profile_image is not None:
                acct.profile_image = profile_image or None

        account, _ = self._update_account(
            lambda: self.accounts.get_account(account_id),
            _apply,
            lambda: NotFoundError(ACCOUNT_NOT_FOUND),
        )
        logger.info("profile_updated", account_id=account_id)
        return account

    async def list_accounts(self, limit: int = 100) -> list[Account]:
        return self.accounts.list_accounts(limit=max(1, min(limit, 500)))

    async def set_role(self, account_id: str, role: str) -> Account:
        if role not in ("user", "admin"):
            raise ValidationError("invalid role", detail={"field": "role"})

        def _apply(acct: Account) -> None:
            acct.role = role

        account, _ = self._update_account(
            lambda: self.accounts.get_account(account_id),
            _apply,
            lambda: NotFoundError(ACCOUNT_NOT_FOUND),
        )
        logger.info("account_role_changed", account_id=account_id, role=role)
        return account

    async def delete_account(
        self, account_id: str, current_password: Optional[str] = None
    ) -> None:
        """Destroy the account after revoking every session.

        Local accounts must re-enter their password; accounts whose primary
        provider is OAuth are trusted on the strength of the access token.
        """
        account = self.accounts.get_account(account_id)
        if account is None:
            raise NotFoundError(ACCOUNT_NOT_FOUND)
        if account.auth_provider == "local":
            if not current_password:
                raise AuthenticationError("current password is required")
            if not account.has_password or not self.hasher.verify(
                current_password, account.password_hash
            ):
                raise AuthenticationError("current password is incorrect")
        await self.logout_all(account_id)
        if not self.accounts.delete_account(account_id):
            logger.error("account_delete_inconsistent", account_id=account_id)
            raise ServerError("account vanished during deletion")
        logger.info("account_deleted", account_id=account_id)

    # OAuth
    async def resolve_oauth_identity(
        self,
        profile: OAuthProfile,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Account, TokenPair]:
        """Map a provider identity onto exactly one account.

        Order matters: an existing (provider, provider_id) link wins, then an
        account holding the provider-asserted email, and only then a new
        account is created.
        """
        if profile.provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"unsupported oauth provider: {profile.provider}")
        if not profile.provider_id:
            raise AuthenticationError("oauth identity missing provider id")
        for _ in range(_SAVE_ATTEMPTS):
            try:
                account = self._resolve_oauth_account(profile)
            except ConstraintViolation as exc:
                # Another request linked or created this identity first
                logger.info("oauth_resolution_conflict", reason=exc.message)
                continue
            tokens = self._start_session(account, user_agent=user_agent, ip_addr=ip_addr)
            return account, tokens
        raise ConflictError("account was modified concurrently; retry the request")

    def _resolve_oauth_account(self, profile: OAuthProfile) -> Account:
        now = self._now()
        linked = self.accounts.get_account_by_oauth(profile.provider, profile.provider_id)
        if linked is not None:
            if not linked.is_active:
                raise AuthenticationError("account is deactivated")
            linked.last_login = now
            logger.info("oauth_login_linked", account_id=linked.id, provider=profile.provider)
            return self.accounts.save_account(linked)

        if not profile.email:
            raise AuthenticationError("oauth provider did not supply an email address")
        email = normalize_email(profile.email)
        identity = OAuthIdentity(
            provider=profile.provider,
            provider_id=profile.provider_id,
            email=email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            profile_image=profile.profile_image,
        )

        existing = self.accounts.get_account_by_email(email)
        if existing is not None:
            if not existing.is_active:
                raise AuthenticationError("account is deactivated")
            if existing.linked_identity(profile.provider) is not None:
                raise ConflictError(
                    f"account is already linked to another {profile.provider} identity"
                )
            existing.oauth_profiles.append(identity)
            if not existing.is_email_verified:
                existing.is_email_verified = True
                existing.clear_verification_fields()
            if not existing.profile_image and profile.profile_image:
                existing.profile_image = profile.profile_image
            existing.last_login = now
            logger.info("oauth_identity_linked", account_id=existing.id, provider=profile.provider)
            return self.accounts.save_account(existing)

        account = Account.new(
            email,
            profile.first_name or "User",
            profile.last_name or "",
            auth_provider=profile.provider,
            is_email_verified=True,
        )
        account.profile_image = profile.profile_image
        account.oauth_profiles = [identity]
        account.last_login = now
        account = self.accounts.create_account(account)
        logger.info("oauth_account_created", account_id=account.id, provider=profile.provider)
        return account

    def _get_oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        if provider == "facebook":
            return self.settings.oauth_facebook_client_id, self.settings.oauth_facebook_client_secret
        return None, None

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("oauth redirect uri must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("insecure redirect uri not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("oauth redirect uri must include host")
        return redirect_uri

    def _callback_uri(self, provider: str) -> str:
        base = self.settings.oauth_redirect_uri
        if not base:
            raise ValidationError("no oauth redirect uri configured")
        return self._validate_redirect_uri(base.replace("{provider}", provider))

    async def start_oauth(self, provider: str) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"unsupported oauth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"oauth provider {provider} is not configured")
        callback_uri = self._callback_uri(provider)

        state = uuid.uuid4().hex
        expires_at = self._now() + timedelta(minutes=10)
        if self.cache is not None:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            with self._state_lock:
                self._oauth_states[state] = (provider, expires_at)

        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        if provider == "google":
            params["prompt"] = "select_account"
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def _pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if stored is None and self.cache is not None:
            stored = await self.cache.pop_oauth_state(state)
        return stored

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [s for s, (_, exp) in self._oauth_states.items() if exp <= now]
            for state in expired:
                self._oauth_states.pop(state, None)
        return len(expired)

    def register_oauth_code(self, provider: str, code: str, profile: OAuthProfile) -> None:
        """Record an already-exchanged identity for offline flows and tests."""
        with self._state_lock:
            self._oauth_code_registry[(provider, code)] = profile

    async def complete_oauth(
        self,
        provider: str,
        code: str,
        state: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[Account, TokenPair]:
        stored = await self._pop_oauth_state(state)
        if stored is None or stored[0] != provider or stored[1] <= self._now():
            logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("invalid or expired oauth state")
        profile = await self._exchange_oauth_code(provider, code)
        if profile is None:
            raise AuthenticationError("oauth sign-in failed")
        return await self.resolve_oauth_identity(
            profile, user_agent=user_agent, ip_addr=ip_addr
        )

    async def _exchange_oauth_code(self, provider: str, code: str) -> Optional[OAuthProfile]:
        """Trade an authorization code for the provider's view of the user."""
        with self._state_lock:
            registered = self._oauth_code_registry.pop((provider, code), None)
        if registered is not None:
            return registered

        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._callback_uri(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(config["userinfo_url"], headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                profile = self._parse_oauth_userinfo(provider, userinfo)
                if provider == "github" and not profile.email:
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=headers
                    )
                    if emails_response.status_code == 200:
                        profile.email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        if not profile.provider_id:
            logger.error("oauth_identity_missing_uid", provider=provider)
            return None
        logger.info("oauth_exchange_success", provider=provider)
        return profile

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> OAuthProfile:
        if provider == "google":
            first, last = userinfo.get("given_name"), userinfo.get("family_name")
            if not first:
                first, last = _split_name(userinfo.get("name"))
            return OAuthProfile(
                provider=provider,
                provider_id=str(userinfo.get("id") or userinfo.get("sub") or ""),
                email=userinfo.get("email"),
                first_name=first,
                last_name=last,
                profile_image=userinfo.get("picture"),
            )
        if provider == "github":
            first, last = _split_name(userinfo.get("name"))
            return OAuthProfile(
                provider=provider,
                provider_id=str(userinfo.get("id") or ""),
                email=userinfo.get("email"),
                first_name=first or userinfo.get("login"),
                last_name=last,
                profile_image=userinfo.get("avatar_url"),
            )
        if provider == "facebook":
            first, last = userinfo.get("first_name"), userinfo.get("last_name")
            if not first:
                first, last = _split_name(userinfo.get("name"))
            picture = ((userinfo.get("picture") or {}).get("data") or {}).get("url")
            return OAuthProfile(
                provider=provider,
                provider_id=str(userinfo.get("id") or ""),
                email=userinfo.get("email"),
                first_name=first,
                last_name=last,
                profile_image=picture,
            )
        return OAuthProfile(provider=provider, provider_id=str(userinfo.get("id") or ""))

    # request gate
    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("no token provided")
        try:
            payload = self.signer.verify(token, TokenPurpose.ACCESS)
        except TokenExpiredError:
            raise AuthenticationError(
                "token has expired", detail={"reason": "token_expired"}
            ) from None
        except TokenError:
            raise AuthenticationError(
                "invalid token", detail={"reason": "invalid_token"}
            ) from None
        subject = payload.get("sub")
        account = self.accounts.get_account(subject) if subject else None
        if account is None or not account.is_active:
            raise AuthenticationError("user not found or inactive")
        return AuthContext(
            account_id=account.id,
            email=account.email,
            role=account.role,
            is_email_verified=account.is_email_verified,
            account=account,
        )

    async def authenticate_optional(
        self, authorization: Optional[str]
    ) -> Optional[AuthContext]:
        try:
            return await self.authenticate(authorization)
        except AuthenticationError:
            return None


__all__ = [
    "AccountStore",
    "AuthContext",
    "AuthService",
    "Notifier",
    "OAUTH_PROVIDERS",
    "OAuthProfile",
    "SessionStore",
]
