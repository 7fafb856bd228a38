"""Tests for OAuth identity resolution and the provider flow."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from authkeep.config import Settings
from authkeep.service.auth import AuthService, OAuthProfile
from authkeep.service.errors import AuthenticationError, ConflictError, ValidationError
from authkeep.storage.models import utcnow

PASSWORD = "TestPassword123!"


def _profile(provider="github", provider_id="gh-1", email="alice@example.com", **kwargs):
    return OAuthProfile(
        provider=provider,
        provider_id=provider_id,
        email=email,
        first_name=kwargs.pop("first_name", "Alice"),
        last_name=kwargs.pop("last_name", "Liddell"),
        **kwargs,
    )


@pytest.fixture
def oauth_service(memory_store, tmp_path, notifier, fast_hasher):
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        oauth_github_client_id="gh-client",
        oauth_github_client_secret="gh-secret",
        oauth_google_client_id="google-client",
        oauth_google_client_secret="google-secret",
        oauth_redirect_uri="http://localhost:8000/v1/auth/oauth/{provider}/callback",
    )
    return AuthService(
        memory_store, memory_store, settings, notifier=notifier, hasher=fast_hasher
    )


class TestResolveIdentity:
    @pytest.mark.asyncio
    async def test_same_identity_twice_returns_same_account(self, auth_service, memory_store):
        """Repeated logins with one provider identity never duplicate accounts."""
        first, tokens = await auth_service.resolve_oauth_identity(_profile())
        second, _ = await auth_service.resolve_oauth_identity(_profile())

        assert first.id == second.id
        assert tokens.access_token
        assert len(memory_store.list_accounts()) == 1

    @pytest.mark.asyncio
    async def test_new_account_is_verified_with_provider(self, auth_service):
        account, _ = await auth_service.resolve_oauth_identity(
            _profile(provider="google", provider_id="g-9", profile_image="https://img.example.com/a.png")
        )
        assert account.auth_provider == "google"
        assert account.is_email_verified is True
        assert account.password_hash is None
        assert account.linked_identity("google").provider_id == "g-9"
        assert account.profile_image == "https://img.example.com/a.png"

    @pytest.mark.asyncio
    async def test_email_match_links_existing_local_account(self, auth_service, memory_store):
        local = await auth_service.register("alice@example.com", PASSWORD, "Alice", "Liddell")

        linked, _ = await auth_service.resolve_oauth_identity(_profile(email="ALICE@example.com"))
        assert linked.id == local.id
        assert linked.auth_provider == "local"
        assert linked.is_email_verified is True
        assert linked.email_verification_code is None
        assert linked.linked_identity("github").provider_id == "gh-1"
        assert len(memory_store.list_accounts()) == 1
        # The password still works after linking
        await auth_service.login("alice@example.com", PASSWORD)

    @pytest.mark.asyncio
    async def test_link_wins_over_changed_provider_email(self, auth_service, memory_store):
        """A linked identity resolves to its account even if the provider email changed."""
        original, _ = await auth_service.resolve_oauth_identity(_profile())
        await auth_service.register("bob@example.com", PASSWORD, "Bob", "Builder")

        again, _ = await auth_service.resolve_oauth_identity(_profile(email="bob@example.com"))
        assert again.id == original.id

    @pytest.mark.asyncio
    async def test_second_identity_of_same_provider_conflicts(self, auth_service):
        await auth_service.resolve_oauth_identity(_profile(provider_id="gh-1"))
        with pytest.raises(ConflictError):
            await auth_service.resolve_oauth_identity(_profile(provider_id="gh-2"))

    @pytest.mark.asyncio
    async def test_multiple_providers_link_to_one_account(self, auth_service, memory_store):
        first, _ = await auth_service.resolve_oauth_identity(_profile(provider="github"))
        second, _ = await auth_service.resolve_oauth_identity(
            _profile(provider="facebook", provider_id="fb-1")
        )
        assert first.id == second.id
        assert {i.provider for i in second.oauth_profiles} == {"github", "facebook"}

    @pytest.mark.asyncio
    async def test_missing_email_is_rejected(self, auth_service, memory_store):
        with pytest.raises(AuthenticationError):
            await auth_service.resolve_oauth_identity(_profile(email=None))
        assert memory_store.list_accounts() == []

    @pytest.mark.asyncio
    async def test_unknown_provider_is_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.resolve_oauth_identity(_profile(provider="myspace"))

    @pytest.mark.asyncio
    async def test_inactive_account_is_refused(self, auth_service, memory_store):
        account, _ = await auth_service.resolve_oauth_identity(_profile())
        stored = memory_store.get_account(account.id)
        stored.is_active = False
        memory_store.save_account(stored)

        with pytest.raises(AuthenticationError):
            await auth_service.resolve_oauth_identity(_profile())

    @pytest.mark.asyncio
    async def test_concurrent_first_logins_create_one_account(self, auth_service, memory_store):
        results = await asyncio.gather(
            *[auth_service.resolve_oauth_identity(_profile()) for _ in range(3)]
        )
        assert len({account.id for account, _ in results}) == 1
        assert len(memory_store.list_accounts()) == 1

    @pytest.mark.asyncio
    async def test_oauth_account_deleted_without_password(self, auth_service, memory_store):
        account, _ = await auth_service.resolve_oauth_identity(_profile())
        await auth_service.delete_account(account.id)
        assert memory_store.get_account(account.id) is None


class TestOAuthFlow:
    @pytest.mark.asyncio
    async def test_start_returns_authorization_url(self, oauth_service):
        start = await oauth_service.start_oauth("github")

        assert start["provider"] == "github"
        assert start["authorization_url"].startswith("https://github.com/login/oauth/authorize?")
        assert f"state={start['state']}" in start["authorization_url"]
        assert "client_id=gh-client" in start["authorization_url"]

    @pytest.mark.asyncio
    async def test_unconfigured_provider_rejected(self, oauth_service):
        with pytest.raises(ValidationError):
            await oauth_service.start_oauth("facebook")

    @pytest.mark.asyncio
    async def test_unsupported_provider_rejected(self, oauth_service):
        with pytest.raises(ValidationError):
            await oauth_service.start_oauth("myspace")

    @pytest.mark.asyncio
    async def test_complete_with_registered_code(self, oauth_service):
        start = await oauth_service.start_oauth("github")
        oauth_service.register_oauth_code("github", "code-1", _profile())

        account, tokens = await oauth_service.complete_oauth("github", "code-1", start["state"])
        assert account.linked_identity("github").provider_id == "gh-1"
        assert tokens.refresh_token

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, oauth_service):
        start = await oauth_service.start_oauth("github")
        oauth_service.register_oauth_code("github", "code-1", _profile())
        await oauth_service.complete_oauth("github", "code-1", start["state"])

        oauth_service.register_oauth_code("github", "code-2", _profile())
        with pytest.raises(AuthenticationError):
            await oauth_service.complete_oauth("github", "code-2", start["state"])

    @pytest.mark.asyncio
    async def test_state_bound_to_provider(self, oauth_service):
        start = await oauth_service.start_oauth("github")
        oauth_service.register_oauth_code("google", "code-1", _profile(provider="google"))
        with pytest.raises(AuthenticationError):
            await oauth_service.complete_oauth("google", "code-1", start["state"])

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, oauth_service):
        start = await oauth_service.start_oauth("github")
        with oauth_service._state_lock:
            provider, _ = oauth_service._oauth_states[start["state"]]
            oauth_service._oauth_states[start["state"]] = (provider, utcnow() - timedelta(seconds=1))
        oauth_service.register_oauth_code("github", "code-1", _profile())

        with pytest.raises(AuthenticationError):
            await oauth_service.complete_oauth("github", "code-1", start["state"])
        assert oauth_service.cleanup_expired_states() == 0

    @pytest.mark.asyncio
    async def test_exchange_failure_is_unauthorized(self, oauth_service, monkeypatch):
        """Provider errors during the code exchange surface as a failed sign-in."""

        class FailingClient:
            def __init__(self, *args, **kwargs):
                pass

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return False

            async def post(self, *args, **kwargs):
                raise httpx.ConnectError("provider unreachable")

        monkeypatch.setattr(httpx, "AsyncClient", FailingClient)
        start = await oauth_service.start_oauth("github")
        with pytest.raises(AuthenticationError):
            await oauth_service.complete_oauth("github", "real-code", start["state"])


class TestParseUserinfo:
    def test_google_profile(self, auth_service):
        profile = auth_service._parse_oauth_userinfo(
            "google",
            {"sub": "123", "email": "a@example.com", "given_name": "Ada", "family_name": "Lovelace", "picture": "https://p/a.png"},
        )
        assert (profile.provider_id, profile.first_name, profile.last_name) == ("123", "Ada", "Lovelace")
        assert profile.profile_image == "https://p/a.png"

    def test_github_profile_splits_name(self, auth_service):
        profile = auth_service._parse_oauth_userinfo(
            "github", {"id": 42, "login": "ada", "name": "Ada King Lovelace", "avatar_url": "https://a/1"}
        )
        assert profile.provider_id == "42"
        assert profile.first_name == "Ada"
        assert profile.last_name == "King Lovelace"
        assert profile.email is None

    def test_facebook_profile_picture(self, auth_service):
        profile = auth_service._parse_oauth_userinfo(
            "facebook",
            {"id": "fb-1", "first_name": "Ada", "last_name": "L", "picture": {"data": {"url": "https://f/p.jpg"}}},
        )
        assert profile.profile_image == "https://f/p.jpg"
