"""Tests for the OAuth manager."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from oura_mcp.config import OURA_API_BASE_URL
from oura_mcp.oauth.errors import (
    ListenerBindError,
    NotAuthenticatedError,
    StateMismatchError,
    TokenStoreError,
    UpstreamRejectedError,
)
from oura_mcp.oauth.manager import AuthStatus, OAuthManager, _format_timedelta


def echo_state(state: str) -> dict[str, str]:
    return {"code": "abc123", "state": state}


@pytest.fixture
def messages():
    return []


@pytest.fixture
def manager(settings, store, exchanger, messages):
    return OAuthManager(settings, store=store, exchanger=exchanger, on_status=messages.append)


def stub_flow(manager, record=None, error=None):
    """Replace the interactive flow with a mock returning ``record`` or raising ``error``."""
    flow = MagicMock()
    flow.run = AsyncMock(return_value=record, side_effect=error)
    return patch.object(manager, "create_flow", return_value=flow)


class TestEnsureAuthenticated:
    """Tests for the cached / refreshed / interactive decision."""

    @pytest.mark.asyncio
    async def test_uses_valid_stored_record(self, manager, store, token_endpoint, make_record):
        record = make_record()
        store.save(record)

        with stub_flow(manager) as create_flow:
            result = await manager.ensure_authenticated()

        assert result == record
        assert manager.state.record == record
        assert token_endpoint.requests == []
        create_flow.assert_not_called()

    @pytest.mark.asyncio
    async def test_refreshes_expired_record(
        self, manager, store, token_endpoint, make_record, messages
    ):
        store.save(make_record(expires_in=60))
        token_endpoint.reply_tokens(access_token="refreshed", refresh_token="rotated")

        with stub_flow(manager) as create_flow:
            result = await manager.ensure_authenticated()

        assert result.access_token == "refreshed"
        assert token_endpoint.forms()[0]["refresh_token"] == "stored-refresh"
        assert store.load() == result
        create_flow.assert_not_called()
        assert "Token refreshed successfully." in messages

    @pytest.mark.asyncio
    async def test_failed_refresh_clears_credentials_before_flow(
        self, manager, store, token_endpoint, make_record
    ):
        store.save(make_record(expires_in=-60))
        token_endpoint.reply(400, json={"error": "invalid_grant"})
        new_record = make_record(access_token="from-flow")
        seen = {}

        async def run_flow():
            seen["file_exists"] = store.path.exists()
            seen["held"] = manager.state.record
            return new_record

        flow = MagicMock()
        flow.run = run_flow
        with patch.object(manager, "create_flow", return_value=flow):
            result = await manager.ensure_authenticated()

        assert seen == {"file_exists": False, "held": None}
        assert result == new_record
        assert store.load() == new_record
        assert len(token_endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_unusable_refresh_response_falls_back_to_flow(
        self, manager, store, token_endpoint, make_record
    ):
        store.save(make_record(expires_in=-60))
        token_endpoint.reply(
            200,
            content=b'{"access_token": "a", "refresh_token": "r", "expires_in": 1e400}',
            headers={"Content-Type": "application/json"},
        )
        record = make_record(access_token="from-flow")

        with stub_flow(manager, record=record) as create_flow:
            result = await manager.ensure_authenticated()

        create_flow.assert_called_once()
        assert result == record
        assert store.load() == record

    @pytest.mark.asyncio
    async def test_runs_flow_without_credentials(self, manager, store, make_record, messages):
        record = make_record(access_token="from-flow")

        with stub_flow(manager, record=record) as create_flow:
            result = await manager.ensure_authenticated()

        create_flow.assert_called_once()
        assert result == record
        assert store.load() == record
        assert "Authorization successful. Credentials saved." in messages

    @pytest.mark.asyncio
    async def test_corrupt_file_runs_flow(self, manager, store, make_record):
        store.store_dir.mkdir(parents=True)
        store.path.write_text("{garbage")
        record = make_record()

        with stub_flow(manager, record=record) as create_flow:
            await manager.ensure_authenticated()

        create_flow.assert_called_once()
        assert store.load() == record

    @pytest.mark.asyncio
    async def test_flow_error_propagates(self, manager, store):
        with stub_flow(manager, error=StateMismatchError()):
            with pytest.raises(StateMismatchError):
                await manager.ensure_authenticated()

        assert store.load() is None
        assert manager.state.record is None

    @pytest.mark.asyncio
    async def test_idempotent(self, manager, make_record, token_endpoint):
        with stub_flow(manager, record=make_record()) as create_flow:
            first = await manager.ensure_authenticated()
            second = await manager.ensure_authenticated()

        assert first == second
        create_flow.assert_called_once()
        assert token_endpoint.requests == []

    @pytest.mark.asyncio
    async def test_prefers_newer_stored_record(self, manager, store, make_record, token_endpoint):
        """An expired held record yields to a valid one another process stored."""
        manager.state.replace(make_record(expires_in=-60, access_token="stale"))
        store.save(make_record(access_token="fresh"))

        result = await manager.ensure_authenticated()

        assert result.access_token == "fresh"
        assert token_endpoint.requests == []

    @pytest.mark.asyncio
    async def test_save_failure_is_tolerated(self, manager, store, make_record):
        record = make_record()

        with stub_flow(manager, record=record):
            with patch.object(store, "save", side_effect=TokenStoreError("read-only")):
                result = await manager.ensure_authenticated()

        assert result == record
        assert manager.state.record == record

    @pytest.mark.asyncio
    async def test_end_to_end_interactive(
        self, settings, store, exchanger, token_endpoint, fake_browser, messages
    ):
        token_endpoint.reply_tokens(access_token="A", refresh_token="R")
        browser = fake_browser(echo_state)
        manager = OAuthManager(
            settings,
            store=store,
            exchanger=exchanger,
            on_status=messages.append,
            browser_opener=browser,
        )

        await manager.ensure_authenticated()
        await browser.responses()

        assert token_endpoint.forms()[0]["code"] == "abc123"
        assert store.load().access_token == "A"
        assert await manager.get_authorization_headers() == {
            "Authorization": "Bearer A",
            "Content-Type": "application/json",
        }

    @pytest.mark.asyncio
    async def test_end_to_end_port_in_use(
        self, settings, store, exchanger, fake_browser, messages, occupied_port
    ):
        browser = fake_browser(echo_state)
        manager = OAuthManager(
            settings,
            store=store,
            exchanger=exchanger,
            on_status=messages.append,
            browser_opener=browser,
        )

        with pytest.raises(ListenerBindError):
            await manager.ensure_authenticated()

        assert browser.urls == []
        assert not any("Open this URL" in m for m in messages)


class TestAuthorizationHeaders:
    """Tests for per-request header generation."""

    @pytest.mark.asyncio
    async def test_not_authenticated(self, manager):
        with pytest.raises(NotAuthenticatedError):
            await manager.get_authorization_headers()

    @pytest.mark.asyncio
    async def test_headers(self, manager, make_record):
        manager.state.replace(make_record(access_token="xyz"))

        assert await manager.get_authorization_headers() == {
            "Authorization": "Bearer xyz",
            "Content-Type": "application/json",
        }

    @pytest.mark.asyncio
    async def test_refreshes_inside_buffer(self, manager, store, token_endpoint, make_record):
        manager.state.replace(make_record(expires_in=120))
        token_endpoint.reply_tokens(access_token="refreshed")

        headers = await manager.get_authorization_headers()

        assert headers["Authorization"] == "Bearer refreshed"
        assert store.load().access_token == "refreshed"

    @pytest.mark.asyncio
    async def test_refresh_failure_propagates(self, manager, token_endpoint, make_record):
        manager.state.replace(make_record(expires_in=-60))
        token_endpoint.reply(401, json={"error": "invalid_grant"})

        with stub_flow(manager) as create_flow:
            with pytest.raises(UpstreamRejectedError):
                await manager.get_authorization_headers()

        create_flow.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self, manager, token_endpoint, make_record
    ):
        manager.state.replace(make_record(expires_in=-60))
        token_endpoint.reply_tokens(access_token="refreshed")

        results = await asyncio.gather(
            *(manager.get_authorization_headers() for _ in range(5))
        )

        assert len(token_endpoint.requests) == 1
        assert {h["Authorization"] for h in results} == {"Bearer refreshed"}

    def test_base_url(self, manager):
        assert manager.get_base_url() == OURA_API_BASE_URL == "https://api.ouraring.com/v2"


class TestLogoutAndStatus:
    """Tests for clearing credentials and reporting status."""

    def test_logout(self, manager, store, make_record):
        store.save(make_record())
        manager.state.replace(make_record())

        assert manager.logout() is True
        assert not store.path.exists()
        assert manager.state.record is None

        assert manager.logout() is False

    def test_logout_memory_only(self, manager, make_record):
        manager.state.replace(make_record())
        assert manager.logout() is True

    def test_status_unauthenticated(self, manager, store):
        status = manager.get_auth_status()

        assert status == AuthStatus(authenticated=False, token_file=str(store.path))

    def test_status_authenticated(self, manager, store, make_record):
        store.save(make_record(expires_in=7200))

        status = manager.get_auth_status()

        assert status.authenticated
        assert not status.expired
        assert status.has_refresh_token
        assert status.expires_in_human in ("1 hour", "2 hours")
        assert status.token_file == str(store.path)

    def test_status_expired(self, manager, store, make_record):
        store.save(make_record(expires_in=-60))

        status = manager.get_auth_status()

        assert status.expired
        assert status.expires_in_human == "Expired"

    def test_status_has_no_secrets(self, manager, store, make_record):
        store.save(make_record())

        data = manager.get_auth_status().to_dict()

        assert "stored-access" not in str(data)
        assert "stored-refresh" not in str(data)


class TestFormatTimedelta:
    @pytest.mark.parametrize(
        "td, expected",
        [
            (timedelta(seconds=-1), "Expired"),
            (timedelta(seconds=30), "30 seconds"),
            (timedelta(minutes=1), "1 minute"),
            (timedelta(minutes=45), "45 minutes"),
            (timedelta(hours=2), "2 hours"),
            (timedelta(days=1), "1 day"),
            (timedelta(days=30), "30 days"),
        ],
    )
    def test_format(self, td, expected):
        assert _format_timedelta(td) == expected


class TestManagerConstruction:
    def test_defaults_built_from_settings(self, settings):
        manager = OAuthManager(settings)

        assert manager.token_store.path == settings.token_dir / "tokens.json"
        assert manager.token_exchanger.token_url == settings.token_url
        assert manager.token_exchanger.redirect_uri == settings.redirect_uri

    def test_given_collaborators_are_used(self, settings, store, exchanger):
        manager = OAuthManager(settings, store=store, exchanger=exchanger)

        assert manager.token_store is store
        assert manager.token_exchanger is exchanger
