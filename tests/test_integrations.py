"""Tests for outbound HTTP integrations: Google APIs, token refresh and Telegram."""

import json
import time
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from micromanager.clients.google import GoogleApiClient, GoogleApiError
from micromanager.services.google_tokens import GoogleTokens, GoogleTokenStore, is_token_expired
from micromanager.services.notifications import MAX_TELEGRAM_MESSAGE, TelegramNotifier


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestGoogleApiClient:
    """Tests for the Calendar and Tasks REST wrapper."""

    @pytest.mark.asyncio
    async def test_bearer_header_and_items(self):
        """Test that requests carry the delegated token and return items."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": [{"id": "primary"}]})

        client = GoogleApiClient("ya29.token", http_client=mock_client(handler))

        assert await client.list_calendars() == [{"id": "primary"}]
        assert seen[0].headers["authorization"] == "Bearer ya29.token"
        assert seen[0].url.path == "/calendar/v3/users/me/calendarList"

    @pytest.mark.asyncio
    async def test_error_message_from_body(self):
        """Test that Google error bodies become readable errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"message": "Insufficient Permission"}})

        client = GoogleApiClient("ya29.token", http_client=mock_client(handler))

        with pytest.raises(GoogleApiError, match="403: Insufficient Permission") as exc_info:
            await client.list_events("primary", *_window(), 10)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_delete_no_content(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(204)

        client = GoogleApiClient("ya29.token", http_client=mock_client(handler))

        assert await client.delete_event("primary", "ev1") is None

    @pytest.mark.asyncio
    async def test_task_lists_follow_pages(self):
        """Test that task lists are collected across pages."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("pageToken") == "p2":
                return httpx.Response(200, json={"items": [{"id": "b"}]})
            return httpx.Response(200, json={"items": [{"id": "a"}], "nextPageToken": "p2"})

        client = GoogleApiClient("ya29.token", http_client=mock_client(handler))

        assert [item["id"] for item in await client.list_task_lists()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_ids_encoded_as_path_segments(self):
        """Test that calendar, event and task list ids cannot alter the request path."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"items": []})

        client = GoogleApiClient("ya29.token", http_client=mock_client(handler))

        await client.list_events("en.usa#holiday@group.v.calendar.google.com", *_window(), 10)
        await client.delete_event("primary", "ev1/../other?x=1")
        await client.list_tasks("list#1", show_completed=False)

        assert seen[0].url.path == "/calendar/v3/calendars/en.usa#holiday@group.v.calendar.google.com/events"
        assert seen[0].url.params["maxResults"] == "10"
        assert seen[1].url.raw_path.endswith(b"/events/ev1%2F..%2Fother%3Fx%3D1")
        assert seen[2].url.path == "/tasks/v1/lists/list#1/tasks"


def _window():
    start = datetime(2025, 1, 6, tzinfo=UTC)
    return start, start + timedelta(days=1)


class TestGoogleTokenStore:
    """Tests for delegated token lookup and refresh."""

    def test_expiry_buffer(self):
        """Test the five minute expiry buffer."""
        assert not is_token_expired(1000, now=600)
        assert is_token_expired(1000, now=700)

    @pytest.mark.asyncio
    async def test_unlinked_user(self):
        assert await GoogleTokenStore().get_access_token("user-1") is None

    @pytest.mark.asyncio
    async def test_valid_token_returned(self):
        store = GoogleTokenStore()
        store.link("user-1", GoogleTokens("ya29.fresh", None, int(time.time()) + 3600))

        assert await store.get_access_token("user-1") == "ya29.fresh"

    @pytest.mark.asyncio
    async def test_expiring_token_refreshed(self):
        """Test that an expiring token is refreshed and stored."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"access_token": "ya29.new", "expires_in": 3599})

        store = GoogleTokenStore("client-id", "client-secret", http_client=mock_client(handler))
        store.link("user-1", GoogleTokens("ya29.old", "1//refresh", int(time.time()) + 60))

        assert await store.get_access_token("user-1") == "ya29.new"
        assert await store.get_access_token("user-1") == "ya29.new"
        assert len(requests) == 1
        assert b"grant_type=refresh_token" in requests[0].content

    @pytest.mark.asyncio
    async def test_refresh_failure_returns_none(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        store = GoogleTokenStore("client-id", "client-secret", http_client=mock_client(handler))
        store.link("user-1", GoogleTokens("ya29.old", "1//refresh", 0))

        assert await store.get_access_token("user-1") is None

    @pytest.mark.asyncio
    async def test_refresh_without_oauth_client(self):
        """Test that refresh is skipped when no OAuth client is configured."""
        store = GoogleTokenStore()
        store.link("user-1", GoogleTokens("ya29.old", "1//refresh", 0))

        assert await store.get_access_token("user-1") is None


class TestTelegramNotifier:
    """Tests for Telegram delivery."""

    @pytest.mark.asyncio
    async def test_sends_to_linked_chat(self):
        """Test the Bot API call for a linked user."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        notifier = TelegramNotifier("123:abc", http_client=mock_client(handler))
        notifier.link_chat("user-1", 42)

        await notifier.notify("user-1", "x" * (MAX_TELEGRAM_MESSAGE + 10))

        assert requests[0].url.path == "/bot123:abc/sendMessage"
        payload = json.loads(requests[0].content)
        assert payload["chat_id"] == 42
        assert len(payload["text"]) == MAX_TELEGRAM_MESSAGE

    @pytest.mark.asyncio
    async def test_unlinked_user_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        await TelegramNotifier("123:abc", http_client=mock_client(handler)).notify("user-1", "hi")

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self):
        """Test that delivery errors surface to the detached task."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502)

        notifier = TelegramNotifier("123:abc", http_client=mock_client(handler))
        notifier.link_chat("user-1", 42)

        with pytest.raises(httpx.HTTPStatusError):
            await notifier.notify("user-1", "hi")
