"""
Tests for montage.feature_flags.authority.HttpDecisionAuthority.

Requests are answered by httpx.MockTransport, no network involved.

Run with:
    pytest tests/test_http_authority.py -v
"""

import json

import httpx
import pytest

from montage.feature_flags import (
    AuthorityError,
    DecisionAuthority,
    EvaluationContext,
    HttpDecisionAuthority,
    MalformedResponseError,
    TrackEventRequest,
)
from montage.logger.context import clear_context, set_request_id

BASE_URL = "https://flags.example.com/api"


def make_authority(handler):
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return HttpDecisionAuthority(client=client), client


@pytest.fixture
def ctx():
    return EvaluationContext(subject_id="user-1", environment="production", attributes={"plan": "pro"})


# =============================================================================
# TESTS: PROTOCOL
# =============================================================================


class TestProtocol:
    """Test the HTTP authority satisfies DecisionAuthority."""

    def test_is_decision_authority(self):
        """Test runtime protocol check."""
        assert isinstance(HttpDecisionAuthority(), DecisionAuthority)


# =============================================================================
# TESTS: FLAGS
# =============================================================================


class TestEvaluateFlag:
    """Test GET /features/flags/{key}/evaluate."""

    @pytest.mark.asyncio
    async def test_request_shape(self, ctx):
        """Test path, query and headers sent to the authority."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["request"] = request
            return httpx.Response(200, json={"enabled": True, "reason": "percentage_enabled"})

        authority, client = make_authority(handler)
        try:
            set_request_id("req-123")
            body = await authority.evaluate_flag("dark_mode", ctx)
        finally:
            clear_context()
            await client.aclose()

        request = seen["request"]
        assert body == {"enabled": True, "reason": "percentage_enabled"}
        assert request.method == "GET"
        assert request.url.path == "/api/features/flags/dark_mode/evaluate"
        assert request.url.params["user_id"] == "user-1"
        assert request.url.params["environment"] == "production"
        assert request.url.params["plan"] == "pro"
        assert request.headers["X-Environment"] == "production"
        assert request.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_server_error_raises(self, ctx):
        """Test a 5xx is an AuthorityError."""
        authority, client = make_authority(lambda request: httpx.Response(503))
        async with client:
            with pytest.raises(AuthorityError, match="503"):
                await authority.evaluate_flag("dark_mode", ctx)

    @pytest.mark.asyncio
    async def test_flag_not_found_raises(self, ctx):
        """Test a 404 on a flag is an error, not a decision."""
        authority, client = make_authority(lambda request: httpx.Response(404))
        async with client:
            with pytest.raises(AuthorityError):
                await authority.evaluate_flag("dark_mode", ctx)

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, ctx):
        """Test connection failures are wrapped in AuthorityError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        authority, client = make_authority(handler)
        async with client:
            with pytest.raises(AuthorityError) as exc_info:
                await authority.evaluate_flag("dark_mode", ctx)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_non_json_raises(self, ctx):
        """Test an HTML error page is malformed."""
        authority, client = make_authority(lambda request: httpx.Response(200, text="<html>oops</html>"))
        async with client:
            with pytest.raises(MalformedResponseError):
                await authority.evaluate_flag("dark_mode", ctx)

    @pytest.mark.asyncio
    async def test_non_object_raises(self, ctx):
        """Test a JSON array is malformed."""
        authority, client = make_authority(lambda request: httpx.Response(200, json=[True]))
        async with client:
            with pytest.raises(MalformedResponseError):
                await authority.evaluate_flag("dark_mode", ctx)


# =============================================================================
# TESTS: EXPERIMENTS
# =============================================================================


class TestEvaluateExperiment:
    """Test GET /features/experiments/{key}/evaluate."""

    @pytest.mark.asyncio
    async def test_returns_body(self, ctx):
        """Test the experiment body is returned as-is."""
        definition = {"status": "running", "traffic_allocation": 50, "variants": []}
        authority, client = make_authority(lambda request: httpx.Response(200, json=definition))
        async with client:
            assert await authority.evaluate_experiment("onboarding_flow_test", ctx) == definition

    @pytest.mark.asyncio
    async def test_not_found_returns_none(self, ctx):
        """Test a 404 means the experiment does not exist."""
        authority, client = make_authority(lambda request: httpx.Response(404))
        async with client:
            assert await authority.evaluate_experiment("ghost_test", ctx) is None

    @pytest.mark.asyncio
    async def test_server_error_raises(self, ctx):
        """Test a 500 is still an error."""
        authority, client = make_authority(lambda request: httpx.Response(500))
        async with client:
            with pytest.raises(AuthorityError):
                await authority.evaluate_experiment("onboarding_flow_test", ctx)


# =============================================================================
# TESTS: EVENTS
# =============================================================================


class TestTrackEvent:
    """Test POST /features/events."""

    @pytest.mark.asyncio
    async def test_posts_event(self):
        """Test the event body and acknowledgement."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        authority, client = make_authority(handler)
        event = TrackEventRequest("flag_exposed", subject_id="user-1", flag_key="dark_mode")
        async with client:
            ack = await authority.track_event(event)

        assert ack == {"success": True}
        assert seen["method"] == "POST"
        assert seen["path"] == "/api/features/events"
        assert seen["body"] == {
            "event_type": "flag_exposed",
            "user_id": "user-1",
            "flag_key": "dark_mode",
            "properties": {},
        }


# =============================================================================
# TESTS: CLIENT LIFECYCLE
# =============================================================================


class TestLifecycle:
    """Test client ownership."""

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        """Test the context manager closes a client it created."""
        async with HttpDecisionAuthority(BASE_URL) as authority:
            client = authority._client
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_injected_client_left_open(self):
        """Test an injected client is the caller's to close."""
        client = httpx.AsyncClient()
        async with HttpDecisionAuthority(client=client):
            pass
        assert not client.is_closed
        await client.aclose()
