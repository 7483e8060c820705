"""Tests for the HTTP transport using mocked responses."""

import json

import httpx
import pytest
import respx

from coversync import (
    AuthError,
    HttpTransport,
    MemoryTokenStore,
    TransientNetworkError,
    ValidationError,
    key,
)
from coversync.adapters.http import MutationRoute, describe_query, unwrap_envelope
from coversync.types import MutationDescriptor

BASE_URL = "https://console.test/api"


@pytest.fixture
def tokens() -> MemoryTokenStore:
    return MemoryTokenStore("test-token")


@pytest.fixture
async def transport(tokens: MemoryTokenStore):
    """Create an HttpTransport with test configuration."""
    transport = HttpTransport(
        BASE_URL,
        tokens,
        routes={
            "claim.statusChanged": MutationRoute("PUT", "/claims/{id}/status"),
            "claim.deleted": MutationRoute("DELETE", "/claims/{id}"),
            "claim.noteAdded": MutationRoute(
                "POST", "/claims/{id}/notes", body=lambda p: {"content": p["content"]}
            ),
        },
    )
    yield transport
    await transport.close()


class TestDescribeQuery:
    """Tests for the default key-to-request mapping."""

    def test_detail_key(self) -> None:
        request = describe_query(key("claims", 7, "notes"))
        assert request.method == "GET"
        assert request.path == "/claims/7/notes"
        assert request.params == {}

    def test_list_key_params(self) -> None:
        request = describe_query(key("claims", page=2, status="open"))
        assert request.path == "/claims"
        assert request.params == {"page": 2, "status": "open"}

    def test_unwrap_envelope(self) -> None:
        assert unwrap_envelope({"success": True, "data": {"id": 1}}) == {"id": 1}
        assert unwrap_envelope([1, 2]) == [1, 2]


class TestFetch:
    """Tests for HttpTransport.fetch."""

    @respx.mock
    async def test_fetch_sends_bearer_and_params(self, transport) -> None:
        """Test that the token and list params reach the server."""
        route = respx.get(f"{BASE_URL}/claims").mock(
            return_value=httpx.Response(200, json={"success": True, "data": []})
        )

        result = await transport.fetch(key("claims", page=2))

        assert result == {"success": True, "data": []}
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer test-token"
        assert request.url.params["page"] == "2"

    @respx.mock
    async def test_token_read_per_request(self, transport, tokens) -> None:
        route = respx.get(f"{BASE_URL}/claims/7").mock(
            return_value=httpx.Response(200, json={"id": 7})
        )
        tokens.set("rotated")
        await transport.fetch(key("claims", 7))
        assert route.calls[0].request.headers["Authorization"] == "Bearer rotated"

    @respx.mock
    async def test_no_token_no_header(self, transport, tokens) -> None:
        route = respx.get(f"{BASE_URL}/claims/7").mock(
            return_value=httpx.Response(200, json={"id": 7})
        )
        tokens.clear()
        await transport.fetch(key("claims", 7))
        assert "Authorization" not in route.calls[0].request.headers

    @respx.mock
    async def test_server_error_is_transient(self, transport) -> None:
        respx.get(f"{BASE_URL}/claims/7").mock(
            return_value=httpx.Response(503, json={"message": "Maintenance"})
        )
        with pytest.raises(TransientNetworkError) as excinfo:
            await transport.fetch(key("claims", 7))
        assert excinfo.value.status == 503
        assert excinfo.value.retryable

    @respx.mock
    async def test_network_failure_is_transient(self, transport) -> None:
        respx.get(f"{BASE_URL}/claims/7").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(TransientNetworkError):
            await transport.fetch(key("claims", 7))

    @respx.mock
    async def test_rate_limit_is_transient(self, transport) -> None:
        respx.get(f"{BASE_URL}/claims/7").mock(return_value=httpx.Response(429))
        with pytest.raises(TransientNetworkError):
            await transport.fetch(key("claims", 7))

    @respx.mock
    async def test_client_error_carries_server_message(self, transport) -> None:
        respx.get(f"{BASE_URL}/claims/7").mock(
            return_value=httpx.Response(
                404, json={"success": False, "message": "Claim not found"}
            )
        )
        with pytest.raises(ValidationError) as excinfo:
            await transport.fetch(key("claims", 7))
        assert excinfo.value.message == "Claim not found"
        assert not excinfo.value.retryable

    @respx.mock
    async def test_unauthorized_clears_token(self, transport, tokens) -> None:
        respx.get(f"{BASE_URL}/claims/7").mock(
            return_value=httpx.Response(401, json={"error": "Token expired"})
        )
        with pytest.raises(AuthError, match="Token expired"):
            await transport.fetch(key("claims", 7))
        assert tokens.get() is None

    @respx.mock
    async def test_forbidden_keeps_token(self, transport, tokens) -> None:
        respx.get(f"{BASE_URL}/claims/7").mock(return_value=httpx.Response(403))
        with pytest.raises(AuthError, match="HTTP 403"):
            await transport.fetch(key("claims", 7))
        assert tokens.get() == "test-token"


class TestMutate:
    """Tests for HttpTransport.mutate."""

    @respx.mock
    async def test_route_filled_from_payload(self, transport) -> None:
        route = respx.put(f"{BASE_URL}/claims/7/status").mock(
            return_value=httpx.Response(
                200, json={"success": True, "data": {"id": 7, "status": "Approved"}}
            )
        )

        result = await transport.mutate(
            MutationDescriptor("claim.statusChanged", {"id": 7, "status": "Approved"})
        )

        assert result == {"id": 7, "status": "Approved"}
        assert json.loads(route.calls[0].request.content) == {
            "id": 7,
            "status": "Approved",
        }

    @respx.mock
    async def test_custom_body(self, transport) -> None:
        route = respx.post(f"{BASE_URL}/claims/7/notes").mock(
            return_value=httpx.Response(201, json={"data": {"id": 1}})
        )
        await transport.mutate(
            MutationDescriptor("claim.noteAdded", {"id": 7, "content": "Call back"})
        )
        assert json.loads(route.calls[0].request.content) == {"content": "Call back"}

    @respx.mock
    async def test_delete_without_body(self, transport) -> None:
        route = respx.delete(f"{BASE_URL}/claims/7").mock(return_value=httpx.Response(204))
        result = await transport.mutate(MutationDescriptor("claim.deleted", {"id": 7}))
        assert result is None
        assert route.calls[0].request.content == b""

    async def test_unknown_effect(self, transport) -> None:
        with pytest.raises(ValidationError, match="No route"):
            await transport.mutate(MutationDescriptor("claim.archived", {"id": 7}))

    async def test_missing_path_field(self, transport) -> None:
        with pytest.raises(ValidationError, match="id"):
            await transport.mutate(MutationDescriptor("claim.statusChanged", {}))
