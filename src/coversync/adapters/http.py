"""REST transport for the fetcher and mutator boundaries."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from coversync.adapters.base import TokenStore
from coversync.errors import (
    AuthError,
    HttpError,
    TransientNetworkError,
    ValidationError,
)
from coversync.keys import QueryKey
from coversync.types import MutationDescriptor

logger = logging.getLogger(__name__)

# Client errors worth retrying like server errors
_RETRYABLE_STATUS = frozenset({408, 425, 429})


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """Method, path and parameters of one request."""

    method: str
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    json: Any = None


@dataclass(frozen=True, slots=True)
class MutationRoute:
    """Where a mutation's effect tag is sent.

    ``path`` is a template filled from the payload, e.g. "/claims/{id}/status".
    ``body`` picks the request body out of the payload (default: all of it).
    """

    method: str
    path: str
    body: Callable[[Mapping[str, Any]], Any] | None = None


def describe_query(key: QueryKey) -> RequestDescriptor:
    """Map ``claims:42:notes`` to GET /claims/42/notes, list params as query."""
    return RequestDescriptor("GET", "/" + "/".join(key.segments), dict(key.params))


def unwrap_envelope(body: Any) -> Any:
    """Return the entity from ``{"data": entity}`` envelopes."""
    if isinstance(body, Mapping) and "data" in body:
        return body["data"]
    return body


class HttpTransport:
    """Bearer-authenticated JSON transport over httpx.

    ``fetch`` implements the fetcher boundary and ``mutate`` the mutator
    boundary. The token is read from the store on every request and cleared
    on a 401 response.
    """

    def __init__(
        self,
        base_url: str,
        token_store: TokenStore,
        *,
        routes: Mapping[str, MutationRoute] | None = None,
        describe: Callable[[QueryKey], RequestDescriptor] = describe_query,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_store = token_store
        self._routes = dict(routes or {})
        self._describe = describe
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def fetch(self, key: QueryKey) -> Any:
        """Read the payload for ``key``."""
        return await self.request(self._describe(key))

    async def mutate(self, descriptor: MutationDescriptor) -> Any:
        """Send a mutation and return the updated entity."""
        route = self._routes.get(descriptor.effect)
        if route is None:
            raise ValidationError(f"No route for mutation {descriptor.effect!r}")
        payload = descriptor.payload
        try:
            path = route.path.format_map(payload)
        except KeyError as exc:
            raise ValidationError(
                f"Mutation {descriptor.effect!r} needs payload field {exc}"
            ) from exc
        body = route.body(payload) if route.body is not None else dict(payload)
        if route.method.upper() in ("GET", "DELETE"):
            body = None
        response = await self.request(RequestDescriptor(route.method, path, json=body))
        return unwrap_envelope(response)

    async def request(self, descriptor: RequestDescriptor) -> Any:
        headers: dict[str, str] = {}
        token = self._token_store.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(
                descriptor.method,
                descriptor.path,
                params=dict(descriptor.params) or None,
                json=descriptor.json,
                headers=headers,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientNetworkError(
                f"{descriptor.method} {descriptor.path} failed: {exc}"
            ) from exc

        if not response.is_success:
            raise self._error_for(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _error_for(self, response: httpx.Response) -> HttpError:
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None
        message = None
        if isinstance(body, Mapping):
            message = body.get("message") or body.get("error")
        message = str(message) if message else f"HTTP {status}"

        if status == 401:
            logger.info("Session rejected (401); clearing stored token")
            self._token_store.clear()
            return AuthError(message, status=status)
        if status == 403:
            return AuthError(message, status=status)
        if status >= 500 or status in _RETRYABLE_STATUS:
            return TransientNetworkError(message, status=status)
        return ValidationError(message, status=status)
