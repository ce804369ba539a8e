"""
Remote decision authority: the protocol the resilient service talks to, and
an HTTP implementation for the REST feature service.

ENDPOINTS (relative to FEATURE_API_BASE_URL):
    GET  /features/flags/{key}/evaluate?user_id=...&environment=...
    GET  /features/experiments/{key}/evaluate?user_id=...&environment=...
    POST /features/events

USAGE:
    async with HttpDecisionAuthority("https://api.example.com/api") as authority:
        service = ResilientFeatureService(authority)
        result = await service.evaluate_flag("dark_mode", ctx)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import httpx

from montage.logger import get_correlation_headers

from .config import DEFAULT_API_BASE_URL, DEFAULT_CALL_TIMEOUT_SECONDS
from .exceptions import AuthorityError, MalformedResponseError
from .models import EvaluationContext, TrackEventRequest


@runtime_checkable
class DecisionAuthority(Protocol):
    """
    The upstream service that owns flag and experiment decisions.

    Implementations may raise anything on failure; the resilient service
    treats every exception as one breaker failure.
    """

    async def evaluate_flag(self, key: str, context: EvaluationContext) -> Mapping[str, Any]:
        """Return ``{enabled, value?, reason?}``."""
        ...

    async def evaluate_experiment(self, key: str, context: EvaluationContext) -> Mapping[str, Any] | None:
        """
        Return either an experiment definition
        ``{status, traffic_allocation, variants}``, an already-resolved result
        ``{in_experiment, variant, ...}``, or None when the experiment is unknown.
        """
        ...

    async def track_event(self, event: TrackEventRequest) -> Any:
        ...


class HttpDecisionAuthority:
    """
    DecisionAuthority backed by the REST feature service, via httpx.

    Non-2xx responses and undecodable bodies raise; a 404 on an experiment
    means "not found" and yields None.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def __aenter__(self) -> HttpDecisionAuthority:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # DecisionAuthority
    # -------------------------------------------------------------------------

    async def evaluate_flag(self, key: str, context: EvaluationContext) -> Mapping[str, Any]:
        response = await self._request(
            "GET",
            f"/features/flags/{key}/evaluate",
            context,
            params=self._query(context),
        )
        return self._json_object(response, f"flag {key}")

    async def evaluate_experiment(self, key: str, context: EvaluationContext) -> Mapping[str, Any] | None:
        response = await self._request(
            "GET",
            f"/features/experiments/{key}/evaluate",
            context,
            params=self._query(context),
            allow_not_found=True,
        )
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        return self._json_object(response, f"experiment {key}")

    async def track_event(self, event: TrackEventRequest) -> Any:
        response = await self._request("POST", "/features/events", None, json=event.to_dict())
        return self._json_object(response, "track event")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _query(context: EvaluationContext) -> dict[str, str]:
        params = {"user_id": context.subject_id}
        if context.environment:
            params["environment"] = context.environment
        for name, value in context.attributes.items():
            params[name] = str(value)
        return params

    async def _request(
        self,
        method: str,
        path: str,
        context: EvaluationContext | None,
        *,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json", **get_correlation_headers()}
        if context is not None and context.environment:
            headers["X-Environment"] = context.environment

        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise AuthorityError(f"{method} {path} failed: {e}") from e

        if allow_not_found and response.status_code == httpx.codes.NOT_FOUND:
            return response
        if response.is_error:
            raise AuthorityError(f"{method} {path} returned HTTP {response.status_code}")
        return response

    @staticmethod
    def _json_object(response: httpx.Response, what: str) -> Mapping[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{what}: response is not JSON") from e
        if not isinstance(body, Mapping):
            raise MalformedResponseError(f"{what}: expected a JSON object")
        return body
