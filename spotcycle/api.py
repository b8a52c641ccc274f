"""Control-plane API client for Rackspace Spot."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    stop_after_attempt,
    wait_exponential,
)

from spotcycle.exceptions import ApiError, AuthError, RateLimitExceeded, ValidationError
from spotcycle.models import (
    Cloudspace,
    MarketSample,
    NodePool,
    Region,
    ServerClass,
    extract_error_message,
)
from spotcycle.session import Session

logger = logging.getLogger("spotcycle.api")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for rate limiting and server errors.

    429 responses are retried up to ``max_attempts`` total attempts; 5xx
    responses and transport failures up to ``server_error_attempts``. Other
    4xx responses fail on the first attempt.
    """

    max_attempts: int = 5
    server_error_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0


class SpotClient:
    """Typed, retrying access to the Spot control plane."""

    def __init__(
        self,
        session: Session,
        retry: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self._http = httpx.Client(
            base_url=session.api_base,
            timeout=session.settings.http_timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> SpotClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -- Core --

    def call(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and return the decoded body.

        Raises :class:`ApiError` for any status outside [200, 300) once the
        retry policy gives up, and :class:`RateLimitExceeded` when that status
        was still 429. A 401 on an exchanged credential drops the cached token
        and repeats the request once with a freshly exchanged one.
        """
        try:
            return self._attempt(method, path, body, params)
        except ApiError as e:
            if e.status != 401 or not self.session.reset_credentials():
                raise
            logger.info("Credential rejected (401); exchanging a new one and retrying once")
            return self._attempt(method, path, body, params)

    def _attempt(self, method: str, path: str, body: Any, params: dict[str, Any] | None) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential(multiplier=self.retry.backoff_base, max=self.retry.backoff_max),
            retry=self._should_retry,
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )
        try:
            return retrying(self._send, method, path, body, params)
        except RetryError as e:
            last = e.last_attempt.exception()
            if isinstance(last, ApiError) and last.status == 429:
                raise RateLimitExceeded(last.message, e.last_attempt.attempt_number) from last
            raise last from None

    def _send(self, method: str, path: str, body: Any, params: dict[str, Any] | None) -> Any:
        headers = self.session.auth_headers()
        logger.debug("API CALL: %s %s params=%s body=%s", method, path, params, body)
        try:
            resp = self._http.request(method, path, json=body, params=params, headers=headers)
        except httpx.TransportError as e:
            raise ApiError(0, f"request failed: {e}") from e
        decoded = _decode(resp)
        logged = decoded
        if path.endswith("/kubeconfig"):
            logged = f"<kubeconfig redacted, {len(resp.content)} bytes>"
        logger.debug("API RESPONSE: %s %s -> %d %s", method, path, resp.status_code, logged)
        if not 200 <= resp.status_code < 300:
            raise ApiError(resp.status_code, extract_error_message(decoded))
        return decoded

    def _should_retry(self, state: RetryCallState) -> bool:
        if state.outcome is None or not state.outcome.failed:
            return False
        exc = state.outcome.exception()
        if not isinstance(exc, ApiError) or not exc.retryable:
            return False
        if exc.status == 429:
            return True
        return state.attempt_number < self.retry.server_error_attempts

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0
        logger.warning("%s; retrying in %.1fs (attempt %d)", exc, delay, state.attempt_number)

    def _org_path(self, *parts: str) -> str:
        suffix = "".join(f"/{p}" for p in parts)
        return f"/organizations/{self.session.namespace}/cloudspaces{suffix}"

    # -- Catalog --

    def list_regions(self) -> list[Region]:
        return [Region.from_api(item) for item in _items(self.call("GET", "/regions"))]

    def list_server_classes(self, region: str) -> list[ServerClass]:
        if not region:
            raise ValidationError("region required for server classes")
        items = _items(self.call("GET", "/serverclasses", params={"region": region}))
        return [ServerClass.from_catalog(item) for item in items]

    def market_price(self, region: str, server_class: str) -> MarketSample:
        body = self.call("GET", f"/market/prices/{region}/servers/{server_class}")
        price = body.get("price") if isinstance(body, dict) else None
        if price is None or price == "":
            raise ValidationError(f"Market price data not found for {server_class} in {region}")
        try:
            value = float(price)
        except (TypeError, ValueError):
            raise ValidationError(f"Market price for {server_class} in {region} is not a number: {price!r}") from None
        return MarketSample(region=region, server_class=server_class, price=value, timestamp=time.time())

    # -- Organization / auth --

    def list_organizations(self) -> list[str]:
        names = []
        for item in _items(self.call("GET", "/organizations")):
            if isinstance(item, dict):
                name = item.get("name") or item.get("namespace")
            else:
                name = item
            if name:
                names.append(str(name))
        return names

    def validate_token(self) -> None:
        body = self.call("GET", "/auth/validate")
        if isinstance(body, dict) and body.get("valid") is False:
            raise AuthError("Token validation response indicates invalid token")

    def limits(self) -> dict[str, Any]:
        body = self.call("GET", "/auth/limits")
        return body if isinstance(body, dict) else {"limits": body}

    # -- Cloudspaces --

    def list_cloudspaces(self) -> list[Cloudspace]:
        return [Cloudspace.from_api(item) for item in _items(self.call("GET", self._org_path()))]

    def get_cloudspace(self, cloudspace_id: str) -> Cloudspace:
        return Cloudspace.from_api(self.call("GET", self._org_path(cloudspace_id)))

    def create_cloudspace(self, name: str, region: str) -> str:
        """Create a cloudspace and return its id."""
        body = self.call("POST", self._org_path(), {"name": name, "region": region})
        cs_id = None
        if isinstance(body, dict):
            cs_id = body.get("id") or body.get("cloudspace_id") or body.get("name")
        if not cs_id:
            raise ApiError(200, f"cloudspace creation returned no id: {body!r}")
        return str(cs_id)

    # -- Node pools --

    def list_node_pools(self, cloudspace_id: str) -> list[NodePool]:
        body = self.call("GET", self._org_path(cloudspace_id, "nodepools"))
        return [NodePool.from_api(item, cloudspace_id) for item in _items(body) if isinstance(item, dict)]

    def create_node_pool(self, cloudspace_id: str, server_class: str, bid_price: float, count: int) -> NodePool:
        body = self.call(
            "POST",
            self._org_path(cloudspace_id, "nodepools"),
            {"serverClass": server_class, "bidPrice": bid_price, "desired": count},
        )
        return NodePool.from_api(body if isinstance(body, dict) else {}, cloudspace_id)

    def scale_node_pool(self, cloudspace_id: str, pool_id: str, desired: int) -> None:
        if desired < 0:
            raise ValidationError(f"desired count must be >= 0, got {desired}")
        self.call("POST", self._org_path(cloudspace_id, "nodepools", pool_id, "scale"), {"desired": desired})

    # -- Cluster access & notifications --

    def kubeconfig(self, cloudspace_id: str) -> str:
        body = self.call("GET", self._org_path(cloudspace_id, "kubeconfig"))
        if isinstance(body, dict):
            body = body.get("kubeconfig") or body.get("data")
        if not isinstance(body, str) or not body.strip():
            raise ValidationError(f"Empty kubeconfig returned for cloudspace {cloudspace_id}")
        return body

    def register_preemption_webhook(self, cloudspace_id: str, url: str, warning_minutes: int = 5) -> None:
        self.call(
            "POST",
            f"/webhooks/cloudspaces/{cloudspace_id}",
            {"url": url, "events": ["preemption"], "warningMinutes": warning_minutes},
        )

    def preemption_status(self, cloudspace_id: str) -> dict[str, Any]:
        body = self.call("GET", f"/cloudspaces/{cloudspace_id}/preemption/status")
        return body if isinstance(body, dict) else {}


def _decode(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    if "json" in resp.headers.get("content-type", ""):
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text


def _items(body: Any) -> list[Any]:
    if body is None:
        return []
    if isinstance(body, dict):
        for key in ("items", "data", "results"):
            if isinstance(body.get(key), list):
                return body[key]
        raise ValidationError(f"Expected a list response, got object with keys {sorted(body)}")
    if isinstance(body, list):
        return body
    raise ValidationError(f"Expected a list response, got {type(body).__name__}")
