import asyncio
import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog

from settlement_service.domain.exceptions import (
    GatewayAuthError,
    GatewayUnavailableError,
    OrderNotFoundError,
)
from settlement_service.domain.models import Money, Order, OrderStatus
from settlement_service.infrastructure.metrics import (
    GATEWAY_REQUESTS_TOTAL,
    GATEWAY_TOKEN_EXCHANGES_TOTAL,
)


logger = structlog.get_logger()

MAX_LOGGED_BODY_CHARS = 2000


class GatewayClient(Protocol):
    async def fetch_order(self, order_id: str) -> Order: ...


@dataclass(frozen=True)
class CachedToken:
    access_token: str
    expires_at: float


class PayPalGatewayClient:
    """
    Client for a PayPal-style checkout gateway.

    Access tokens come from a client-credentials exchange and are cached per
    credential pair until shortly before the gateway-reported expiry. Every
    outbound call is bounded by ``timeout_seconds``; timeouts, network errors
    and 5xx answers are retried once after a short backoff.
    """

    TOKEN_PATH = "/v1/oauth2/token"
    ORDER_PATH = "/v2/checkout/orders/{order_id}"

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout_seconds: float = 10.0,
        retry_backoff_seconds: float = 0.5,
        token_expiry_margin_seconds: int = 60,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout_seconds = timeout_seconds
        self._retry_backoff = retry_backoff_seconds
        self._expiry_margin = token_expiry_margin_seconds
        self._clock = clock
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._tokens: dict[tuple[str, str], CachedToken] = {}
        self._token_lock = asyncio.Lock()

    @property
    def _credential_key(self) -> tuple[str, str]:
        secret_digest = hashlib.sha256(self._client_secret.encode()).hexdigest()
        return self._client_id, secret_digest

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def fetch_order(self, order_id: str) -> Order:
        token = await self._get_token()
        response = await self._get_order(order_id, token)

        if response.status_code == httpx.codes.UNAUTHORIZED:
            # Token revoked or expired early; exchange once more before giving up.
            self._invalidate_token(token)
            token = await self._get_token()
            response = await self._get_order(order_id, token)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                self._log_failure("order", response, order_id=order_id)
                raise GatewayAuthError("Gateway rejected the access token")

        if response.status_code == httpx.codes.NOT_FOUND:
            GATEWAY_REQUESTS_TOTAL.labels(endpoint="order", result="not_found").inc()
            logger.info("gateway_order_not_found", order_id=order_id)
            raise OrderNotFoundError(order_id)

        if not response.is_success:
            self._log_failure("order", response, order_id=order_id)
            raise GatewayUnavailableError(f"Order lookup failed with status {response.status_code}")

        order = self._parse_order(order_id, self._json(response, "order"))
        logger.info(
            "gateway_order_fetched",
            order_id=order_id,
            status=order.raw_status,
            amount=order.amount.format() if order.amount else None,
            currency=order.amount.currency if order.amount else None,
        )
        return order

    async def _get_order(self, order_id: str, token: str) -> httpx.Response:
        url = self._base_url + self.ORDER_PATH.format(order_id=quote(order_id, safe=""))
        return await self._send(
            "order",
            lambda: self._http.build_request(
                "GET",
                url,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            ),
        )

    async def _get_token(self) -> str:
        key = self._credential_key
        cached = self._tokens.get(key)
        if cached and cached.expires_at > self._clock():
            return cached.access_token

        async with self._token_lock:
            cached = self._tokens.get(key)
            if cached and cached.expires_at > self._clock():
                return cached.access_token
            token = await self._exchange_token()
            self._tokens[key] = token
            return token.access_token

    def _invalidate_token(self, access_token: str) -> None:
        cached = self._tokens.get(self._credential_key)
        if cached and cached.access_token == access_token:
            del self._tokens[self._credential_key]

    async def _exchange_token(self) -> CachedToken:
        if not self._client_id or not self._client_secret:
            logger.error("gateway_credentials_missing")
            raise GatewayAuthError("Gateway credentials are not configured")

        response = await self._send(
            "token",
            lambda: self._http.build_request(
                "POST",
                self._base_url + self.TOKEN_PATH,
                auth=httpx.BasicAuth(self._client_id, self._client_secret),
                headers={"Accept": "application/json"},
                data={"grant_type": "client_credentials"},
            ),
        )
        if not response.is_success:
            self._log_failure("token", response)
            raise GatewayAuthError(f"Token exchange failed with status {response.status_code}")

        payload = self._json(response, "token")
        access_token = payload.get("access_token")
        if not access_token:
            logger.error("gateway_token_missing", keys=sorted(payload))
            raise GatewayAuthError("Gateway returned no access token")

        expires_in = int(payload.get("expires_in") or 0)
        expires_at = self._clock() + max(0, expires_in - self._expiry_margin)
        GATEWAY_TOKEN_EXCHANGES_TOTAL.inc()
        logger.info("gateway_token_acquired", expires_in=expires_in)
        return CachedToken(access_token=access_token, expires_at=expires_at)

    async def _send(
        self,
        endpoint: str,
        build_request: Callable[[], httpx.Request],
    ) -> httpx.Response:
        """Send a request, retrying once on timeouts, network errors and 5xx."""
        last_error = GatewayUnavailableError(f"Gateway {endpoint} call failed")
        for attempt in range(2):
            if attempt:
                await asyncio.sleep(self._retry_backoff)
            try:
                async with asyncio.timeout(self._timeout_seconds):
                    response = await self._http.send(build_request())
            except (httpx.TimeoutException, TimeoutError) as e:
                GATEWAY_REQUESTS_TOTAL.labels(endpoint=endpoint, result="timeout").inc()
                logger.warning("gateway_timeout", endpoint=endpoint, attempt=attempt + 1, error=str(e))
                last_error = GatewayUnavailableError(f"Gateway {endpoint} call timed out")
                continue
            except httpx.TransportError as e:
                GATEWAY_REQUESTS_TOTAL.labels(endpoint=endpoint, result="network_error").inc()
                logger.warning("gateway_network_error", endpoint=endpoint, attempt=attempt + 1, error=str(e))
                last_error = GatewayUnavailableError(f"Gateway {endpoint} call failed")
                continue

            if response.status_code >= 500:
                self._log_failure(endpoint, response, attempt=attempt + 1)
                last_error = GatewayUnavailableError(f"Gateway {endpoint} returned {response.status_code}")
                continue

            if response.is_success:
                GATEWAY_REQUESTS_TOTAL.labels(endpoint=endpoint, result="ok").inc()
            return response

        raise last_error

    def _json(self, response: httpx.Response, endpoint: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as e:
            self._log_failure(endpoint, response)
            raise GatewayUnavailableError(f"Gateway {endpoint} returned invalid JSON") from e
        if not isinstance(payload, dict):
            self._log_failure(endpoint, response)
            raise GatewayUnavailableError(f"Gateway {endpoint} returned unexpected payload")
        return payload

    def _log_failure(self, endpoint: str, response: httpx.Response, **context: Any) -> None:
        GATEWAY_REQUESTS_TOTAL.labels(endpoint=endpoint, result=f"http_{response.status_code}").inc()
        logger.error(
            "gateway_request_failed",
            endpoint=endpoint,
            status_code=response.status_code,
            body=response.text[:MAX_LOGGED_BODY_CHARS],
            debug_id=response.headers.get("paypal-debug-id"),
            **context,
        )

    @staticmethod
    def _parse_order(order_id: str, payload: dict[str, Any]) -> Order:
        raw_status = str(payload.get("status") or "UNKNOWN")

        purchase_units = payload.get("purchase_units") or []
        amount_data = (purchase_units[0].get("amount") or {}) if purchase_units else {}
        amount: Money | None = None
        if amount_data.get("value") is not None and amount_data.get("currency_code"):
            try:
                amount = Money.parse(str(amount_data["value"]), str(amount_data["currency_code"]))
            except ValueError:
                logger.warning(
                    "gateway_amount_unparseable",
                    order_id=order_id,
                    value=amount_data.get("value"),
                    currency=amount_data.get("currency_code"),
                )

        payer = payload.get("payer") or {}
        name = payer.get("name") or {}
        full_name = " ".join(part for part in (name.get("given_name"), name.get("surname")) if part) or None

        return Order(
            gateway_order_id=order_id,
            status=OrderStatus.parse(raw_status),
            raw_status=raw_status,
            amount=amount,
            payer_email=payer.get("email_address"),
            payer_name=full_name,
        )
