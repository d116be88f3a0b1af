"""Async Binance spot margin REST client with rate limiting."""

from __future__ import annotations

import asyncio
import hmac
import json
import time
from hashlib import sha256
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx
import structlog

from src.config.settings import Settings

if TYPE_CHECKING:
    from src.monitoring.metrics import Metrics


RETRYABLE_STATUS = {429, 418, 500, 502, 503, 504}


class RateLimitTracker:
    """Track request weight usage per minute."""

    def __init__(self, max_weight_per_minute: int = 6000) -> None:
        self.max_weight = max_weight_per_minute
        self.used_weight = 0
        self.reset_at = time.time() + 60
        self._server_reported_weight: int | None = None

    async def consume(self, weight: int) -> None:
        now = time.time()
        if now >= self.reset_at:
            self.used_weight = 0
            self.reset_at = now + 60
        projected = self.used_weight + weight
        if projected > self.max_weight * 0.8:
            await asyncio.sleep(max(0, self.reset_at - now))
            self.used_weight = 0
            self.reset_at = time.time() + 60
        self.used_weight += weight

    def update_limit(self, max_weight: int) -> None:
        if max_weight > 0:
            self.max_weight = max_weight

    def update_server_reported_weight(self, weight: int) -> None:
        """Update with actual weight reported by Binance."""
        self._server_reported_weight = weight

    @property
    def current_weight(self) -> int:
        """Get current used weight (prefer server-reported if available)."""
        return (
            self._server_reported_weight
            if self._server_reported_weight is not None
            else self.used_weight
        )


class BinanceMarginRestClient:
    """Binance spot + margin (SAPI) REST client."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.base_url = settings.binance_base_url
        self.api_key = settings.active_binance_api_key
        self.api_secret = settings.active_binance_secret_key
        self.recv_window = settings.binance.recv_window
        self.retry_attempts = settings.binance.retry_attempts
        self.http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.binance.request_timeout_sec,
            transport=transport,
        )
        self.rate_limiter = RateLimitTracker()
        # Server time sync offset in milliseconds
        self._server_time_offset: int = 0
        self.log = structlog.get_logger(__name__)
        self._metrics: Metrics | None = None

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    async def close(self) -> None:
        await self.http.aclose()

    async def get_server_time(self) -> int:
        data = await self._request("GET", "/api/v3/time", weight=1)
        return data["serverTime"]

    async def sync_server_time(self) -> None:
        """Store the offset between local and server time for signed requests."""
        server_time = await self.get_server_time()
        local_time = int(time.time() * 1000)
        self._server_time_offset = server_time - local_time
        self.log.info(
            "server_time_synced",
            server_time=server_time,
            local_time=local_time,
            offset_ms=self._server_time_offset,
        )

    def get_time_offset(self) -> int:
        return self._server_time_offset

    def _update_rate_limit_headers(self, response: httpx.Response) -> None:
        if used_weight := response.headers.get("x-mbx-used-weight-1m"):
            try:
                self.rate_limiter.update_server_reported_weight(int(used_weight))
            except ValueError:
                pass
            if self._metrics:
                self._metrics.binance_used_weight_1m.set(self.rate_limiter.current_weight)

    # Market data

    async def get_exchange_info(self, symbol: str | None = None) -> dict[str, Any]:
        params = {"symbol": symbol} if symbol else None
        data = await self._request("GET", "/api/v3/exchangeInfo", params=params, weight=20)
        self._update_rate_limits(data.get("rateLimits", []))
        return data

    async def get_ticker_price(self, symbol: str) -> dict[str, Any]:
        return await self._request(
            "GET", "/api/v3/ticker/price", params={"symbol": symbol}, weight=2
        )

    async def get_klines(
        self,
        symbol: str,
        interval: str,
        limit: int = 500,
        start_time: int | None = None,
        end_time: int | None = None,
    ) -> list[list[Any]]:
        params: dict[str, Any] = {"symbol": symbol, "interval": interval, "limit": limit}
        if start_time:
            params["startTime"] = start_time
        if end_time:
            params["endTime"] = end_time
        return await self._request("GET", "/api/v3/klines", params=params, weight=2)

    # Margin account

    async def get_margin_account(self) -> dict[str, Any]:
        return await self._request("GET", "/sapi/v1/margin/account", signed=True, weight=10)

    async def get_isolated_margin_account(self, symbols: list[str] | None = None) -> dict[str, Any]:
        params = {"symbols": ",".join(symbols)} if symbols else None
        return await self._request(
            "GET", "/sapi/v1/margin/isolated/account", params=params, signed=True, weight=10
        )

    async def borrow_repay(
        self,
        asset: str,
        amount: str,
        action: str,
        symbol: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "asset": asset,
            "amount": amount,
            "type": action,
            "isIsolated": "TRUE" if symbol else "FALSE",
        }
        if symbol:
            params["symbol"] = symbol
        return await self._request(
            "POST", "/sapi/v1/margin/borrow-repay", params=params, signed=True, weight=1
        )

    async def get_borrow_history(
        self,
        asset: str | None = None,
        isolated_symbol: str | None = None,
        size: int = 100,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"type": "BORROW", "size": size}
        if asset:
            params["asset"] = asset
        if isolated_symbol:
            params["isolatedSymbol"] = isolated_symbol
        return await self._request(
            "GET", "/sapi/v1/margin/borrow-repay", params=params, signed=True, weight=10
        )

    async def get_trade_fee(self, symbol: str | None = None) -> list[dict[str, Any]]:
        params = {"symbol": symbol} if symbol else None
        return await self._request("GET", "/sapi/v1/asset/tradeFee", params=params, signed=True, weight=1)

    async def get_my_trades(self, symbol: str, limit: int = 50, isolated: bool = False) -> list[dict[str, Any]]:
        params = {"symbol": symbol, "limit": limit, "isIsolated": "TRUE" if isolated else "FALSE"}
        return await self._request(
            "GET", "/sapi/v1/margin/myTrades", params=params, signed=True, weight=10
        )

    # Margin orders

    async def get_open_orders(self, symbol: str, isolated: bool = False) -> list[dict[str, Any]]:
        params = {"symbol": symbol, "isIsolated": "TRUE" if isolated else "FALSE"}
        return await self._request(
            "GET", "/sapi/v1/margin/openOrders", params=params, signed=True, weight=10
        )

    async def get_all_orders(self, symbol: str, limit: int = 50, isolated: bool = False) -> list[dict[str, Any]]:
        params = {"symbol": symbol, "limit": limit, "isIsolated": "TRUE" if isolated else "FALSE"}
        return await self._request(
            "GET", "/sapi/v1/margin/allOrders", params=params, signed=True, weight=200
        )

    async def get_order(self, symbol: str, order_id: str, isolated: bool = False) -> dict[str, Any]:
        params = {"symbol": symbol, "orderId": order_id, "isIsolated": "TRUE" if isolated else "FALSE"}
        return await self._request(
            "GET", "/sapi/v1/margin/order", params=params, signed=True, weight=10
        )

    async def place_order(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", "/sapi/v1/margin/order", params=params, signed=True, weight=6
        )

    async def place_oco(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", "/sapi/v1/margin/order/oco", params=params, signed=True, weight=6
        )

    async def cancel_order(self, symbol: str, order_id: str, isolated: bool = False) -> dict[str, Any]:
        params = {"symbol": symbol, "orderId": order_id, "isIsolated": "TRUE" if isolated else "FALSE"}
        return await self._request(
            "DELETE", "/sapi/v1/margin/order", params=params, signed=True, weight=10
        )

    async def cancel_open_orders(self, symbol: str, isolated: bool = False) -> list[dict[str, Any]]:
        params = {"symbol": symbol, "isIsolated": "TRUE" if isolated else "FALSE"}
        return await self._request(
            "DELETE", "/sapi/v1/margin/openOrders", params=params, signed=True, weight=1
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        signed: bool = False,
        weight: int = 1,
    ) -> Any:
        await self.rate_limiter.consume(weight)
        params = params.copy() if params else {}
        headers = {}
        if signed:
            # Use server-synced timestamp to avoid -1021 errors
            params["timestamp"] = int(time.time() * 1000) + self._server_time_offset
            params["recvWindow"] = self.recv_window
            params["signature"] = self._sign_params(params)
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            headers["X-MBX-APIKEY"] = self.api_key

        log_http = self.settings.monitoring.log_http
        log_http_responses = self.settings.monitoring.log_http_responses
        max_body_chars = self.settings.monitoring.log_http_max_body_chars
        safe_params = self._sanitize_params(params)

        for attempt in range(self.retry_attempts):
            start = time.perf_counter()
            try:
                if log_http:
                    self.log.info(
                        "rest_request",
                        method=method,
                        path=path,
                        params=safe_params,
                        signed=signed,
                        weight=weight,
                        attempt=attempt + 1,
                    )
                response = await self.http.request(method, path, params=params, headers=headers)
                latency_ms = (time.perf_counter() - start) * 1000
                response.raise_for_status()
                data = response.json()
                self._update_rate_limit_headers(response)
                if self._metrics:
                    self._metrics.rest_request_latency_ms.observe(latency_ms)
                if log_http:
                    payload: dict[str, Any] = {
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "latency_ms": round(latency_ms, 2),
                    }
                    if log_http_responses and max_body_chars > 0:
                        payload["response_preview"] = self._preview_json(data, max_body_chars)
                    else:
                        payload["response_type"] = type(data).__name__
                    self.log.info("rest_response", **payload)
                return data
            except httpx.HTTPStatusError as exc:
                latency_ms = (time.perf_counter() - start) * 1000
                retryable = exc.response.status_code in RETRYABLE_STATUS
                if retryable and attempt + 1 < self.retry_attempts:
                    self.log.warning(
                        "rest_http_error_retrying",
                        method=method,
                        path=path,
                        status_code=exc.response.status_code,
                        latency_ms=round(latency_ms, 2),
                        error=self._truncate(exc.response.text, max_body_chars),
                    )
                    await asyncio.sleep(2**attempt)
                    continue
                if self._metrics:
                    self._metrics.rest_errors_total.labels(kind="http").inc()
                self.log.error(
                    "rest_http_error",
                    method=method,
                    path=path,
                    status_code=exc.response.status_code,
                    latency_ms=round(latency_ms, 2),
                    error=self._truncate(exc.response.text, max_body_chars),
                )
                raise
            except httpx.RequestError as exc:
                latency_ms = (time.perf_counter() - start) * 1000
                if attempt + 1 >= self.retry_attempts:
                    if self._metrics:
                        self._metrics.rest_errors_total.labels(kind="transport").inc()
                    self.log.error(
                        "rest_request_error",
                        method=method,
                        path=path,
                        latency_ms=round(latency_ms, 2),
                        error=str(exc),
                    )
                    raise
                self.log.warning(
                    "rest_request_error_retrying",
                    method=method,
                    path=path,
                    latency_ms=round(latency_ms, 2),
                    error=str(exc),
                )
                await asyncio.sleep(2**attempt)
        raise RuntimeError(f"request loop exhausted for {method} {path}")

    @staticmethod
    def _sanitize_params(params: dict[str, Any]) -> dict[str, Any]:
        redacted: dict[str, Any] = {}
        for key, value in params.items():
            lowered = key.lower()
            if lowered in {"signature"}:
                redacted[key] = "<redacted>"
                continue
            if lowered in {"timestamp", "recvwindow"}:
                continue
            redacted[key] = value
        return redacted

    @staticmethod
    def _preview_json(data: Any, max_chars: int) -> str:
        try:
            raw = json.dumps(data, ensure_ascii=True, default=str)
        except TypeError:
            raw = str(data)
        return BinanceMarginRestClient._truncate(raw, max_chars)

    @staticmethod
    def _truncate(text: str, max_chars: int) -> str:
        if max_chars <= 0 or len(text) <= max_chars:
            return text
        return text[: max_chars - 3] + "..."

    def _sign_params(self, params: dict[str, Any]) -> str:
        query = urlencode(params, doseq=True)
        return hmac.new(self.api_secret.encode("utf-8"), query.encode("utf-8"), sha256).hexdigest()

    def _update_rate_limits(self, limits: list[dict[str, Any]]) -> None:
        for limit in limits:
            if limit.get("rateLimitType") == "REQUEST_WEIGHT" and limit.get("interval") == "MINUTE":
                max_weight = int(limit.get("limit", 6000))
                self.rate_limiter.update_limit(max_weight)
