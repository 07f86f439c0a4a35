"""
HTTP Backend Client Implementation

Production implementation talking to the restaurant REST backend with
httpx. Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - BACKEND_BASE_URL pointing at the API root (…/api)
    - BACKEND_TOKEN with a staff session token

Response classification:
    transport error / timeout / 5xx  -> NetworkError (retryable)
    401 / 403                        -> AuthorizationError
    code == "invalid_transition"     -> InvalidTransition
    404 / 409                        -> Conflict
    400 / 422 / other 4xx            -> ValidationError

Version: 1.0.0
"""

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx
from pydantic import ValidationError as SchemaError

from kot_engine.billing import round_money
from kot_engine.core.config import get_settings
from kot_engine.exceptions import (
    AuthorizationError,
    Conflict,
    EngineError,
    InvalidTransition,
    NetworkError,
    ValidationError,
)
from kot_engine.models import (
    Bill,
    EntityId,
    Order,
    OrderDraft,
    OrderStatus,
    PaymentMethod,
    Table,
)
from kot_engine.services.backend.base import BaseBackendClient, BillDetail

logger = logging.getLogger(__name__)


def normalize_base_url(raw: str) -> str:
    """Trim trailing slashes and make sure the URL ends with /api."""
    trimmed = raw.rstrip("/")
    return trimmed if trimmed.endswith("/api") else f"{trimmed}/api"


class HttpBackendClient(BaseBackendClient):
    """
    Production backend client.

    Example:
        >>> client = HttpBackendClient()
        >>> orders = await client.list_orders(status=OrderStatus.PENDING)
        >>> print(orders[0].kot_number)
        'KOT-LZ3K9Q1A-4821'
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the HTTP client.

        Args:
            base_url: API root, defaults to BACKEND_BASE_URL
            token: Bearer token, defaults to BACKEND_TOKEN
            timeout: Request timeout, defaults to REQUEST_TIMEOUT
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        settings = get_settings()

        self._base_url = normalize_base_url(base_url or settings.backend_base_url)
        token = token if token is not None else settings.backend_token

        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout if timeout is not None else settings.request_timeout,
            transport=transport,
        )

        logger.info(f"HttpBackendClient initialized (base_url={self._base_url})")

    @property
    def provider_name(self) -> str:
        return "http"

    # =========================================================================
    # REQUEST PLUMBING
    # =========================================================================

    @staticmethod
    def _classify(response: httpx.Response, entity_id: Optional[EntityId]) -> EngineError:
        """Turn an error response into the matching engine error."""
        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        message = body.get("error") or body.get("message") or f"HTTP {status}"
        code = body.get("code")

        if status >= 500:
            return NetworkError(f"Server error: {status} ({message})", entity_id=entity_id)
        if status in (401, 403):
            return AuthorizationError(message, entity_id=entity_id)
        if code == "invalid_transition":
            return InvalidTransition(message, entity_id=entity_id)
        if status in (404, 409):
            return Conflict(message, entity_id=entity_id)
        return ValidationError(message, entity_id=entity_id)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        entity_id: Optional[EntityId] = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"Backend timeout: {method} {path}")
            raise NetworkError(f"Network timeout calling {method} {path}", entity_id=entity_id) from e
        except httpx.TransportError as e:
            logger.warning(f"Backend unreachable: {method} {path} - {e}")
            raise NetworkError(f"Backend unreachable: {e}", entity_id=entity_id) from e

        if response.is_error:
            error = self._classify(response, entity_id)
            logger.debug(f"Backend {method} {path} -> {response.status_code} ({type(error).__name__})")
            raise error

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise ValidationError(f"Backend returned a non-JSON body for {path}") from e
        return data if isinstance(data, dict) else {"data": data}

    @staticmethod
    def _parse(model: Any, raw: Any, what: str) -> Any:
        try:
            return model.model_validate(raw)
        except SchemaError as e:
            raise ValidationError(f"Malformed {what} in backend response: {e.error_count()} error(s)") from e

    def _bill_detail(self, entry: dict[str, Any]) -> BillDetail:
        bill = self._parse(Bill, entry.get("bill"), "bill")
        order_raw = entry.get("order")
        order = self._parse(Order, order_raw, "order") if order_raw else None
        return BillDetail(bill=bill, order=order)

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        params = {"status": status.wire_value} if status else None
        data = await self._request("GET", "/orders", params=params)
        return [self._parse(Order, raw, "order") for raw in data.get("orders") or []]

    async def get_order(self, order_id: EntityId) -> Order:
        data = await self._request("GET", f"/orders/{order_id}", entity_id=order_id)
        return self._parse(Order, data.get("order", data), "order")

    async def create_order(self, draft: OrderDraft) -> Order:
        data = await self._request("POST", "/orders", json=draft.to_payload())
        raw = dict(data.get("order") or {})
        # The create response omits items; keep the ones we sent.
        raw.setdefault("kot_number", draft.kot_number)
        if not raw.get("items"):
            raw["items"] = [item.model_dump() for item in draft.items]
        raw.setdefault("table_id", draft.table_id)
        raw.setdefault("station", draft.station)
        return self._parse(Order, raw, "order")

    async def update_order_status(
        self,
        order_id: EntityId,
        status: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        body: dict[str, Any] = {"status": status.wire_value}
        if reason:
            body["reason"] = reason
        data = await self._request("PUT", f"/orders/{order_id}/status", json=body, entity_id=order_id)
        return self._parse(Order, data.get("order", data), "order")

    # =========================================================================
    # BILLS & TABLES
    # =========================================================================

    async def list_bills(self) -> list[BillDetail]:
        data = await self._request("GET", "/bills")
        return [self._bill_detail(entry) for entry in data.get("bills") or []]

    async def get_bill(self, bill_id: EntityId) -> BillDetail:
        data = await self._request("GET", f"/bills/{bill_id}", entity_id=bill_id)
        return self._bill_detail(data)

    async def pay_bill(
        self,
        bill_id: EntityId,
        payment_method: PaymentMethod,
        amount: Decimal,
    ) -> Bill:
        body = {
            "payment_mode": payment_method.value,
            "amount": float(round_money(amount)),
        }
        data = await self._request("POST", f"/bills/{bill_id}/pay", json=body, entity_id=bill_id)
        return self._parse(Bill, data.get("bill"), "bill")

    async def list_tables(self) -> list[Table]:
        data = await self._request("GET", "/tables")
        return [self._parse(Table, raw, "table") for raw in data.get("tables") or []]

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def health_check(self) -> bool:
        """The backend answers {"ok": true} on its root path."""
        root = self._base_url[: -len("/api")] or self._base_url
        try:
            response = await self._client.get(f"{root}/")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"Backend health check failed: {e}")
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
