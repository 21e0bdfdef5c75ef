"""
Persistence collaborator client.

Forwards order records to the spreadsheet-backed store behind
GAS_WEBHOOK_URL. Every call is bounded by a timeout and retried exactly once;
a second failure raises PersistenceError so the caller can queue the order
for reconciliation instead of losing it.
"""

from typing import Any

import httpx
from structlog import get_logger

from storefront.exceptions import PersistenceError
from storefront.models.domain import OrderData, PeriodChargeData, WebhookEvent
from storefront.observability.metrics import metrics

logger = get_logger(__name__)

ACTION_CREATE = "createOrder"
ACTION_UPDATE = "updateOrder"
ACTION_PERIOD_PAYMENT = "recordPeriodPayment"
MAX_ATTEMPTS = 2


class OrderSyncClient:
    """HTTP client for the persistence collaborator."""

    def __init__(
        self,
        webhook_url: str,
        merchant_id: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.webhook_url = webhook_url
        self.merchant_id = merchant_id
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def create_order(self, order: OrderData) -> None:
        """Record a new pending order."""
        payload: dict[str, Any] = {
            "tradeNo": order.trade_number,
            "merID": self.merchant_id,
            "tradeAmt": order.amount,
            "email": order.customer_email or "",
            "productID": order.product_id,
            "productName": order.product_name,
            "productType": order.kind.value,
        }
        await self._post(ACTION_CREATE, payload, order.trade_number)

    async def update_order(self, order: OrderData, event: WebhookEvent) -> None:
        """Record the terminal state of an order with the notification fields."""
        payload: dict[str, Any] = {
            "MerTradeNo": order.trade_number,
            "TradeSeq": order.gateway_trade_seq or "",
            "Status": order.status.value,
            "PeriodTradeNo": order.period_trade_number or "",
            "rawData": event.fields_dict(),
        }
        await self._post(ACTION_UPDATE, payload, order.trade_number)

    async def record_period_payment(
        self, order: OrderData, charge: PeriodChargeData, event: WebhookEvent
    ) -> None:
        """Record one recurring charge against its enrollment order."""
        payload: dict[str, Any] = {
            "periodTradeNo": charge.period_trade_number or "",
            "baseOrderNo": order.trade_number,
            "sequenceNo": charge.sequence,
            "tradeSeq": charge.gateway_trade_seq or "",
            "amount": charge.amount,
            "status": charge.status.value,
            "paymentTime": charge.paid_at or charge.created_at.isoformat(),
            "email": order.customer_email or "",
            "productID": order.product_id,
            "rawData": event.fields_dict(),
        }
        await self._post(ACTION_PERIOD_PAYMENT, payload, f"{order.trade_number}_{charge.sequence}")

    async def _post(self, action: str, payload: dict[str, Any], trade_number: str) -> None:
        """
        POST to the collaborator, retrying once.

        Raises:
            PersistenceError: If both attempts fail
        """
        headers = {"X-Webhook-Token": self.token} if self.token else {}
        last_error = ""

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await self.http_client.post(
                    self.webhook_url,
                    params={"action": action},
                    json=payload,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
                response.raise_for_status()
                body = response.json()
                if isinstance(body, dict) and body.get("success") is False:
                    last_error = str(body.get("error") or body.get("message") or "rejected")
                else:
                    metrics.record_order_forward(action, success=True)
                    logger.info(
                        "order_forwarded",
                        action=action,
                        trade_number=trade_number,
                        attempt=attempt,
                    )
                    return
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
            except ValueError as e:
                last_error = f"invalid response body: {e}"

            logger.warning(
                "order_forward_attempt_failed",
                action=action,
                trade_number=trade_number,
                attempt=attempt,
                error=last_error,
            )

        metrics.record_order_forward(action, success=False)
        logger.error("order_forward_failed", action=action, trade_number=trade_number, error=last_error)
        raise PersistenceError(action, last_error)

    async def close(self) -> None:
        """Close the owned HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
