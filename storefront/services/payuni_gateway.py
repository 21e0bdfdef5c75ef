"""
PayUNi trade query client.

Actively confirms a trade with the gateway. The request is encoded and signed
with the trade codec; the response carries its own EncryptInfo/HashInfo whose
plaintext is a flattened list (`Result[0][MerTradeNo]`, `Result[0][TradeStatus]`...).
"""

import re
import time
from collections.abc import Callable

import httpx
from structlog import get_logger

from storefront.exceptions import DecodeError, GatewayQueryError, IntegrityError
from storefront.models.domain import TradeQueryResult
from storefront.models.gateway import TradeQueryFields
from storefront.services.trade_codec import SignatureCodec

logger = get_logger(__name__)

QUERY_PATH = "/api/trade/query"
QUERY_VERSION = "2.0"

_RESULT_KEY = re.compile(r"^Result\[0\]\[(\w+)\]$")


def parse_query_result(fields: list[tuple[str, str]]) -> dict[str, str]:
    """Collect the first result row from flattened query fields."""
    row: dict[str, str] = {}
    for key, value in fields:
        match = _RESULT_KEY.match(key)
        if match:
            row[match.group(1)] = value
    return row


class PayuniQueryClient:
    """Gateway trade-status query."""

    def __init__(
        self,
        api_url: str,
        merchant_id: str,
        codec: SignatureCodec,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api_url = api_url.rstrip("/")
        self.merchant_id = merchant_id
        self.codec = codec
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self.clock = clock

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def query_trade(self, trade_number: str) -> TradeQueryResult:
        """
        Query the gateway for the current status of a trade.

        Raises:
            GatewayQueryError: If the gateway is unreachable, rejects the query,
                or answers with a payload that fails verification
        """
        request_fields = TradeQueryFields(
            merchant_id=self.merchant_id,
            trade_number=trade_number,
            timestamp=int(self.clock()),
        ).to_fields()
        encoded = self.codec.encode(request_fields)

        try:
            response = await self.http_client.post(
                f"{self.api_url}{QUERY_PATH}",
                json={
                    "MerID": self.merchant_id,
                    "Version": QUERY_VERSION,
                    "EncryptInfo": encoded.encrypt_info,
                    "HashInfo": encoded.hash_info,
                },
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.error("trade_query_transport_error", trade_number=trade_number, error=str(e))
            raise GatewayQueryError(trade_number, f"transport error: {type(e).__name__}") from e
        except ValueError as e:
            raise GatewayQueryError(trade_number, "response is not JSON") from e

        if not isinstance(body, dict) or body.get("Status") != "SUCCESS":
            message = body.get("Message", "query rejected") if isinstance(body, dict) else "bad body"
            logger.warning("trade_query_rejected", trade_number=trade_number, message=message)
            raise GatewayQueryError(trade_number, str(message))

        try:
            fields = self.codec.decode(body.get("EncryptInfo", ""), body.get("HashInfo", ""))
        except (IntegrityError, DecodeError) as e:
            logger.warning("trade_query_unverifiable", trade_number=trade_number, error=str(e))
            raise GatewayQueryError(trade_number, "response failed verification") from e

        row = parse_query_result(fields)
        if not row.get("TradeStatus"):
            raise GatewayQueryError(trade_number, "response has no result row")

        try:
            trade_status = int(row["TradeStatus"])
            amount = int(float(row["TradeAmt"])) if row.get("TradeAmt") else None
        except ValueError as e:
            raise GatewayQueryError(trade_number, "response has non-numeric fields") from e

        result = TradeQueryResult(
            trade_number=row.get("MerTradeNo", trade_number),
            gateway_trade_seq=row.get("TradeNo") or None,
            trade_status=trade_status,
            amount=amount,
        )
        logger.info(
            "trade_query_succeeded",
            trade_number=trade_number,
            trade_status=result.trade_status,
            amount=result.amount,
        )
        return result

    async def close(self) -> None:
        """Close the owned HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
