"""
Tests for the PayUNi trade query client.
"""

import httpx
import pytest

from storefront.exceptions import GatewayQueryError
from storefront.services.payuni_gateway import (
    QUERY_VERSION,
    PayuniQueryClient,
    parse_query_result,
)
from storefront.services.trade_codec import PayuniTradeCodec

TRADE_NO = "20260101000000abcdef0123"


@pytest.fixture
def query_client(test_settings, codec, http_client) -> PayuniQueryClient:
    return PayuniQueryClient(
        api_url=test_settings.payuni_api_url,
        merchant_id=test_settings.payuni_merchant_id,
        codec=codec,
        http_client=http_client,
        clock=lambda: 1767225600.0,
    )


def _query_answer(codec, **row: str) -> dict[str, str]:
    encoded = codec.encode([(f"Result[0][{k}]", v) for k, v in row.items()])
    return {"Status": "SUCCESS", "EncryptInfo": encoded.encrypt_info, "HashInfo": encoded.hash_info}


class TestParseQueryResult:
    """Tests for parse_query_result."""

    def test_first_row_only(self):
        fields = [
            ("Status", "SUCCESS"),
            ("Result[0][MerTradeNo]", "T1"),
            ("Result[0][TradeStatus]", "1"),
            ("Result[1][TradeStatus]", "2"),
        ]
        assert parse_query_result(fields) == {"MerTradeNo": "T1", "TradeStatus": "1"}


class TestPayuniQueryClient:
    """Tests for PayuniQueryClient.query_trade."""

    @pytest.mark.asyncio
    async def test_request_is_signed(self, query_client, codec, upstream):
        upstream.query_response = _query_answer(codec, MerTradeNo=TRADE_NO, TradeStatus="1")

        await query_client.query_trade(TRADE_NO)

        body = upstream.query_calls[0]
        assert body["Version"] == QUERY_VERSION
        assert body["MerID"] == "S01421169"
        assert dict(codec.decode(body["EncryptInfo"], body["HashInfo"])) == {
            "MerID": "S01421169",
            "MerTradeNo": TRADE_NO,
            "Timestamp": "1767225600",
        }

    @pytest.mark.asyncio
    async def test_paid_trade(self, query_client, codec, upstream):
        upstream.query_response = _query_answer(
            codec, MerTradeNo=TRADE_NO, TradeNo="SEQ1", TradeStatus="1", TradeAmt="990"
        )

        result = await query_client.query_trade(TRADE_NO)

        assert result.is_paid
        assert result.amount == 990
        assert result.gateway_trade_seq == "SEQ1"

    @pytest.mark.asyncio
    async def test_unpaid_trade(self, query_client, codec, upstream):
        upstream.query_response = _query_answer(codec, MerTradeNo=TRADE_NO, TradeStatus="0")

        result = await query_client.query_trade(TRADE_NO)

        assert not result.is_paid
        assert result.amount is None

    @pytest.mark.asyncio
    async def test_rejected_query(self, query_client, upstream):
        upstream.query_response = {"Status": "ERROR", "Message": "trade not found"}

        with pytest.raises(GatewayQueryError, match="trade not found"):
            await query_client.query_trade(TRADE_NO)

    @pytest.mark.asyncio
    async def test_forged_answer_rejected(self, query_client, upstream):
        forger = PayuniTradeCodec("abcdefghijklmnopqrstuvwxyz012345", "1234567890123456")
        upstream.query_response = _query_answer(forger, MerTradeNo=TRADE_NO, TradeStatus="1")

        with pytest.raises(GatewayQueryError, match="verification"):
            await query_client.query_trade(TRADE_NO)

    @pytest.mark.asyncio
    async def test_missing_result_row(self, query_client, codec, upstream):
        upstream.query_response = _query_answer(codec, MerTradeNo=TRADE_NO)

        with pytest.raises(GatewayQueryError, match="no result row"):
            await query_client.query_trade(TRADE_NO)

    @pytest.mark.asyncio
    async def test_non_numeric_status(self, query_client, codec, upstream):
        upstream.query_response = _query_answer(codec, MerTradeNo=TRADE_NO, TradeStatus="paid")

        with pytest.raises(GatewayQueryError, match="non-numeric"):
            await query_client.query_trade(TRADE_NO)

    @pytest.mark.asyncio
    async def test_transport_error(self, test_settings, codec):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = PayuniQueryClient(
            api_url=test_settings.payuni_api_url,
            merchant_id="S01",
            codec=codec,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(GatewayQueryError, match="transport error"):
            await client.query_trade(TRADE_NO)
