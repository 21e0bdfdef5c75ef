"""
Tests for webhook verification and order reconciliation.

Covers idempotent replay, concurrent delivery, forged payloads, amount
checks, forward failures, recurring subscription charges and active query
confirmation.
"""

import asyncio

import pytest
import pytest_asyncio

from storefront.exceptions import (
    AmountMismatchError,
    GatewayQueryError,
    IntegrityError,
    UnknownOrderError,
)
from storefront.models.domain import CheckoutKind, OrderStatus, ResultStatus, SyncStatus
from storefront.services.payuni_gateway import PayuniQueryClient
from storefront.services.trade_codec import PayuniTradeCodec
from storefront.services.webhook_reconciler import (
    NotificationProcessor,
    OrderReconciler,
    WebhookVerifier,
)

TRADE_NO = "20260101000000abcdef0123"


@pytest.fixture
def verifier(codec) -> WebhookVerifier:
    return WebhookVerifier(codec)


@pytest.fixture
def reconciler(order_store, sync_client) -> OrderReconciler:
    return OrderReconciler(order_store, sync_client)


@pytest_asyncio.fixture
async def pending_order(order_store):
    return await order_store.create_pending(
        trade_number=TRADE_NO,
        product_id="plan_basic",
        product_name="Basic Plan",
        kind=CheckoutKind.SUBSCRIPTION,
        amount=990,
    )


@pytest.fixture
def make_event(codec, verifier):
    """Sign fields with the gateway key and verify them into a WebhookEvent."""

    def _make(**fields: str):
        encoded = codec.encode(list(fields.items()))
        return verifier.verify(encoded.encrypt_info, encoded.hash_info, "203.0.113.5")

    return _make


def _paid(**overrides: str) -> dict[str, str]:
    fields = {
        "MerTradeNo": TRADE_NO,
        "Status": "SUCCESS",
        "TradeStatus": "1",
        "TradeAmt": "990",
        "TradeNo": "SEQ1",
    }
    fields.update(overrides)
    return fields


# ============================================================================
# Verification
# ============================================================================


class TestWebhookVerifier:
    """Tests for WebhookVerifier."""

    def test_verified_event(self, make_event):
        event = make_event(**_paid(PeriodTradeNo="P1"))
        assert event.trade_number == TRADE_NO
        assert event.result_status is ResultStatus.SUCCESS
        assert event.amount == 990
        assert event.gateway_trade_seq == "SEQ1"
        assert event.period_trade_number == "P1"
        assert event.fields_dict()["TradeAmt"] == "990"

    def test_recurring_suffix_correlates_to_base_order(self, make_event):
        event = make_event(**_paid(MerTradeNo=f"{TRADE_NO}_2"))
        assert event.trade_number == TRADE_NO
        assert event.charge_sequence == 2
        assert event.fields_dict()["MerTradeNo"] == f"{TRADE_NO}_2"

    def test_forged_payload_rejected(self, verifier):
        forger = PayuniTradeCodec("abcdefghijklmnopqrstuvwxyz012345", "1234567890123456")
        encoded = forger.encode(list(_paid().items()))
        with pytest.raises(IntegrityError):
            verifier.verify(encoded.encrypt_info, encoded.hash_info)


# ============================================================================
# Reconciliation
# ============================================================================


class TestOrderReconciler:
    """Tests for OrderReconciler.apply."""

    @pytest.mark.asyncio
    async def test_success_completes_and_forwards(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        result = await reconciler.apply(make_event(**_paid()))

        assert result.applied
        assert result.forwarded
        assert result.status is OrderStatus.COMPLETED
        assert result.sync_status is SyncStatus.SYNCED
        assert not result.needs_redelivery

        order = await order_store.get(TRADE_NO)
        assert order.status is OrderStatus.COMPLETED
        assert order.gateway_trade_seq == "SEQ1"

        updates = upstream.actions("updateOrder")
        assert len(updates) == 1
        assert updates[0]["Status"] == "completed"

    @pytest.mark.asyncio
    async def test_replay_is_absorbed(self, reconciler, pending_order, make_event, upstream):
        event = make_event(**_paid())

        first = await reconciler.apply(event)
        second = await reconciler.apply(event)

        assert first.applied
        assert not second.applied
        assert not second.forwarded
        assert second.status is OrderStatus.COMPLETED
        assert len(upstream.actions("updateOrder")) == 1

    @pytest.mark.asyncio
    async def test_late_failure_cannot_overwrite_success(
        self, reconciler, pending_order, make_event, order_store
    ):
        await reconciler.apply(make_event(**_paid()))
        result = await reconciler.apply(make_event(MerTradeNo=TRADE_NO, Status="FAILED", TradeStatus="2"))

        assert not result.applied
        assert (await order_store.get(TRADE_NO)).status is OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_delivery_forwards_once(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        event = make_event(**_paid())

        results = await asyncio.gather(*[reconciler.apply(event) for _ in range(10)])

        assert sum(r.applied for r in results) == 1
        assert sum(r.forwarded for r in results) == 1
        assert len(upstream.actions("updateOrder")) == 1
        assert (await order_store.get(TRADE_NO)).sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_failure_notification(self, reconciler, pending_order, make_event):
        result = await reconciler.apply(
            make_event(MerTradeNo=TRADE_NO, Status="FAILED", TradeStatus="2", Message="declined")
        )
        assert result.applied
        assert result.status is OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_expired_notification(self, reconciler, pending_order, make_event):
        result = await reconciler.apply(make_event(MerTradeNo=TRADE_NO, TradeStatus="4"))
        assert result.status is OrderStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_period_enrollment_records_period_trade_number(
        self, reconciler, pending_order, make_event, order_store
    ):
        await reconciler.apply(
            make_event(MerTradeNo=TRADE_NO, Status="SUCCESS", PeriodAmt="990", PeriodTradeNo="P1")
        )
        assert (await order_store.get(TRADE_NO)).period_trade_number == "P1"

    @pytest.mark.asyncio
    async def test_unknown_order(self, reconciler, make_event, upstream):
        with pytest.raises(UnknownOrderError):
            await reconciler.apply(make_event(**_paid(MerTradeNo="20990101000000ffffffffff")))
        assert upstream.collaborator_calls == []

    @pytest.mark.asyncio
    async def test_amount_mismatch_leaves_order_pending(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        with pytest.raises(AmountMismatchError) as exc_info:
            await reconciler.apply(make_event(**_paid(TradeAmt="1")))

        assert exc_info.value.expected == 990
        assert exc_info.value.actual == 1
        assert (await order_store.get(TRADE_NO)).status is OrderStatus.PENDING
        assert upstream.actions("updateOrder") == []

    @pytest.mark.asyncio
    async def test_success_without_amount_is_rejected(self, reconciler, pending_order, make_event):
        with pytest.raises(AmountMismatchError):
            await reconciler.apply(make_event(MerTradeNo=TRADE_NO, Status="SUCCESS", TradeStatus="1"))

    @pytest.mark.asyncio
    async def test_failure_without_amount_is_accepted(self, reconciler, pending_order, make_event):
        result = await reconciler.apply(make_event(MerTradeNo=TRADE_NO, Status="FAILED"))
        assert result.status is OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_forward_failure_is_retried_on_redelivery(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        event = make_event(**_paid())
        upstream.collaborator_failures = 2

        first = await reconciler.apply(event)

        assert first.applied
        assert not first.forwarded
        assert first.needs_redelivery
        assert first.status is OrderStatus.COMPLETED
        assert [o.trade_number for o in await order_store.list_unsynced()] == [TRADE_NO]

        second = await reconciler.apply(event)

        assert not second.applied
        assert second.forwarded
        assert not second.needs_redelivery
        assert await order_store.list_unsynced() == []
        assert len(upstream.actions("updateOrder")) == 3


class TestRecurringCharges:
    """Later charges of a subscription (`<trade number>_<n>`)."""

    def _charge(self, sequence: int, **overrides: str) -> dict[str, str]:
        fields = _paid(
            MerTradeNo=f"{TRADE_NO}_{sequence}",
            TradeNo=f"SEQ{sequence}",
            PeriodTradeNo="P1",
            PayTime="2026-02-01 09:00:00",
        )
        fields.update(overrides)
        return fields

    @pytest.mark.asyncio
    async def test_charge_after_enrollment_is_recorded_and_forwarded(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        await reconciler.apply(make_event(**_paid()))

        result = await reconciler.apply(make_event(**self._charge(2)))

        assert result.applied
        assert result.forwarded
        assert result.charge_sequence == 2
        assert result.status is OrderStatus.COMPLETED
        assert len(upstream.actions("updateOrder")) == 1

        payments = upstream.actions("recordPeriodPayment")
        assert len(payments) == 1
        assert payments[0]["baseOrderNo"] == TRADE_NO
        assert payments[0]["sequenceNo"] == 2
        assert payments[0]["periodTradeNo"] == "P1"
        assert payments[0]["tradeSeq"] == "SEQ2"
        assert payments[0]["amount"] == 990
        assert payments[0]["status"] == "completed"
        assert payments[0]["paymentTime"] == "2026-02-01 09:00:00"

        charge = await order_store.get_charge(TRADE_NO, 2)
        assert charge.sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_each_sequence_is_its_own_event(
        self, reconciler, pending_order, make_event, upstream
    ):
        await reconciler.apply(make_event(**_paid()))

        second = await reconciler.apply(make_event(**self._charge(2)))
        third = await reconciler.apply(make_event(**self._charge(3)))

        assert second.applied and third.applied
        assert [p["sequenceNo"] for p in upstream.actions("recordPeriodPayment")] == [2, 3]

    @pytest.mark.asyncio
    async def test_charge_replay_is_absorbed(self, reconciler, pending_order, make_event, upstream):
        event = make_event(**self._charge(2))

        first = await reconciler.apply(event)
        second = await reconciler.apply(event)

        assert first.applied
        assert not second.applied
        assert not second.forwarded
        assert len(upstream.actions("recordPeriodPayment")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_charge_delivery_forwards_once(
        self, reconciler, pending_order, make_event, upstream
    ):
        event = make_event(**self._charge(2))

        results = await asyncio.gather(*[reconciler.apply(event) for _ in range(10)])

        assert sum(r.applied for r in results) == 1
        assert sum(r.forwarded for r in results) == 1
        assert len(upstream.actions("recordPeriodPayment")) == 1

    @pytest.mark.asyncio
    async def test_failed_charge_is_recorded_without_touching_enrollment(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        await reconciler.apply(make_event(**_paid()))

        result = await reconciler.apply(
            make_event(MerTradeNo=f"{TRADE_NO}_2", Status="FAILED", TradeStatus="2")
        )

        assert result.applied
        assert result.status is OrderStatus.FAILED
        assert (await order_store.get(TRADE_NO)).status is OrderStatus.COMPLETED
        assert upstream.actions("recordPeriodPayment")[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_charge_amount_mismatch(self, reconciler, pending_order, make_event, order_store):
        with pytest.raises(AmountMismatchError):
            await reconciler.apply(make_event(**self._charge(2, TradeAmt="1")))
        assert await order_store.get_charge(TRADE_NO, 2) is None

    @pytest.mark.asyncio
    async def test_charge_for_unknown_order(self, reconciler, make_event, upstream):
        with pytest.raises(UnknownOrderError):
            await reconciler.apply(make_event(**self._charge(2)))
        assert upstream.collaborator_calls == []

    @pytest.mark.asyncio
    async def test_charge_forward_failure_is_retried_on_redelivery(
        self, reconciler, pending_order, make_event, order_store, upstream
    ):
        event = make_event(**self._charge(2))
        upstream.collaborator_failures = 2

        first = await reconciler.apply(event)

        assert first.applied
        assert first.needs_redelivery
        assert [(c.trade_number, c.sequence) for c in await order_store.list_unsynced_charges()] == [
            (TRADE_NO, 2)
        ]

        second = await reconciler.apply(event)

        assert not second.applied
        assert second.forwarded
        assert not second.needs_redelivery
        assert await order_store.list_unsynced_charges() == []


class TestQueryConfirmation:
    """Tests for active confirmation through the trade query API."""

    @pytest.fixture
    def confirming_reconciler(self, order_store, sync_client, codec, http_client, test_settings):
        query_client = PayuniQueryClient(
            api_url=test_settings.payuni_api_url,
            merchant_id=test_settings.payuni_merchant_id,
            codec=codec,
            http_client=http_client,
        )
        return OrderReconciler(order_store, sync_client, query_client)

    def _answer(self, codec, trade_status: str, amount: str = "990") -> dict[str, str]:
        encoded = codec.encode(
            [
                ("Result[0][MerTradeNo]", TRADE_NO),
                ("Result[0][TradeStatus]", trade_status),
                ("Result[0][TradeAmt]", amount),
            ]
        )
        return {"Status": "SUCCESS", "EncryptInfo": encoded.encrypt_info, "HashInfo": encoded.hash_info}

    @pytest.mark.asyncio
    async def test_confirmed_success(
        self, confirming_reconciler, pending_order, make_event, codec, upstream
    ):
        upstream.query_response = self._answer(codec, "1")

        result = await confirming_reconciler.apply(make_event(**_paid()))

        assert result.status is OrderStatus.COMPLETED
        assert len(upstream.query_calls) == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_success_leaves_order_pending(
        self, confirming_reconciler, pending_order, make_event, codec, upstream, order_store
    ):
        upstream.query_response = self._answer(codec, "0")

        with pytest.raises(GatewayQueryError):
            await confirming_reconciler.apply(make_event(**_paid()))

        assert (await order_store.get(TRADE_NO)).status is OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_query_amount_mismatch(
        self, confirming_reconciler, pending_order, make_event, codec, upstream
    ):
        upstream.query_response = self._answer(codec, "1", amount="10")

        with pytest.raises(AmountMismatchError):
            await confirming_reconciler.apply(make_event(**_paid()))

    @pytest.mark.asyncio
    async def test_failure_is_not_queried(
        self, confirming_reconciler, pending_order, make_event, upstream
    ):
        await confirming_reconciler.apply(make_event(MerTradeNo=TRADE_NO, Status="FAILED"))
        assert upstream.query_calls == []

    @pytest.mark.asyncio
    async def test_confirm_without_query_client_raises(
        self, reconciler, pending_order, make_event, upstream
    ):
        with pytest.raises(GatewayQueryError, match="not configured"):
            await reconciler._confirm(pending_order, make_event(**_paid()))
        assert upstream.query_calls == []


class TestNotificationProcessor:
    """Tests for the verifier and reconciler wired together."""

    @pytest.mark.asyncio
    async def test_process_notification(self, verifier, reconciler, pending_order, codec):
        processor = NotificationProcessor(verifier, reconciler)
        encoded = codec.encode(list(_paid().items()))

        result = await processor.process_notification(encoded.encrypt_info, encoded.hash_info)

        assert result.applied
        assert result.status is OrderStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_forged_notification_never_touches_order(
        self, verifier, reconciler, pending_order, order_store
    ):
        processor = NotificationProcessor(verifier, reconciler)
        forger = PayuniTradeCodec("abcdefghijklmnopqrstuvwxyz012345", "1234567890123456")
        encoded = forger.encode(list(_paid().items()))

        with pytest.raises(IntegrityError):
            await processor.process_notification(encoded.encrypt_info, encoded.hash_info)

        assert (await order_store.get(TRADE_NO)).status is OrderStatus.PENDING
