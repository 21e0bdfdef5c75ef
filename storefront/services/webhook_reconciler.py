"""
Webhook Verifier & Order Reconciler.

Authenticates gateway notifications and applies each to its order exactly
once:

    received -> verified -> matched -> applied

A payload that fails the signature check never becomes a WebhookEvent and
never touches order state. Repeated or concurrent delivery of the same
verified notification is absorbed by the ledger's compare-and-set; only the
single winner forwards the outcome to the persistence collaborator.

Later charges of a subscription (`<trade number>_<n>`) never change the
enrollment order. Each is recorded once under (trade number, n) and
forwarded as a period payment on its own sync track.
"""

from structlog import get_logger

from storefront.exceptions import (
    AmountMismatchError,
    DecodeError,
    GatewayQueryError,
    IntegrityError,
    PersistenceError,
    UnknownOrderError,
)
from storefront.models.domain import (
    OrderData,
    PeriodChargeData,
    ReconcileResult,
    ResultStatus,
    SyncStatus,
    WebhookEvent,
)
from storefront.models.gateway import NotifyFields
from storefront.observability.tracing import trace_operation
from storefront.services.order_store import OrderStore
from storefront.services.order_sync import OrderSyncClient
from storefront.services.payuni_gateway import PayuniQueryClient
from storefront.services.trade_codec import SignatureCodec

logger = get_logger(__name__)


class WebhookVerifier:
    """Turns a raw EncryptInfo/HashInfo pair into a verified WebhookEvent."""

    def __init__(self, codec: SignatureCodec):
        self.codec = codec

    def verify(
        self,
        encrypt_info: str,
        hash_info: str,
        source_ip: str | None = None,
    ) -> WebhookEvent:
        """
        Raises:
            IntegrityError: If the signature does not match
            DecodeError: If the signed payload is malformed
        """
        try:
            fields = self.codec.decode(encrypt_info, hash_info)
        except IntegrityError:
            logger.warning(
                "webhook_signature_invalid",
                source_ip=source_ip,
                encrypt_info_length=len(encrypt_info or ""),
                hash_info_length=len(hash_info or ""),
            )
            raise
        except DecodeError as e:
            logger.warning("webhook_payload_undecodable", source_ip=source_ip, error=e.message)
            raise

        notify = NotifyFields.from_fields(fields)
        return WebhookEvent(
            trade_number=notify.base_trade_number,
            result_status=notify.result_status,
            amount=notify.amount,
            gateway_trade_seq=notify.gateway_trade_seq,
            period_trade_number=notify.period_trade_number,
            message=notify.message,
            fields=notify.raw,
            charge_sequence=notify.charge_sequence,
        )


class OrderReconciler:
    """Applies verified notifications to the order ledger."""

    def __init__(
        self,
        order_store: OrderStore,
        sync_client: OrderSyncClient,
        query_client: PayuniQueryClient | None = None,
    ):
        self.order_store = order_store
        self.sync_client = sync_client
        self.query_client = query_client

    async def apply(self, event: WebhookEvent) -> ReconcileResult:
        """
        Apply a verified notification.

        Raises:
            UnknownOrderError: If no order has the event's trade number
            AmountMismatchError: If the notified amount differs from the order
            GatewayQueryError: If active confirmation is enabled and fails
        """
        with trace_operation("webhook_apply", trade_number=event.trade_number) as span:
            order = await self.order_store.get(event.trade_number)
            if order is None:
                logger.warning("webhook_unknown_order", trade_number=event.trade_number)
                raise UnknownOrderError(event.trade_number)

            if event.charge_sequence is not None:
                span.set_attribute("charge_sequence", event.charge_sequence)
                return await self._apply_charge(order, event, event.charge_sequence)

            if order.status.is_terminal:
                # Redelivery: nothing to apply, but finish a forward that failed earlier
                forwarded = False
                if order.sync_status is SyncStatus.FAILED:
                    forwarded = await self._forward(order, event)
                result = await self._result(order, applied=False, forwarded=forwarded)
                logger.info(
                    "webhook_replayed",
                    trade_number=event.trade_number,
                    status=order.status.value,
                    forwarded=forwarded,
                )
                return result

            self._check_amount(order, event)
            if self.query_client is not None and event.result_status is ResultStatus.SUCCESS:
                await self._confirm(order, event)

            outcome = await self.order_store.transition(
                event.trade_number,
                event.result_status.to_order_status(),
                gateway_trade_seq=event.gateway_trade_seq,
                period_trade_number=event.period_trade_number,
            )
            span.set_attribute("applied", outcome.applied)

            if outcome.applied:
                logger.info(
                    "webhook_applied",
                    trade_number=event.trade_number,
                    status=outcome.order.status.value,
                    gateway_trade_seq=event.gateway_trade_seq,
                )
                forwarded = await self._forward(outcome.order, event)
            else:
                # Lost the race to a concurrent delivery of the same notification
                logger.info("webhook_transition_lost", trade_number=event.trade_number)
                forwarded = False
                if outcome.order.sync_status is SyncStatus.FAILED:
                    forwarded = await self._forward(outcome.order, event)

            return await self._result(outcome.order, applied=outcome.applied, forwarded=forwarded)

    async def _apply_charge(
        self, order: OrderData, event: WebhookEvent, sequence: int
    ) -> ReconcileResult:
        """Record one recurring charge of a subscription exactly once."""
        existing = await self.order_store.get_charge(order.trade_number, sequence)
        if existing is not None:
            forwarded = False
            if existing.sync_status is SyncStatus.FAILED:
                forwarded = await self._forward_charge(order, existing, event)
            logger.info(
                "period_charge_replayed",
                trade_number=order.trade_number,
                sequence=sequence,
                forwarded=forwarded,
            )
            return await self._charge_result(existing, applied=False, forwarded=forwarded)

        self._check_amount(order, event)
        if self.query_client is not None and event.result_status is ResultStatus.SUCCESS:
            await self._confirm(order, event)

        outcome = await self.order_store.record_charge(
            order.trade_number,
            sequence,
            event.result_status.to_order_status(),
            amount=event.amount,
            gateway_trade_seq=event.gateway_trade_seq,
            period_trade_number=event.period_trade_number,
            paid_at=event.fields_dict().get("PayTime") or None,
        )

        forwarded = False
        if outcome.applied:
            logger.info(
                "period_charge_recorded",
                trade_number=order.trade_number,
                sequence=sequence,
                status=outcome.charge.status.value,
                gateway_trade_seq=event.gateway_trade_seq,
            )
            forwarded = await self._forward_charge(order, outcome.charge, event)
        elif outcome.charge.sync_status is SyncStatus.FAILED:
            forwarded = await self._forward_charge(order, outcome.charge, event)

        return await self._charge_result(outcome.charge, applied=outcome.applied, forwarded=forwarded)

    def _check_amount(self, order: OrderData, event: WebhookEvent) -> None:
        """Successful payments must report the order amount; others only if present."""
        if event.amount is None and event.result_status is not ResultStatus.SUCCESS:
            return
        if event.amount != order.amount:
            logger.error(
                "webhook_amount_mismatch",
                trade_number=order.trade_number,
                expected=order.amount,
                actual=event.amount,
            )
            raise AmountMismatchError(order.trade_number, order.amount, event.amount)

    async def _confirm(self, order: OrderData, event: WebhookEvent) -> None:
        """Cross-check a success notification against the gateway query API."""
        if self.query_client is None:
            raise GatewayQueryError(order.trade_number, "trade query client is not configured")
        raw_trade_number = event.fields_dict().get("MerTradeNo", order.trade_number)
        confirmed = await self.query_client.query_trade(raw_trade_number)

        if not confirmed.is_paid:
            logger.warning(
                "webhook_unconfirmed",
                trade_number=order.trade_number,
                trade_status=confirmed.trade_status,
            )
            raise GatewayQueryError(order.trade_number, f"trade status is {confirmed.trade_status}")
        if confirmed.amount is not None and confirmed.amount != order.amount:
            logger.error(
                "webhook_query_amount_mismatch",
                trade_number=order.trade_number,
                expected=order.amount,
                actual=confirmed.amount,
            )
            raise AmountMismatchError(order.trade_number, order.amount, confirmed.amount)

    async def _forward(self, order: OrderData, event: WebhookEvent) -> bool:
        """Forward the terminal order if this caller wins the sync claim."""
        if not await self.order_store.claim_sync(order.trade_number):
            return False
        try:
            await self.sync_client.update_order(order, event)
        except PersistenceError as e:
            await self.order_store.mark_sync_failed(order.trade_number, str(e))
            logger.error(
                "webhook_forward_queued",
                trade_number=order.trade_number,
                error=e.message,
            )
            return False
        await self.order_store.mark_synced(order.trade_number)
        return True

    async def _forward_charge(
        self, order: OrderData, charge: PeriodChargeData, event: WebhookEvent
    ) -> bool:
        """Forward a recurring charge if this caller wins its sync claim."""
        if not await self.order_store.claim_charge_sync(charge.trade_number, charge.sequence):
            return False
        try:
            await self.sync_client.record_period_payment(order, charge, event)
        except PersistenceError as e:
            await self.order_store.mark_charge_sync_failed(
                charge.trade_number, charge.sequence, str(e)
            )
            logger.error(
                "period_charge_forward_queued",
                trade_number=charge.trade_number,
                sequence=charge.sequence,
                error=e.message,
            )
            return False
        await self.order_store.mark_charge_synced(charge.trade_number, charge.sequence)
        return True

    async def _charge_result(
        self, charge: PeriodChargeData, applied: bool, forwarded: bool
    ) -> ReconcileResult:
        current = await self.order_store.get_charge(charge.trade_number, charge.sequence) or charge
        return ReconcileResult(
            trade_number=charge.trade_number,
            status=current.status,
            applied=applied,
            forwarded=forwarded,
            sync_status=current.sync_status,
            charge_sequence=charge.sequence,
        )

    async def _result(self, order: OrderData, applied: bool, forwarded: bool) -> ReconcileResult:
        current = await self.order_store.get(order.trade_number) or order
        return ReconcileResult(
            trade_number=order.trade_number,
            status=current.status,
            applied=applied,
            forwarded=forwarded,
            sync_status=current.sync_status,
        )


class NotificationProcessor:
    """Verifier and reconciler wired together for the webhook endpoint."""

    def __init__(self, verifier: WebhookVerifier, reconciler: OrderReconciler):
        self.verifier = verifier
        self.reconciler = reconciler

    async def process_notification(
        self,
        encrypt_info: str,
        hash_info: str,
        source_ip: str | None = None,
    ) -> ReconcileResult:
        event = self.verifier.verify(encrypt_info, hash_info, source_ip)
        return await self.reconciler.apply(event)
