"""
Payment Request Builder.

Turns a product selection into one signed, ready-to-redirect gateway
payload and records the matching pending order.

The amount always comes from the catalog. Nothing the client sends other
than the product ID, the human-verification token and an optional email
reaches the signed field list.
"""

import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from structlog import get_logger

from storefront.config import Settings
from storefront.exceptions import ConfigError, PersistenceError, ProductTypeMismatchError
from storefront.models.domain import CheckoutKind, PaymentRequest, Product
from storefront.models.gateway import PeriodTradeFields, UppTradeFields
from storefront.services.catalog import ProductCatalog
from storefront.services.order_store import OrderStore
from storefront.services.order_sync import OrderSyncClient
from storefront.services.period_translator import first_charge_date, translate_period
from storefront.services.trade_codec import SignatureCodec
from storefront.services.turnstile import TurnstileVerifier

logger = get_logger(__name__)

UPP_PATH = "/api/upp"
PERIOD_PATH = "/api/period/Page"

# Period dates are calendar days in the gateway's local time
GATEWAY_TIMEZONE = ZoneInfo("Asia/Taipei")


def generate_trade_number(now: datetime | None = None) -> str:
    """
    Fresh merchant trade number: UTC timestamp plus 40 random bits.

    24 characters, within the gateway's 25 character MerTradeNo limit. The
    webhook path correlates on this value alone, so it must never repeat.
    """
    now = now or datetime.now(UTC)
    return now.strftime("%Y%m%d%H%M%S") + secrets.token_hex(5)


class PaymentRequestBuilder:
    """Builds signed gateway payloads for one-time and subscription checkouts."""

    def __init__(
        self,
        settings: Settings,
        codec: SignatureCodec,
        catalog: ProductCatalog,
        order_store: OrderStore,
        verifier: TurnstileVerifier,
        sync_client: OrderSyncClient,
        clock: Callable[[], float] = time.time,
        trade_number_factory: Callable[[], str] = generate_trade_number,
    ):
        self.settings = settings
        self.codec = codec
        self.catalog = catalog
        self.order_store = order_store
        self.verifier = verifier
        self.sync_client = sync_client
        self.clock = clock
        self.trade_number_factory = trade_number_factory

    def endpoint_for(self, kind: CheckoutKind) -> str:
        base = self.settings.payuni_api_url.rstrip("/")
        return f"{base}{PERIOD_PATH if kind is CheckoutKind.SUBSCRIPTION else UPP_PATH}"

    def compose(
        self,
        product: Product,
        trade_number: str,
        customer_email: str | None = None,
    ) -> PaymentRequest:
        """
        Assemble and sign the payload for a resolved product.

        Pure apart from reading the clock; no I/O.

        Raises:
            ConfigError: If the product's billing terms cannot be translated
        """
        now = self.clock()
        period_params = None

        if product.is_subscription:
            if product.period_config is None:
                raise ConfigError(product.id, "subscription has no period configuration")
            kind = CheckoutKind.SUBSCRIPTION
            period_params = translate_period(product.period_config, product.trial, product.id)
            enrolled_on = datetime.fromtimestamp(now, GATEWAY_TIMEZONE).date()
            fields = PeriodTradeFields(
                merchant_id=self.settings.payuni_merchant_id,
                trade_number=trade_number,
                amount=product.price,
                description=product.name,
                period_type=period_params.period_type,
                period_date=period_params.period_date,
                period_times=period_params.period_times,
                f_type=period_params.f_type,
                first_charge_date=first_charge_date(period_params, enrolled_on),
                return_url=self.settings.payuni_return_url,
                notify_url=self.settings.notify_url,
                customer_email=customer_email,
            ).to_fields()
        else:
            kind = CheckoutKind.ONE_TIME
            fields = UppTradeFields(
                merchant_id=self.settings.payuni_merchant_id,
                trade_number=trade_number,
                amount=product.price,
                timestamp=int(now),
                description=product.name,
                return_url=self.settings.payuni_return_url,
                notify_url=self.settings.notify_url,
                customer_email=customer_email,
            ).to_fields()

        encoded = self.codec.encode(fields)

        return PaymentRequest(
            product_id=product.id,
            kind=kind,
            amount=product.price,
            merchant_trade_number=trade_number,
            merchant_id=self.settings.payuni_merchant_id,
            version=self.settings.payuni_version,
            encrypted_payload=encoded.encrypt_info,
            signature=encoded.hash_info,
            gateway_endpoint=self.endpoint_for(kind),
            period_params=period_params,
        )

    async def build(
        self,
        product_id: str,
        kind: CheckoutKind,
        human_token: str | None,
        remote_ip: str | None = None,
        customer_email: str | None = None,
    ) -> PaymentRequest:
        """
        Build a signed payment request and record its pending order.

        Exactly one pending order is created per successful build; every
        failure below is raised before the order is written.

        Raises:
            VerificationFailedError: If human verification is enabled and fails
            NotFoundError: If the product ID is unknown
            ProductTypeMismatchError: If the product does not match the checkout route
            ConfigError: If the product's billing terms are malformed
        """
        await self.verifier.verify(human_token, remote_ip)

        product = self.catalog.get(product_id)
        if product.is_subscription != (kind is CheckoutKind.SUBSCRIPTION):
            logger.warning("checkout_kind_mismatch", product_id=product_id, kind=kind.value)
            raise ProductTypeMismatchError(product_id, kind.value)

        payment = self.compose(product, self.trade_number_factory(), customer_email)

        order = await self.order_store.create_pending(
            trade_number=payment.merchant_trade_number,
            product_id=product.id,
            product_name=product.name,
            kind=payment.kind,
            amount=payment.amount,
            customer_email=customer_email,
        )

        logger.info(
            "payment_request_built",
            trade_number=payment.merchant_trade_number,
            product_id=product.id,
            kind=payment.kind.value,
            amount=payment.amount,
            f_type=payment.period_params.f_type if payment.period_params else None,
        )

        try:
            await self.sync_client.create_order(order)
        except PersistenceError as e:
            # Checkout proceeds; the order is queued for reconciliation
            await self.order_store.mark_sync_failed(order.trade_number, str(e))

        return payment
