"""
FastAPI Dependencies - service container, caller identity and rate limits.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from fastapi import Depends, Request
from structlog import get_logger

from storefront.config import Settings
from storefront.exceptions import RateLimitedError
from storefront.observability.metrics import metrics
from storefront.services.catalog import ProductCatalog
from storefront.services.one_time_tokens import OneTimeTokenStore
from storefront.services.order_store import InMemoryOrderStore, OrderStore, SqlOrderStore
from storefront.services.order_sync import OrderSyncClient
from storefront.services.payment_builder import PaymentRequestBuilder
from storefront.services.payuni_gateway import PayuniQueryClient
from storefront.services.rate_limit import (
    InMemoryCounterStore,
    RateLimitPolicies,
    RateLimitPolicy,
    RateLimiter,
)
from storefront.services.trade_codec import PayuniTradeCodec
from storefront.services.turnstile import TurnstileVerifier
from storefront.services.webhook_reconciler import (
    NotificationProcessor,
    OrderReconciler,
    WebhookVerifier,
)

logger = get_logger(__name__)

RESULT_TOKEN_PURPOSE = "payment_result"


@dataclass
class Services:
    """Process-wide components, built once at startup from Settings."""

    settings: Settings
    codec: PayuniTradeCodec
    catalog: ProductCatalog
    order_store: OrderStore
    verifier: TurnstileVerifier
    sync_client: OrderSyncClient
    query_client: PayuniQueryClient | None
    builder: PaymentRequestBuilder
    webhook_verifier: WebhookVerifier
    notifications: NotificationProcessor
    result_tokens: OneTimeTokenStore
    rate_limiter: RateLimiter
    rate_limits: RateLimitPolicies

    async def close(self) -> None:
        """Close outbound HTTP clients."""
        await self.verifier.close()
        await self.sync_client.close()
        if self.query_client is not None:
            await self.query_client.close()


def build_services(
    settings: Settings,
    order_store: OrderStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Services:
    """
    Wire every component from one immutable Settings instance.

    Without an explicit order store, DATABASE_URL selects the SQL ledger and
    its absence the in-memory one.
    """
    if order_store is None:
        if settings.database_url:
            from storefront.db.session import get_session_factory

            order_store = SqlOrderStore(get_session_factory())
        else:
            logger.warning("order_store_in_memory", reason="DATABASE_URL not configured")
            order_store = InMemoryOrderStore()

    codec = PayuniTradeCodec(settings.payuni_hash_key, settings.payuni_hash_iv)
    catalog = ProductCatalog()
    verifier = TurnstileVerifier(
        enabled=settings.turnstile_enable,
        secret_key=settings.turnstile_secret_key,
        verify_url=settings.turnstile_verify_url,
        timeout_seconds=settings.turnstile_timeout_seconds,
        http_client=http_client,
    )
    sync_client = OrderSyncClient(
        webhook_url=settings.gas_webhook_url,
        merchant_id=settings.payuni_merchant_id,
        token=settings.gas_webhook_token,
        timeout_seconds=settings.gas_webhook_timeout_seconds,
        http_client=http_client,
    )
    query_client = None
    if settings.payuni_confirm_with_query:
        query_client = PayuniQueryClient(
            api_url=settings.payuni_api_url,
            merchant_id=settings.payuni_merchant_id,
            codec=codec,
            timeout_seconds=settings.payuni_query_timeout_seconds,
            http_client=http_client,
        )

    builder = PaymentRequestBuilder(
        settings=settings,
        codec=codec,
        catalog=catalog,
        order_store=order_store,
        verifier=verifier,
        sync_client=sync_client,
    )
    webhook_verifier = WebhookVerifier(codec)
    reconciler = OrderReconciler(order_store, sync_client, query_client)

    return Services(
        settings=settings,
        codec=codec,
        catalog=catalog,
        order_store=order_store,
        verifier=verifier,
        sync_client=sync_client,
        query_client=query_client,
        builder=builder,
        webhook_verifier=webhook_verifier,
        notifications=NotificationProcessor(webhook_verifier, reconciler),
        result_tokens=OneTimeTokenStore(ttl_seconds=settings.one_time_token_ttl_seconds),
        rate_limiter=RateLimiter(InMemoryCounterStore()),
        rate_limits=RateLimitPolicies.from_settings(settings),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency for the service container."""
    return request.app.state.services  # type: ignore[no-any-return]


def resolve_client_ip(request: Request, trusted_proxy_hops: int) -> str:
    """
    Caller address as recorded by the outermost trusted proxy.

    Each trusted proxy appends the address it received the request from, so
    the entry `trusted_proxy_hops` from the right is the first one a client
    cannot write. A header with fewer entries did not pass through the proxy
    chain and the socket address is used instead.
    """
    if trusted_proxy_hops > 0:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
        if len(hops) >= trusted_proxy_hops:
            return hops[-trusted_proxy_hops]
    if request.client:
        return request.client.host
    return "unknown"


def get_client_ip(request: Request, services: Services = Depends(get_services)) -> str:
    """FastAPI dependency for the rate-limit identity of the caller."""
    return resolve_client_ip(request, services.settings.trusted_proxy_hops)


def rate_limit(route_class: str) -> Callable[..., Awaitable[None]]:
    """
    Dependency factory enforcing a route class budget.

    Usage:
        @router.post("/create-payment", dependencies=[Depends(rate_limit("payment"))])
    """

    async def _check(
        services: Services = Depends(get_services),
        client_ip: str = Depends(get_client_ip),
    ) -> None:
        policy: RateLimitPolicy = getattr(services.rate_limits, route_class)
        try:
            await services.rate_limiter.check(policy, client_ip)
        except RateLimitedError:
            metrics.record_rate_limited(route_class)
            raise

    return _check
