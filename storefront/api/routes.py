"""
API Routes - FastAPI endpoints for checkout, gateway callbacks and results.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import json
from datetime import UTC, datetime
from urllib.parse import parse_qsl, urlencode

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse
from sqlalchemy import text
from structlog import get_logger

from storefront.api.dependencies import (
    RESULT_TOKEN_PURPOSE,
    Services,
    get_client_ip,
    get_services,
    rate_limit,
)
from storefront.api.security import new_csrf_token
from storefront.exceptions import (
    AmountMismatchError,
    DecodeError,
    GatewayQueryError,
    IntegrityError,
    UnknownOrderError,
    VerificationFailedError,
)
from storefront.models.api import (
    CreatePaymentRequest,
    CsrfTokenResponse,
    GatewayFormData,
    HealthResponse,
    OrderStatusResponse,
    PaymentFormResponse,
    PaymentResultResponse,
)
from storefront.models.domain import CheckoutKind
from storefront.models.gateway import NotifyFields
from storefront.observability.logging import log_context
from storefront.observability.metrics import metrics

logger = get_logger(__name__)

# Every route shares the general budget
router = APIRouter(dependencies=[Depends(rate_limit("general"))])

# Gateway callbacks and health checks; authenticated by signature, not anti-forgery token
gateway_router = APIRouter(dependencies=[Depends(rate_limit("general"))])

WEBHOOK_OK = "OK"
WEBHOOK_FAIL = "FAIL"


async def read_gateway_fields(request: Request) -> dict[str, str]:
    """Gateway posts are form-encoded; some integrations send JSON."""
    body = await request.body()
    if not body:
        return {}
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            parsed = json.loads(body)
            if not isinstance(parsed, dict):
                return {}
            return {str(k): str(v) for k, v in parsed.items()}
        return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except ValueError:
        logger.warning("gateway_body_unparseable", path=request.url.path, length=len(body))
        return {}


# ============================================================================
# Checkout
# ============================================================================


async def _checkout(
    kind: CheckoutKind,
    body: CreatePaymentRequest,
    services: Services,
    client_ip: str,
) -> PaymentFormResponse:
    try:
        payment = await services.builder.build(
            product_id=body.product_id,
            kind=kind,
            human_token=body.turnstile_token,
            remote_ip=client_ip,
            customer_email=body.email,
        )
    except VerificationFailedError:
        metrics.record_verification_failure()
        raise

    metrics.record_payment_request(payment.kind.value, payment.amount)
    return PaymentFormResponse(
        pay_url=payment.gateway_endpoint,
        data=GatewayFormData(**payment.form_fields()),
        trade_number=payment.merchant_trade_number,
    )


@router.post(
    "/create-payment",
    response_model=PaymentFormResponse,
    dependencies=[Depends(rate_limit("payment"))],
)
async def create_payment(
    body: CreatePaymentRequest,
    services: Services = Depends(get_services),
    client_ip: str = Depends(get_client_ip),
) -> PaymentFormResponse:
    """
    Sign a one-time purchase.

    The amount is taken from the catalog; any amount in the body is ignored.
    """
    return await _checkout(CheckoutKind.ONE_TIME, body, services, client_ip)


@router.post(
    "/create-subscription",
    response_model=PaymentFormResponse,
    dependencies=[Depends(rate_limit("payment"))],
)
async def create_subscription(
    body: CreatePaymentRequest,
    services: Services = Depends(get_services),
    client_ip: str = Depends(get_client_ip),
) -> PaymentFormResponse:
    """Sign a subscription enrollment (immediate or trial-deferred first charge)."""
    return await _checkout(CheckoutKind.SUBSCRIPTION, body, services, client_ip)


# ============================================================================
# Gateway callbacks
# ============================================================================


@gateway_router.post("/payuni-webhook", response_class=PlainTextResponse)
async def payuni_webhook(
    request: Request,
    services: Services = Depends(get_services),
    client_ip: str = Depends(get_client_ip),
) -> PlainTextResponse:
    """
    Gateway result notification.

    Always answers 200. "OK" tells the gateway to stop delivering; "FAIL"
    makes it deliver again. Forged or malformed payloads get "FAIL" and never
    touch order state.
    """
    fields = await read_gateway_fields(request)

    with log_context(webhook_source_ip=client_ip):
        try:
            result = await services.notifications.process_notification(
                fields.get("EncryptInfo", ""),
                fields.get("HashInfo", ""),
                source_ip=client_ip,
            )
        except (IntegrityError, DecodeError):
            metrics.record_webhook("rejected")
            return PlainTextResponse(WEBHOOK_FAIL)
        except UnknownOrderError:
            metrics.record_webhook("unknown_order")
            return PlainTextResponse(WEBHOOK_OK)
        except AmountMismatchError:
            metrics.record_webhook("amount_mismatch")
            return PlainTextResponse(WEBHOOK_FAIL)
        except GatewayQueryError as e:
            logger.warning("webhook_confirmation_failed", trade_number=e.trade_number, error=e.message)
            metrics.record_webhook("unconfirmed")
            return PlainTextResponse(WEBHOOK_FAIL)

    if result.needs_redelivery:
        metrics.record_webhook("forward_failed")
        return PlainTextResponse(WEBHOOK_FAIL)

    metrics.record_webhook("applied" if result.applied else "replayed")
    return PlainTextResponse(WEBHOOK_OK)


@gateway_router.post("/payment-return")
async def payment_return(
    request: Request,
    services: Services = Depends(get_services),
    client_ip: str = Depends(get_client_ip),
) -> RedirectResponse:
    """
    Browser redirect target after the gateway page.

    Hands the result to the result page through a one-time token. Order
    state is only ever changed by the webhook.
    """
    result_page = services.settings.result_page_path
    fields = await read_gateway_fields(request)

    try:
        decoded = services.codec.decode(fields.get("EncryptInfo", ""), fields.get("HashInfo", ""))
        notify = NotifyFields.from_fields(decoded)
    except IntegrityError:
        logger.warning("payment_return_signature_invalid", client_ip=client_ip)
        query = urlencode({"status": "fail", "reason": "invalid_hash"})
        return RedirectResponse(f"{result_page}?{query}", status_code=303)
    except DecodeError as e:
        logger.warning("payment_return_undecodable", client_ip=client_ip, error=e.message)
        query = urlencode({"status": "fail", "reason": "processing_error"})
        return RedirectResponse(f"{result_page}?{query}", status_code=303)

    summary = PaymentResultResponse(
        status=notify.status,
        trade_number=notify.trade_number,
        trade_seq=notify.gateway_trade_seq,
        trade_amount=str(notify.amount) if notify.amount is not None else None,
        pay_time=notify.pay_time,
        message=notify.message,
    )
    token = services.result_tokens.issue(RESULT_TOKEN_PURPOSE, summary)
    logger.info("payment_return_received", trade_number=notify.trade_number, status=notify.status)
    return RedirectResponse(f"{result_page}?{urlencode({'token': token.value})}", status_code=303)


# ============================================================================
# Results
# ============================================================================


@router.get(
    "/api/order-result/{token}",
    response_model=PaymentResultResponse,
    dependencies=[Depends(rate_limit("result"))],
)
async def get_order_result(
    token: str,
    services: Services = Depends(get_services),
) -> PaymentResultResponse:
    """Read a payment return summary. Each token can be read once."""
    summary: PaymentResultResponse = services.result_tokens.consume(token, RESULT_TOKEN_PURPOSE)
    return summary


@router.get(
    "/api/orders/{trade_number}",
    response_model=OrderStatusResponse,
    dependencies=[Depends(rate_limit("result"))],
)
async def get_order_status(
    trade_number: str,
    services: Services = Depends(get_services),
) -> OrderStatusResponse:
    """Current state of an order, as driven by gateway notifications."""
    order = await services.order_store.get(trade_number)
    if order is None:
        raise UnknownOrderError(trade_number)
    return OrderStatusResponse(
        trade_number=order.trade_number,
        product_id=order.product_id,
        status=order.status.value,
        amount=order.amount,
        updated_at=order.updated_at.isoformat(),
    )


# ============================================================================
# Anti-forgery token / health
# ============================================================================


@router.get("/csrf-token", response_model=CsrfTokenResponse)
async def get_csrf_token(
    response: Response,
    services: Services = Depends(get_services),
) -> CsrfTokenResponse:
    """Issue a double-submit anti-forgery token (cookie + body)."""
    token = new_csrf_token()
    response.set_cookie(
        services.settings.csrf_cookie_name,
        token,
        httponly=True,
        samesite="strict",
        secure=services.settings.is_production,
    )
    return CsrfTokenResponse(csrf_token=token)


@gateway_router.get("/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)) -> HealthResponse:
    """Health check. Reports the database only when one is configured."""
    database = "not_configured"
    if services.settings.database_url:
        from storefront.db.session import get_session

        try:
            async with get_session() as session:
                await session.execute(text("SELECT 1"))
            database = "connected"
        except Exception as e:
            logger.error("health_check_database_failed", error=str(e))
            database = "disconnected"

    return HealthResponse(
        status="healthy" if database != "disconnected" else "unhealthy",
        database=database,
        gateway="sandbox" if services.settings.is_sandbox_gateway else "production",
        timestamp=datetime.now(UTC).isoformat(),
    )
