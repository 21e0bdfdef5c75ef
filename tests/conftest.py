"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Gateway credentials and a real trade codec
- In-memory order ledger
- Fake upstreams (Turnstile, persistence collaborator, gateway query API)
  behind httpx.MockTransport
- API test client with an injected service container
"""

import json
import os
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

# Set required environment variables BEFORE importing storefront modules
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("PAYUNI_API_URL", "https://sandbox-api.payuni.com.tw")
os.environ.setdefault("PAYUNI_MERCHANT_ID", "S01421169")
os.environ.setdefault("PAYUNI_HASH_KEY", "12345678901234567890123456789012")
os.environ.setdefault("PAYUNI_HASH_IV", "1234567890123456")
os.environ.setdefault("PAYUNI_RETURN_URL", "https://shop.example.com/payment-return")
os.environ.setdefault("NOTIFY_URL", "https://shop.example.com/payuni-webhook")
os.environ.setdefault("GAS_WEBHOOK_URL", "https://script.example.com/macros/s/test/exec")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from storefront.api.dependencies import Services, build_services
from storefront.config import Settings, settings
from storefront.main import create_app
from storefront.services.catalog import ProductCatalog
from storefront.services.order_store import InMemoryOrderStore
from storefront.services.order_sync import OrderSyncClient
from storefront.services.payment_builder import PaymentRequestBuilder
from storefront.services.trade_codec import PayuniTradeCodec
from storefront.services.turnstile import TurnstileVerifier

TURNSTILE_URL = settings.turnstile_verify_url

# ============================================================================
# Fake upstreams
# ============================================================================


class FakeUpstream:
    """
    Records outbound HTTP calls and answers them like the real services.

    - Turnstile siteverify: success unless `turnstile_success` is False
    - Persistence collaborator: success unless `collaborator_failures` > 0
    - Gateway trade query: answers with `query_response` (JSON body)
    """

    def __init__(self) -> None:
        self.turnstile_success = True
        self.turnstile_calls: list[dict[str, Any]] = []
        self.collaborator_failures = 0
        self.collaborator_calls: list[tuple[str, dict[str, Any]]] = []
        self.query_response: dict[str, Any] = {"Status": "ERROR", "Message": "not configured"}
        self.query_calls: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.startswith(TURNSTILE_URL):
            self.turnstile_calls.append(json.loads(request.content))
            if self.turnstile_success:
                return httpx.Response(200, json={"success": True})
            return httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})

        if url.startswith(settings.gas_webhook_url):
            action = request.url.params.get("action", "")
            self.collaborator_calls.append((action, json.loads(request.content)))
            if self.collaborator_failures > 0:
                self.collaborator_failures -= 1
                return httpx.Response(500, json={"success": False, "error": "sheet locked"})
            return httpx.Response(200, json={"success": True})

        if url.endswith("/api/trade/query"):
            self.query_calls.append(json.loads(request.content))
            return httpx.Response(200, json=self.query_response)

        return httpx.Response(404)

    def actions(self, action: str) -> list[dict[str, Any]]:
        """Payloads forwarded to the collaborator for one action."""
        return [payload for name, payload in self.collaborator_calls if name == action]


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def http_client(upstream: FakeUpstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


# ============================================================================
# Core components
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    return settings


@pytest.fixture
def codec(test_settings: Settings) -> PayuniTradeCodec:
    return PayuniTradeCodec(test_settings.payuni_hash_key, test_settings.payuni_hash_iv)


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def sync_client(test_settings: Settings, http_client: httpx.AsyncClient) -> OrderSyncClient:
    return OrderSyncClient(
        webhook_url=test_settings.gas_webhook_url,
        merchant_id=test_settings.payuni_merchant_id,
        timeout_seconds=1.0,
        http_client=http_client,
    )


@pytest.fixture
def disabled_verifier() -> TurnstileVerifier:
    return TurnstileVerifier(enabled=False, secret_key="", verify_url=TURNSTILE_URL)


@pytest.fixture
def builder(
    test_settings: Settings,
    codec: PayuniTradeCodec,
    order_store: InMemoryOrderStore,
    disabled_verifier: TurnstileVerifier,
    sync_client: OrderSyncClient,
) -> PaymentRequestBuilder:
    return PaymentRequestBuilder(
        settings=test_settings,
        codec=codec,
        catalog=ProductCatalog(),
        order_store=order_store,
        verifier=disabled_verifier,
        sync_client=sync_client,
        clock=lambda: 1767225600.0,  # 2026-01-01T00:00:00Z
    )


@pytest.fixture
def sign_notification(codec: PayuniTradeCodec) -> Callable[..., dict[str, str]]:
    """Build a signed gateway notification form from keyword fields."""

    def _sign(**fields: str) -> dict[str, str]:
        encoded = codec.encode(list(fields.items()))
        return {
            "MerID": settings.payuni_merchant_id,
            "Version": settings.payuni_version,
            "EncryptInfo": encoded.encrypt_info,
            "HashInfo": encoded.hash_info,
        }

    return _sign


# ============================================================================
# API client
# ============================================================================


@pytest.fixture
def services(
    test_settings: Settings,
    order_store: InMemoryOrderStore,
    http_client: httpx.AsyncClient,
) -> Services:
    return build_services(test_settings, order_store=order_store, http_client=http_client)


@pytest.fixture
def client(test_settings: Settings, services: Services) -> TestClient:
    """Test client with an injected service container (no lifespan wiring)."""
    return TestClient(create_app(test_settings, services))


@pytest.fixture
def csrf_client(client: TestClient, test_settings: Settings) -> TestClient:
    """Test client that already holds an anti-forgery token."""
    token = client.get("/csrf-token").json()["csrfToken"]
    client.headers[test_settings.csrf_header_name] = token
    return client
