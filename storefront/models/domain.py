"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ProductType(str, Enum):
    """Product billing type."""

    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class ChargeMode(str, Enum):
    """When the first subscription charge happens."""

    IMMEDIATE = "immediate"
    DELAYED = "delayed"


class CheckoutKind(str, Enum):
    """Which checkout route initiated a payment request."""

    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class OrderStatus(str, Enum):
    """Order state machine: pending -> {completed, failed, expired}."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class SyncStatus(str, Enum):
    """Forwarding state of an order towards the persistence collaborator."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"


class ResultStatus(str, Enum):
    """Outcome reported by a gateway notification."""

    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRED = "expired"

    def to_order_status(self) -> OrderStatus:
        """Terminal order state for this outcome."""
        if self is ResultStatus.SUCCESS:
            return OrderStatus.COMPLETED
        if self is ResultStatus.EXPIRED:
            return OrderStatus.EXPIRED
        return OrderStatus.FAILED


@dataclass(frozen=True)
class PeriodConfig:
    """Recurring billing terms of a subscription product."""

    period_type: str
    period_date: str
    period_times: int
    charge_mode: ChargeMode
    first_charge_delay_days: int


@dataclass(frozen=True)
class Trial:
    """Free trial preceding the first subscription charge."""

    days: int
    amount: int
    description: str

    def __post_init__(self) -> None:
        """Validate trial terms."""
        if self.days <= 0:
            raise ValueError(f"Trial days must be positive: {self.days}")
        if self.amount < 0:
            raise ValueError(f"Trial amount cannot be negative: {self.amount}")


@dataclass(frozen=True)
class Product:
    """
    Immutable catalog product, loaded at process start.

    period_config is present iff the product is a subscription. The trial
    terms and the charge mode must agree: a trial means a delayed first
    charge of exactly trial.days, no trial means an immediate charge.
    """

    id: str
    type: ProductType
    name: str
    price: int
    period_config: PeriodConfig | None = None
    trial: Trial | None = None

    def __post_init__(self) -> None:
        """Validate product invariants."""
        if not self.id:
            raise ValueError("Product ID required")
        if self.price <= 0:
            raise ValueError(f"Price must be positive: {self.price}")

        is_subscription = self.type is ProductType.SUBSCRIPTION
        if is_subscription != (self.period_config is not None):
            raise ValueError(f"period_config must be present iff subscription: {self.id}")
        if self.trial is not None and not is_subscription:
            raise ValueError(f"Only subscriptions can carry a trial: {self.id}")

        if self.period_config is not None:
            config = self.period_config
            if self.trial is not None:
                if config.charge_mode is not ChargeMode.DELAYED:
                    raise ValueError(f"Trial requires delayed charge mode: {self.id}")
                if config.first_charge_delay_days != self.trial.days:
                    raise ValueError(f"First charge delay must equal trial days: {self.id}")
            else:
                if config.charge_mode is not ChargeMode.IMMEDIATE:
                    raise ValueError(f"No trial requires immediate charge mode: {self.id}")
                if config.first_charge_delay_days != 0:
                    raise ValueError(f"No trial requires zero first charge delay: {self.id}")

    @property
    def is_subscription(self) -> bool:
        return self.type is ProductType.SUBSCRIPTION


@dataclass(frozen=True)
class GatewayPeriodParams:
    """Gateway period-billing parameters derived from product terms."""

    period_type: str
    period_date: str
    period_times: int
    f_type: str  # "build" charges on enrollment, "job" defers the first charge
    first_charge_delay_days: int


@dataclass(frozen=True)
class EncodedTrade:
    """Ciphertext and signature produced by the trade codec."""

    encrypt_info: str
    hash_info: str


@dataclass(frozen=True)
class PaymentRequest:
    """
    Signed, ready-to-redirect payload for one checkout attempt.

    Owned by the request that created it; never persisted or reused.
    """

    product_id: str
    kind: CheckoutKind
    amount: int
    merchant_trade_number: str
    merchant_id: str
    version: str
    encrypted_payload: str
    signature: str
    gateway_endpoint: str
    period_params: GatewayPeriodParams | None = None

    def form_fields(self) -> dict[str, str]:
        """Fields of the auto-submitted form posted to the gateway."""
        return {
            "MerID": self.merchant_id,
            "Version": self.version,
            "EncryptInfo": self.encrypted_payload,
            "HashInfo": self.signature,
        }


@dataclass(frozen=True)
class OneTimeToken:
    """Opaque, single-use token with a short lifetime."""

    value: str
    purpose: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class WebhookEvent:
    """
    Verified gateway notification.

    Only constructed after the signature check passed, so every instance is
    authentic. Forged payloads never become a WebhookEvent.
    """

    trade_number: str
    result_status: ResultStatus
    amount: int | None
    gateway_trade_seq: str | None
    period_trade_number: str | None
    message: str | None
    fields: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    charge_sequence: int | None = None  # n of a recurring charge `<trade number>_<n>`

    @property
    def is_period(self) -> bool:
        return self.period_trade_number is not None

    @property
    def is_recurring_charge(self) -> bool:
        return self.charge_sequence is not None

    def fields_dict(self) -> dict[str, str]:
        """Decrypted fields for forwarding to the persistence collaborator."""
        return dict(self.fields)


@dataclass(frozen=True)
class OrderData:
    """Immutable order snapshot."""

    trade_number: str
    product_id: str
    product_name: str
    kind: CheckoutKind
    amount: int
    status: OrderStatus
    sync_status: SyncStatus
    created_at: datetime
    updated_at: datetime
    customer_email: str | None = None
    gateway_trade_seq: str | None = None
    period_trade_number: str | None = None
    sync_error: str | None = None


@dataclass(frozen=True)
class PeriodChargeData:
    """
    One recurring charge of a subscription order.

    Keyed by (trade_number, sequence); trade_number is the enrollment order.
    Recorded once in its terminal state and forwarded on its own sync track.
    """

    trade_number: str
    sequence: int
    status: OrderStatus
    sync_status: SyncStatus
    created_at: datetime
    updated_at: datetime
    amount: int | None = None
    gateway_trade_seq: str | None = None
    period_trade_number: str | None = None
    paid_at: str | None = None
    sync_error: str | None = None


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of an atomic pending -> terminal compare-and-set."""

    order: OrderData
    applied: bool  # True only for the single winner of the CAS


@dataclass(frozen=True)
class ChargeOutcome:
    """Result of an insert-if-absent of a recurring charge."""

    charge: PeriodChargeData
    applied: bool  # True only for the caller that inserted it


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of applying one verified notification."""

    trade_number: str
    status: OrderStatus
    applied: bool
    forwarded: bool
    sync_status: SyncStatus
    charge_sequence: int | None = None

    @property
    def needs_redelivery(self) -> bool:
        """The forward failed; the gateway should deliver this notification again."""
        return self.sync_status is SyncStatus.FAILED


@dataclass(frozen=True)
class TradeQueryResult:
    """Trade status as reported by the gateway query API."""

    trade_number: str
    gateway_trade_seq: str | None
    trade_status: int
    amount: int | None

    @property
    def is_paid(self) -> bool:
        return self.trade_status == 1
