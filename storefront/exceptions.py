"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error carries the HTTP status it maps to and a public message that is
safe to show to untrusted callers. The detailed message (str(exc)) stays in
server logs and development responses.
"""


class StorefrontError(Exception):
    """Base exception for all storefront payment errors."""

    status_code: int = 500
    public_message: str = "Payment processing failed, please try again later"


class NotFoundError(StorefrontError):
    """Raised when a product ID does not resolve to a catalog product."""

    status_code = 404
    public_message = "Product not found"

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class ProductTypeMismatchError(StorefrontError):
    """Raised when a checkout route is used with the wrong product type."""

    status_code = 400
    public_message = "This product cannot be purchased this way"

    def __init__(self, product_id: str, expected: str) -> None:
        self.product_id = product_id
        self.expected = expected
        super().__init__(f"Product {product_id} is not a {expected} product")


class VerificationFailedError(StorefrontError):
    """Raised when the human-verification provider rejects a token."""

    status_code = 400
    public_message = "Security verification failed, please try again"

    def __init__(self, reason: str, error_codes: tuple[str, ...] = ()) -> None:
        self.reason = reason
        self.error_codes = error_codes
        super().__init__(f"Human verification failed: {reason}")


class VerificationRequiredError(VerificationFailedError):
    """Raised when human verification is enabled but no token was supplied."""

    public_message = "Security verification is required"

    def __init__(self) -> None:
        super().__init__("token missing")


class RateLimitedError(StorefrontError):
    """Raised when a caller exceeds the request budget of a route class."""

    status_code = 429

    def __init__(self, route_class: str, message: str, retry_after_seconds: int) -> None:
        self.route_class = route_class
        self.public_message = message
        self.retry_after_seconds = retry_after_seconds
        super().__init__(f"Rate limit exceeded for {route_class}")


class ConfigError(StorefrontError):
    """Raised when product billing terms cannot be translated."""

    public_message = "Product is misconfigured"

    def __init__(self, product_id: str, message: str) -> None:
        self.product_id = product_id
        self.message = message
        super().__init__(f"Invalid billing terms for {product_id}: {message}")


class IntegrityError(StorefrontError):
    """Raised when a gateway payload's signature does not match."""

    status_code = 400
    public_message = "Invalid request"

    def __init__(self, message: str = "signature mismatch") -> None:
        self.message = message
        super().__init__(f"Integrity check failed: {message}")


class DecodeError(StorefrontError):
    """Raised when a correctly signed payload is not well-formed."""

    status_code = 400
    public_message = "Invalid request"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payload decode failed: {message}")


class UnknownOrderError(StorefrontError):
    """Raised when a notification references no known trade number."""

    status_code = 404
    public_message = "Order not found"

    def __init__(self, trade_number: str) -> None:
        self.trade_number = trade_number
        super().__init__(f"Unknown order: {trade_number}")


class AmountMismatchError(StorefrontError):
    """Raised when a notified amount differs from the order amount."""

    status_code = 400
    public_message = "Invalid request"

    def __init__(self, trade_number: str, expected: int, actual: int | None) -> None:
        self.trade_number = trade_number
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Amount mismatch for {trade_number}: expected {expected}, got {actual}"
        )


class GatewayQueryError(StorefrontError):
    """Raised when the gateway trade-query API cannot confirm a trade."""

    status_code = 502

    def __init__(self, trade_number: str, message: str) -> None:
        self.trade_number = trade_number
        self.message = message
        super().__init__(f"Trade query failed for {trade_number}: {message}")


class PersistenceError(StorefrontError):
    """Raised when the persistence collaborator rejects or misses a write."""

    status_code = 502

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        self.message = message
        super().__init__(f"Persistence collaborator {action} failed: {message}")


class OneTimeTokenError(StorefrontError):
    """Base class for one-time token failures."""

    status_code = 410
    public_message = "This link is invalid or has expired"


class TokenNotFoundError(OneTimeTokenError):
    """Raised when a token was never issued for the given purpose."""

    status_code = 404

    def __init__(self, purpose: str) -> None:
        self.purpose = purpose
        super().__init__(f"Unknown token for purpose {purpose}")


class TokenExpiredError(OneTimeTokenError):
    """Raised when a token is presented after its expiry."""

    def __init__(self, purpose: str) -> None:
        self.purpose = purpose
        super().__init__(f"Token for purpose {purpose} has expired")


class TokenConsumedError(OneTimeTokenError):
    """Raised when a token is presented a second time."""

    def __init__(self, purpose: str) -> None:
        self.purpose = purpose
        super().__init__(f"Token for purpose {purpose} was already used")
