"""
Human verification with Cloudflare Turnstile.

Validates the client-side challenge token server-side before a checkout is
allowed to reach the payment request builder.
"""

import httpx
from structlog import get_logger

from storefront.exceptions import VerificationFailedError, VerificationRequiredError

logger = get_logger(__name__)

MAX_TOKEN_LENGTH = 2000


class TurnstileVerifier:
    """Turnstile siteverify client."""

    def __init__(
        self,
        enabled: bool,
        secret_key: str,
        verify_url: str,
        timeout_seconds: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.enabled = enabled
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def verify(self, token: str | None, remote_ip: str | None = None) -> None:
        """
        Validate a challenge token.

        No-op when verification is disabled for the deployment.

        Raises:
            VerificationRequiredError: If enabled and the token is absent
            VerificationFailedError: If the provider rejects the token or is unreachable
        """
        if not self.enabled:
            return

        if not token:
            logger.warning("turnstile_token_missing", remote_ip=remote_ip)
            raise VerificationRequiredError()

        if len(token) > MAX_TOKEN_LENGTH:
            logger.warning("turnstile_token_oversized", length=len(token), remote_ip=remote_ip)
            raise VerificationFailedError("token too long")

        payload = {"secret": self.secret_key, "response": token}
        if remote_ip:
            payload["remoteip"] = remote_ip

        try:
            response = await self.http_client.post(
                self.verify_url, json=payload, timeout=self.timeout_seconds
            )
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            logger.error("turnstile_provider_error", error=str(e), error_type=type(e).__name__)
            raise VerificationFailedError("provider unavailable") from e
        except ValueError as e:
            logger.error("turnstile_provider_bad_response", error=str(e))
            raise VerificationFailedError("provider returned invalid response") from e

        if not result.get("success"):
            error_codes = tuple(result.get("error-codes", []))
            logger.warning(
                "turnstile_verification_failed",
                error_codes=list(error_codes),
                remote_ip=remote_ip,
            )
            raise VerificationFailedError("token rejected", error_codes)

        logger.info("turnstile_verification_succeeded")

    async def close(self) -> None:
        """Close the owned HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
