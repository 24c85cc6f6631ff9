"""
Ingestion Exceptions
====================

Custom exception types for the ingestion and aggregation pipeline.

WHY THIS FILE EXISTS
--------------------
Business conditions (unknown webhook topic, no data in a window, a replayed
delivery) are NOT exceptions: those code paths return empty results or
success. The types below cover infrastructure failures and lookups that the
HTTP layer translates into status codes.

RELATED FILES
-------------
- storepulse/services/rate_limiter.py: raises CounterStoreError from stores
- storepulse/services/integration_service.py: IntegrationNotFoundError
- storepulse/services/report_generator.py: OrganizationNotFoundError
- storepulse/services/platform_clients.py: PlatformApiError
- storepulse/security.py: CredentialError
"""

from typing import Optional


class StorePulseError(Exception):
    """
    Base exception for all pipeline errors.

    USAGE:
        try:
            service.connect(...)
        except StorePulseError as e:
            raise HTTPException(status_code=400, detail=e.to_user_message())
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_user_message(self) -> str:
        return self.message


class CounterStoreError(StorePulseError):
    """
    Rate-limit counter store unavailable (Redis down, connection reset...).

    RECOVERY:
        The limiter resolves this via its fail-open / fail-closed policy.
        It never reaches the caller of RateLimiter.check().
    """


class IntegrationNotFoundError(StorePulseError):
    """No integration (or no active integration) matched the lookup."""

    def __init__(self, message: str, integration_id: Optional[str] = None):
        super().__init__(message)
        self.integration_id = integration_id


class CredentialError(StorePulseError):
    """Stored credentials are missing or cannot be decrypted."""


class PlatformApiError(StorePulseError):
    """
    External platform API call failed during a historical sync.

    ATTRIBUTES:
        platform: shopify, stripe, ...
        status_code: HTTP status returned by the platform (None for transport errors)
    """

    def __init__(self, platform: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code

    def to_user_message(self) -> str:
        if self.status_code in (401, 403):
            return f"{self.display_name} rejected the stored credentials. Please reconnect the integration."
        return f"{self.display_name} API request failed: {self.message}"

    @property
    def display_name(self) -> str:
        return self.platform.replace("_", " ").title()


class OrganizationNotFoundError(StorePulseError):
    """Report or insight generation for an unknown organization."""
