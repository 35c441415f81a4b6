"""
Error taxonomy shared by every handler.

Messages carried by these exceptions are shown to end users as-is, so they are
always fixed, human-readable sentences. Raw provider bodies go to the log only.
"""
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class AdStudioError(Exception):
    """Base class; ``status_code`` is the HTTP status returned to the caller."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationError(AdStudioError):
    status_code = 400


class ConfigurationError(AdStudioError):
    pass


class UpstreamError(AdStudioError):
    pass


class UpstreamRateLimited(UpstreamError):
    status_code = 429


class UpstreamAuthOrQuota(UpstreamError):
    status_code = 402


class UpstreamFormatError(UpstreamError):
    pass


class UpstreamIncompleteError(UpstreamError):
    pass


class UpstreamEmptyResultError(UpstreamError):
    pass


class UpstreamGenericError(UpstreamError):
    pass


class UpstreamTranscriptionError(UpstreamError):
    pass


def provider_error(provider_name: str, response: httpx.Response) -> UpstreamError:
    """Map a non-2xx provider response onto the taxonomy, logging the raw body."""
    status = response.status_code
    logger.error("%s returned %s: %s", provider_name, status, response.text)

    if status == 429:
        return UpstreamRateLimited(
            f"{provider_name} rate limit exceeded. Please wait a moment and try again."
        )
    if status == 402:
        return UpstreamAuthOrQuota(
            f"{provider_name} credits are exhausted. Top up the account before trying again.",
            status_code=402,
        )
    if status in (401, 403):
        return UpstreamAuthOrQuota(
            f"The {provider_name} API key is invalid or lacks permission for this model. "
            "An operator must fix the configuration.",
            status_code=status,
        )
    return UpstreamGenericError(f"{provider_name} request failed. Please try again.")


def raise_for_provider_status(provider_name: str, response: httpx.Response) -> None:
    if not response.is_success:
        raise provider_error(provider_name, response)
