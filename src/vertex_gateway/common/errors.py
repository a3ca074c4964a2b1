"""Error taxonomy shared by every gateway component.

Each error knows the HTTP status it is surfaced with, so the front only has
to serialize it into ``{"error": ..., "details": ...}``.
"""
from __future__ import annotations
import json
from typing import Any


class GatewayError(Exception):
    """Base class for failures that are reported to the caller."""

    status_code: int = 500

    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self._details = details

    @property
    def details(self) -> str:
        if self._details is not None:
            return self._details
        return f"{type(self).__name__}: {self.message}"

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message, "details": self.details}


class ConfigError(GatewayError):
    """Deployment configuration is missing or unusable (e.g. no project id)."""


class CredentialError(ConfigError):
    """Service credential is absent, malformed, or could not be exchanged."""


class ValidationError(GatewayError):
    """The request envelope or its operation-specific fields are invalid."""

    status_code = 400


class UnknownEndpointError(ValidationError):
    status_code = 500

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Unknown endpoint: {endpoint}")
        self.endpoint = endpoint


class UpstreamError(GatewayError):
    """Non-2xx (or unreachable) response from the provider.

    ``status`` is ``None`` when no HTTP response was received at all.
    """

    def __init__(self, status: int | None, body: str, message: str | None = None) -> None:
        if message is None:
            message = (
                f"Vertex AI API error: {status}"
                if status is not None
                else "Vertex AI API request failed"
            )
        super().__init__(message, details=body)
        self.status = status
        self.body = body

    @classmethod
    def from_response(cls, response: Any) -> "UpstreamError":
        """Build from an HTTP response, quoting the provider's error message."""
        body = response.text
        reason = None
        try:
            data = json.loads(body)
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                reason = data["error"].get("message")
        except ValueError:
            pass
        message = f"Vertex AI API error: {response.status_code}"
        if reason:
            message = f"{message} - {reason}"
        return cls(response.status_code, body, message=message)


class ExtractionError(GatewayError):
    """Provider answered 2xx but the payload holds nothing usable."""


class GatewayTimeoutError(GatewayError):
    """The request deadline expired before a terminal outcome was reached."""

    status_code = 504
