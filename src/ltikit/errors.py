"""
Exception hierarchy for the LTI engine.

Every protocol failure raised by ltikit derives from ``LTIError`` so that
HTTP bindings can map the whole family with a single handler.
"""

from __future__ import annotations


class LTIError(Exception):
    """Base class for protocol failures."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(LTIError):
    """Raised when a request is missing fields or carries malformed values."""

    pass


class ReplayError(LTIError):
    """Raised when a nonce or login state has already been used."""

    pass


class TrustError(LTIError):
    """Raised when a signature, key or consumer cannot be trusted."""

    pass


class UpstreamError(LTIError):
    """Raised when the remote platform or tool rejects an outbound request."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | dict | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConfigurationError(LTIError):
    """Raised when the toolkit is missing a callback, key or setting."""

    pass


class RecordNotFoundError(LTIError):
    """Raised when a consumer or provider record does not exist."""

    pass
