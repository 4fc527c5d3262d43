"""Errors raised by the estimator core."""

from __future__ import annotations


class EstimatorError(Exception):
    """Base class for every error this package raises on purpose."""

    stage: str | None = None


class UpstreamError(EstimatorError):
    """The Gemini backend failed for a reason other than quota exhaustion."""

    def __init__(self, message: str, cause: BaseException | None = None, stage: str | None = None):
        super().__init__(message)
        self.cause = cause
        self.stage = stage


class UpstreamQuotaError(UpstreamError):
    """Quota or rate limit still exceeded after every retry was spent."""


class MalformedResponseError(EstimatorError):
    """The model's reply did not contain decodable JSON."""

    def __init__(self, agent: str, text: str):
        preview = text[:120].replace("\n", " ")
        super().__init__(f"{agent} returned malformed JSON: {preview!r}")
        self.agent = agent
        self.text = text
        self.stage = agent


class SchemaViolationError(EstimatorError):
    """Decoded JSON is missing required fields or has fields of the wrong type."""

    def __init__(self, agent: str, missing_fields: list[str], invalid_fields: list[str] | None = None):
        details = []
        if missing_fields:
            details.append(f"missing {', '.join(missing_fields)}")
        if invalid_fields:
            details.append(f"invalid {', '.join(invalid_fields)}")
        super().__init__(f"{agent} response violates schema: {'; '.join(details)}")
        self.agent = agent
        self.missing_fields = list(missing_fields)
        self.invalid_fields = list(invalid_fields or [])
        self.stage = agent


class PermissionDenied(EstimatorError):
    """Microphone access was refused or no input device exists."""


class StreamingSessionError(EstimatorError):
    """The live audio session failed to open or dropped unexpectedly."""
