"""Error types raised by the analysis pipeline.

Request-level errors carry the external `code` and HTTP status used by the
service when it converts them into the failure envelope.
"""

from __future__ import annotations


class AnalysisError(Exception):
    code = "ANALYSIS_FAILED"
    status_code = 500
    public_message = "Analysis failed"


class InputMissingError(AnalysisError):
    code = "NO_IMAGE"
    status_code = 400
    public_message = "No image uploaded"


class InvalidImageError(InputMissingError):
    code = "INVALID_IMAGE"
    public_message = "Invalid image"


class ClassifierCallError(AnalysisError):
    """Outbound classifier call failed (network, auth, quota, missing key)."""

    code = "CLASSIFIER_CALL_FAILED"
    status_code = 502


class ResponseFormatError(AnalysisError):
    """Classifier replied, but the text did not reduce to a JSON object."""

    code = "RESPONSE_FORMAT_INVALID"
    status_code = 502


class ClientDisconnectedError(AnalysisError):
    code = "CLIENT_DISCONNECTED"
    status_code = 499
    public_message = "Request cancelled"


class AdvisoryConfigError(ValueError):
    """Advisory table is missing a label entry or is malformed."""
