"""Analyze service contract helpers.

This module documents the JSON shapes exchanged with the frontend and the
classifier, and turns the classifier's untrusted reply into a validated
`ClassificationResult`. It is stdlib-only so it can be imported anywhere.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Literal, Optional, TypedDict, Union, get_args


HealthLabel = Literal["healthy", "coccidiosis", "newcastle", "not_feces", "unknown"]
Confidence = Literal["high", "medium", "low"]

SUBJECT_LABELS: FrozenSet[str] = frozenset({"healthy", "coccidiosis", "newcastle"})
NON_SUBJECT_LABELS: FrozenSet[str] = frozenset({"not_feces", "unknown"})
CONFIDENCE_LEVELS: FrozenSet[str] = frozenset(get_args(Confidence))

# Every label must be placed on exactly one side of the subject partition.
if set(get_args(HealthLabel)) != SUBJECT_LABELS | NON_SUBJECT_LABELS or (
    SUBJECT_LABELS & NON_SUBJECT_LABELS
):
    raise RuntimeError("HealthLabel values and the subject/non-subject partition disagree")

# Spellings the classifier has been seen to use for the non-subject case.
NOT_FECES_ALIASES: FrozenSet[str] = frozenset({"not_feces", "not-feces", "not feces", "notfeces"})

Recommendation = Union[str, List[str]]


class ClassificationResult(TypedDict):
    isSubject: bool
    label: HealthLabel
    confidence: Confidence
    description: str


class PayloadMeta(TypedDict, total=False):
    request_id: str
    provider: str
    model: str
    latency_ms: int


class OutwardPayload(TypedDict, total=False):
    isSubject: bool
    label: HealthLabel
    confidence: Confidence
    description: str
    diagnosis: str
    recommendation: Recommendation
    meta: PayloadMeta


class ErrorPayload(TypedDict, total=False):
    error: str
    code: str
    details: str
    tips: List[str]
    request_id: str


RETRY_TIPS: List[str] = [
    "Take the photo in good natural light, without flash glare.",
    "Place the sample against a plain, contrasting background.",
    "Use a fresh sample (less than a few hours old).",
    "Fill most of the frame with the droppings and keep the camera steady.",
    "If unsure, submit several photos of different droppings from the flock.",
]


def is_subject_label(label: str) -> bool:
    return label in SUBJECT_LABELS


def _normalize_label(raw: Dict[str, Any]) -> HealthLabel:
    value = raw.get("healthStatus")
    if value is None:
        value = raw.get("label")
    status = str(value or "").strip().lower()

    if status in SUBJECT_LABELS:
        return status  # type: ignore[return-value]
    if status in NOT_FECES_ALIASES:
        return "not_feces"
    # Unknown status: the classifier's own flag only decides between the two
    # non-subject labels, it can never promote the result to a subject label.
    if raw.get("isFeces") is False:
        return "not_feces"
    return "unknown"


def _normalize_confidence(value: Any) -> Confidence:
    conf = str(value or "").strip().lower()
    if conf in CONFIDENCE_LEVELS:
        return conf  # type: ignore[return-value]
    return "low"


def normalize_classification(raw: Dict[str, Any]) -> ClassificationResult:
    """Validate the parsed classifier reply and apply defaults.

    `isSubject` is always recomputed from the label; the classifier's
    `isFeces` flag is not trusted.
    """

    label = _normalize_label(raw)
    description = raw.get("description")
    return {
        "isSubject": is_subject_label(label),
        "label": label,
        "confidence": _normalize_confidence(raw.get("confidence")),
        "description": description.strip() if isinstance(description, str) else "",
    }


def assemble_payload(
    result: ClassificationResult,
    *,
    diagnosis: str,
    recommendation: Recommendation,
    advisory_description: Optional[str] = None,
    meta: Optional[PayloadMeta] = None,
) -> OutwardPayload:
    label = result["label"]
    payload: OutwardPayload = {
        "isSubject": is_subject_label(label),
        "label": label,
        "confidence": result["confidence"],
        "description": advisory_description or result["description"],
        "diagnosis": diagnosis,
        "recommendation": recommendation,
    }
    if meta is not None:
        payload["meta"] = meta
    return payload


def error_payload(error: str, code: str, details: str, request_id: str) -> ErrorPayload:
    return {
        "error": error,
        "code": code,
        "details": details,
        "tips": list(RETRY_TIPS),
        "request_id": request_id,
    }
