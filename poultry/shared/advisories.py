"""Static advisory table: loading, validation, lookup and rendering.

The advisory content lives in `advisories.yaml` next to this module. It is
loaded once, validated against the label set, and frozen. Rendering is a pure
function of a record; nothing here touches the network.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from poultry.shared.analysis_contract import (
    NON_SUBJECT_LABELS,
    SUBJECT_LABELS,
    ClassificationResult,
    Recommendation,
)
from poultry.shared.errors import AdvisoryConfigError


DEFAULT_TABLE_PATH = Path(__file__).with_name("advisories.yaml")

SECTION_ORDER: Tuple[Tuple[str, str], ...] = (
    ("overview", "OVERVIEW:"),
    ("treatment", "TREATMENT OPTIONS:"),
    ("management", "COOP MANAGEMENT:"),
    ("prevention", "PREVENTION:"),
    ("critical", "WHY THIS IS CRITICAL:"),
    ("vet", "VET VISIT RECOMMENDED:"),
)
SECTION_HEADINGS: Dict[str, str] = dict(SECTION_ORDER)

BULLET = "• "
CLOSING_SENTENCE = "For a confirmed diagnosis and treatment plan, consult a poultry veterinarian."


@dataclass(frozen=True)
class AdvisorySection:
    key: str
    heading: str
    items: Tuple[str, ...]


@dataclass(frozen=True)
class AdvisoryRecord:
    diagnosis: str
    description: Optional[str]
    recommendation: Union[str, Tuple[AdvisorySection, ...]]


@dataclass(frozen=True)
class AdvisoryTable:
    records: Mapping[str, AdvisoryRecord]
    fallback: AdvisoryRecord

    def lookup(self, label: str) -> AdvisoryRecord:
        return self.records.get(label, self.fallback)


@dataclass(frozen=True)
class RenderedAdvisory:
    diagnosis: str
    description: Optional[str]
    recommendation: Recommendation


def load_yaml(path: Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise AdvisoryConfigError("Advisory YAML must be a mapping (key: value).")
    return data


def _parse_section(key: str, raw: Any, where: str) -> Optional[AdvisorySection]:
    if key not in SECTION_HEADINGS:
        raise AdvisoryConfigError(f"{where}: unknown section '{key}'")

    heading = SECTION_HEADINGS[key]
    items_raw = raw
    if isinstance(raw, dict):
        heading = str(raw.get("heading") or heading).strip()
        items_raw = raw.get("items", [])
    if not isinstance(items_raw, list):
        raise AdvisoryConfigError(f"{where}: section '{key}' must be a list of strings")

    items = tuple(str(x).strip() for x in items_raw if str(x).strip())
    if not items:
        return None
    return AdvisorySection(key=key, heading=heading, items=items)


def _parse_record(raw: Any, where: str) -> AdvisoryRecord:
    if not isinstance(raw, dict):
        raise AdvisoryConfigError(f"{where}: record must be a mapping")

    diagnosis = str(raw.get("diagnosis") or "").strip()
    if not diagnosis:
        raise AdvisoryConfigError(f"{where}: diagnosis is required")

    description = str(raw.get("description") or "").strip() or None

    rec_raw = raw.get("recommendation")
    recommendation: Union[str, Tuple[AdvisorySection, ...]]
    if isinstance(rec_raw, str):
        recommendation = " ".join(rec_raw.split())
    elif isinstance(rec_raw, dict):
        parsed = {key: _parse_section(str(key), value, where) for key, value in rec_raw.items()}
        # Fixed order regardless of how the YAML lists the sections.
        recommendation = tuple(
            parsed[key] for key, _ in SECTION_ORDER if parsed.get(key) is not None
        )
    else:
        raise AdvisoryConfigError(f"{where}: recommendation must be a string or a mapping of sections")

    if not recommendation:
        raise AdvisoryConfigError(f"{where}: recommendation is empty")

    return AdvisoryRecord(diagnosis=diagnosis, description=description, recommendation=recommendation)


def parse_advisory_table(data: Dict[str, Any]) -> AdvisoryTable:
    """Build a frozen table and check it covers every label.

    Subject labels need their own record; non-subject labels are served by the
    mandatory `fallback` record. Entries for labels outside the known set are
    rejected so a typo cannot silently shadow a real label.
    """

    advisories_raw = data.get("advisories")
    if not isinstance(advisories_raw, dict):
        raise AdvisoryConfigError("'advisories' must be a mapping of label -> record")

    records: Dict[str, AdvisoryRecord] = {}
    for label, raw in advisories_raw.items():
        label = str(label).strip()
        if label not in SUBJECT_LABELS | NON_SUBJECT_LABELS:
            raise AdvisoryConfigError(f"Unknown advisory label '{label}'")
        records[label] = _parse_record(raw, f"advisories.{label}")

    missing = sorted(SUBJECT_LABELS - set(records))
    if missing:
        raise AdvisoryConfigError(f"Missing advisory records for: {', '.join(missing)}")

    if "fallback" not in data:
        raise AdvisoryConfigError("A 'fallback' advisory record is required")
    fallback = _parse_record(data["fallback"], "fallback")

    return AdvisoryTable(records=MappingProxyType(records), fallback=fallback)


def load_advisory_table(path: Optional[Path] = None) -> AdvisoryTable:
    return parse_advisory_table(load_yaml(path or DEFAULT_TABLE_PATH))


@lru_cache(maxsize=1)
def get_advisory_table() -> AdvisoryTable:
    """Process-wide table, honouring `ADVISORY_TABLE_PATH` when set."""

    override = os.getenv("ADVISORY_TABLE_PATH", "").strip()
    return load_advisory_table(Path(override) if override else None)


def ensure_closing_sentence(text: str) -> str:
    """Append the veterinarian follow-up sentence unless already present."""

    body = str(text or "").rstrip()
    if body.endswith(CLOSING_SENTENCE):
        return body
    if not body:
        return CLOSING_SENTENCE
    return f"{body} {CLOSING_SENTENCE}"


def render_sections(sections: Tuple[AdvisorySection, ...]) -> List[str]:
    lines: List[str] = []
    for section in sections:
        if lines:
            lines.append("")
        lines.append(section.heading)
        lines.extend(f"{BULLET}{item}" for item in section.items)
    return lines


def render_recommendation(record: AdvisoryRecord) -> Recommendation:
    if isinstance(record.recommendation, str):
        return ensure_closing_sentence(record.recommendation)
    return render_sections(record.recommendation)


def advise(table: AdvisoryTable, result: ClassificationResult) -> RenderedAdvisory:
    record = table.lookup(result["label"])
    return RenderedAdvisory(
        diagnosis=record.diagnosis,
        description=record.description,
        recommendation=render_recommendation(record),
    )
