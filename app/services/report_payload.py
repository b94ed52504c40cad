"""
Monthly report payload — the editable content of a report.

The payload is a concrete structure, not an open dictionary: unknown keys
are rejected and every field is type-checked here, at the draft service
boundary, so the PDF builder can trust what it receives.

JSON shape (stored in MonthlyReportFields.payload):
    {
        "activities": str,          # required for submit
        "results": str,             # required for submit
        "difficulties": str,
        "next_steps": str,
        "remarks": str,
        "hours": int | null,        # 0..744
        "deliverables": [str, ...]
    }
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field

from app.core.exceptions import ValidationError

MAX_HOURS = 744          # 31 days × 24h
MAX_TEXT_LENGTH = 20_000
MAX_DELIVERABLES = 50
MAX_DELIVERABLE_LENGTH = 500

TEXT_FIELDS = ("activities", "results", "difficulties", "next_steps", "remarks")
REQUIRED_FOR_SUBMIT = ("activities", "results")


@dataclass(frozen=True)
class ReportPayload:
    activities: str = ""
    results: str = ""
    difficulties: str = ""
    next_steps: str = ""
    remarks: str = ""
    hours: int | None = None
    deliverables: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ReportPayload":
        """Validate *data* and build a payload.

        ``None`` text values are treated as empty strings; missing keys take
        their defaults. Raises ValidationError with a field → message map.
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("payload must be a JSON object")

        errors: dict[str, str] = {}
        unknown = sorted(set(data) - set(cls.__dataclass_fields__))
        for key in unknown:
            errors[key] = "unknown field"

        values: dict = {}
        for name in TEXT_FIELDS:
            raw = data.get(name)
            if raw is None:
                values[name] = ""
            elif not isinstance(raw, str):
                errors[name] = "must be a string"
            elif len(raw) > MAX_TEXT_LENGTH:
                errors[name] = f"must be at most {MAX_TEXT_LENGTH} characters"
            else:
                values[name] = raw

        hours = data.get("hours")
        if hours is not None:
            # bool is an int subclass; reject it explicitly
            if isinstance(hours, bool) or not isinstance(hours, int):
                errors["hours"] = "must be an integer"
            elif not 0 <= hours <= MAX_HOURS:
                errors["hours"] = f"must be between 0 and {MAX_HOURS}"
        values["hours"] = hours

        deliverables = data.get("deliverables") or []
        if not isinstance(deliverables, list):
            errors["deliverables"] = "must be a list of strings"
        elif len(deliverables) > MAX_DELIVERABLES:
            errors["deliverables"] = f"at most {MAX_DELIVERABLES} items"
        elif any(not isinstance(d, str) for d in deliverables):
            errors["deliverables"] = "must be a list of strings"
        elif any(len(d) > MAX_DELIVERABLE_LENGTH for d in deliverables):
            errors["deliverables"] = f"items must be at most {MAX_DELIVERABLE_LENGTH} characters"
        else:
            values["deliverables"] = tuple(d for d in deliverables if d.strip())

        if errors:
            raise ValidationError("Invalid report payload", details=errors)
        return cls(**values)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["deliverables"] = list(self.deliverables)
        return data

    def missing_required(self) -> list[str]:
        """Names of submit-mandatory fields that are blank."""
        return [name for name in REQUIRED_FOR_SUBMIT if not getattr(self, name).strip()]


def load_stored_payload(stored: dict | None) -> ReportPayload:
    """Rebuild a payload from a stored row, tolerating legacy shapes.

    Stored payloads were validated on write; anything unexpected (older
    rows, manual edits) is dropped rather than failing a read.
    """
    if not stored:
        return ReportPayload()
    known = {k: v for k, v in stored.items() if k in ReportPayload.__dataclass_fields__}
    try:
        return ReportPayload.from_dict(known)
    except ValidationError:
        cleaned = {k: v for k, v in known.items() if isinstance(v, str) and k in TEXT_FIELDS}
        return ReportPayload.from_dict(cleaned)
