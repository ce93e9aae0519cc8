from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from jsonschema import Draft202012Validator

from ..models.record import NormalizedRecord, ScalarValue, TransferMetadata, isoformat_utc
from ..models.results import NormalizationResult
from ..models.sheet_data import CellValue, RawRow, SheetHeader
from .header_registry import build_ordered_headers, key_collisions

"""Row normalizer: sheet rows -> NormalizedRecord.

Per row:
1. Resolve the identity (serial, falling back to the legacy device id) through
   header aliases: exact header match first, then case-insensitive.
2. Resolve business fields the same way, defaulting status/condition to
   "Unknown" and the owner to "Unassigned".
3. Collect every non-reserved column into dynamic_attributes (capped).
4. Validate the document shape with RECORD_SCHEMA.
5. Compute the content hash.

Row-level problems become anomaly strings ("row N: ...") and the row is
skipped; nothing here raises for bad data.
"""

__all__ = [
    "HEADER_ALIASES",
    "TRANSFER_METADATA_ALIASES",
    "MAX_DYNAMIC_COLUMNS",
    "RECORD_SCHEMA",
    "canonicalize_header",
    "coerce_cell",
    "coerce_date",
    "coerce_string",
    "compute_content_hash",
    "normalize_rows",
]

HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "serial": ("serial", "serial number", "serial_no", "serialno"),
    "legacy_identity": ("deviceid", "device_id", "device id"),
    "sheet_origin": ("sheetid", "sheet_id", "sheet id"),
    "assigned_to": ("assignedto", "assigned_to", "assigned to"),
    "status": ("status",),
    "condition": ("condition",),
    "offboarding_status": ("offboardingstatus", "offboarding_status", "offboarding status"),
    "last_seen": ("lastseen", "last_seen", "last seen"),
    "last_transfer_notes": ("lasttransfernotes", "last_transfer_notes", "last transfer notes"),
}

TRANSFER_METADATA_ALIASES: dict[str, tuple[str, ...]] = {
    "last_actor": ("offboardingactor", "offboarding_actor", "offboarding actor", "transfer actor"),
    "last_action": ("offboardingaction", "offboarding_action", "offboarding action", "transfer action"),
    "last_transfer_at": (
        "offboardingtimestamp",
        "offboarding_timestamp",
        "offboarding timestamp",
        "transfer timestamp",
    ),
}

MAX_DYNAMIC_COLUMNS = 100

_CANONICAL_RE = re.compile(r"[^a-z0-9]")
_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_LEADING_ZERO_RE = re.compile(r"^[+-]?0\d")
_ISO_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
)


def canonicalize_header(value: str) -> str:
    return _CANONICAL_RE.sub("", value.lower())


RESERVED_DYNAMIC_KEYS = frozenset(
    canonicalize_header(alias)
    for alias in (
        *(a for aliases in HEADER_ALIASES.values() for a in aliases),
        *(a for aliases in TRANSFER_METADATA_ALIASES.values() for a in aliases),
        "legacydeviceid",
        "lastsyncedat",
    )
)

_nullable_string = {"type": ["string", "null"]}
_nullable_timestamp = {"type": ["string", "null"], "format": "date-time"}

RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["identity", "sheetOrigin", "assignedTo", "status", "condition"],
    "properties": {
        "identity": {"type": "string", "minLength": 1, "pattern": r"\S"},
        "legacyIdentity": _nullable_string,
        "sheetOrigin": {"type": "string", "minLength": 1, "pattern": r"\S"},
        "assignedTo": {"type": "string", "minLength": 1},
        "status": {"type": "string", "minLength": 1},
        "condition": {"type": "string", "minLength": 1},
        "offboardingStatus": _nullable_string,
        "offboardingMetadata": {
            "type": ["object", "null"],
            "additionalProperties": False,
            "properties": {
                "lastActor": _nullable_string,
                "lastAction": _nullable_string,
                "lastTransferAt": _nullable_timestamp,
            },
        },
        "lastSeen": _nullable_timestamp,
        "lastTransferNotes": _nullable_string,
        "dynamicAttributes": {
            "type": ["object", "null"],
            "additionalProperties": {"type": ["string", "number", "boolean", "null"]},
        },
        "schemaVersion": _nullable_string,
    },
}

_RECORD_VALIDATOR = Draft202012Validator(RECORD_SCHEMA)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _number_from_text(text: str) -> int | float | None:
    if not _NUMERIC_RE.match(text) or _LEADING_ZERO_RE.match(text):
        return None
    if _INTEGER_RE.match(text):
        return int(text)
    number = float(text)
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _parse_iso(text: str) -> datetime | None:
    if not _ISO_DATE_RE.match(text):
        return None
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def coerce_cell(value: CellValue) -> CellValue:
    """Numeric-looking text -> number, ISO-8601-looking text -> datetime, else unchanged."""
    if isinstance(value, str):
        text = value.strip()
        number = _number_from_text(text)
        if number is not None:
            return number
        parsed = _parse_iso(text)
        if parsed is not None:
            return parsed
        return text
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            return int(value)
    return value


def coerce_string(value: CellValue | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return None
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, datetime):
        return isoformat_utc(_as_utc(value))
    return str(value)


def coerce_date(value: CellValue | None) -> datetime | None:
    """Best-effort timestamp; anything unparseable is treated as absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        try:
            # 数値は epoch ミリ秒扱い
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def _normalize_dynamic_value(value: CellValue) -> ScalarValue:
    coerced = coerce_cell(value)
    if coerced is None or isinstance(coerced, (bool, int, float)):
        return coerced
    if isinstance(coerced, datetime):
        return isoformat_utc(_as_utc(coerced))
    text = str(coerced).strip()
    return text or None


def _title_case(value: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in value.lower().split())


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def _lower(value: str | None) -> str | None:
    return value.strip().lower() if value is not None else None


def _hash_scalar(value: ScalarValue) -> ScalarValue:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def compute_content_hash(record: NormalizedRecord) -> str:
    """sha256 over a lower-cased, null-coalesced projection with a fixed key order.

    ``last_synced_at`` and the hash itself are excluded, so re-running the same
    sheet content always yields the same digest.
    """
    meta = record.offboarding_metadata
    projection = {
        "serial": _lower(record.identity),
        "legacyDeviceId": _lower(record.legacy_identity),
        "assignedTo": _lower(record.assigned_to),
        "status": _lower(record.status),
        "condition": _lower(record.condition),
        "offboardingStatus": _lower(record.offboarding_status),
        "lastTransferNotes": _lower(record.last_transfer_notes),
        "lastSeen": isoformat_utc(record.last_seen),
        "sheetId": _lower(record.sheet_origin),
        "offboardingMetadata": (
            {
                "lastActor": _lower(meta.last_actor),
                "lastAction": _lower(meta.last_action),
                "lastTransferAt": isoformat_utc(meta.last_transfer_at),
            }
            if meta is not None
            else None
        ),
        "dynamicAttributes": (
            {key: _hash_scalar(record.dynamic_attributes[key]) for key in sorted(record.dynamic_attributes)}
            if record.dynamic_attributes
            else None
        ),
        "columnDefinitionsVersion": record.schema_version,
    }
    payload = json.dumps(projection, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _extract(row: RawRow, lowered: dict[str, CellValue], aliases: Sequence[str]) -> CellValue | None:
    for alias in aliases:
        if alias in row:
            return row[alias]
    for alias in aliases:
        if alias in lowered:
            return lowered[alias]
    return None


def _validation_errors(document: dict[str, Any]) -> list[str]:
    messages = []
    for error in sorted(_RECORD_VALIDATOR.iter_errors(document), key=lambda e: list(e.path)):
        where = ".".join(str(p) for p in error.path) or "record"
        messages.append(f"{where}: {error.message}")
    return messages


def normalize_rows(
    rows: Sequence[RawRow],
    sheet_origin: str,
    schema_version: str | None = None,
    *,
    headers: Sequence[SheetHeader] | None = None,
    now: datetime | None = None,
    max_dynamic_columns: int = MAX_DYNAMIC_COLUMNS,
) -> NormalizationResult:
    anomalies: list[str] = []
    records: list[NormalizedRecord] = []
    synced_at = now or datetime.now(UTC)
    header_lookup = {h.name: h for h in headers or ()}
    header_lookup_lower = {h.name.lower(): h for h in headers or ()}

    for index, row in enumerate(rows):
        row_id = f"row {index + 1}"
        lowered = {str(k).lower(): v for k, v in row.items()}

        def pick(name: str) -> CellValue | None:
            return _extract(row, lowered, HEADER_ALIASES[name])

        legacy_identity = coerce_string(pick("legacy_identity"))
        explicit_identity = coerce_string(pick("serial")) or legacy_identity
        if not explicit_identity:
            anomalies.append(f"{row_id}: missing serial - row skipped")
            continue

        assigned_to = coerce_string(pick("assigned_to")) or "Unassigned"
        status = coerce_string(pick("status"))
        condition = coerce_string(pick("condition"))

        actor = coerce_string(_extract(row, lowered, TRANSFER_METADATA_ALIASES["last_actor"]))
        action = coerce_string(_extract(row, lowered, TRANSFER_METADATA_ALIASES["last_action"]))
        transfer_raw = _extract(row, lowered, TRANSFER_METADATA_ALIASES["last_transfer_at"])
        metadata = None
        if actor or action or coerce_string(transfer_raw):
            metadata = TransferMetadata(
                last_actor=actor, last_action=action, last_transfer_at=coerce_date(transfer_raw)
            )

        dynamic: list[tuple[str, ScalarValue]] = []
        dynamic_headers: list[SheetHeader] = []
        row_headers = build_ordered_headers([str(name) for name in row])
        for row_header, value in zip(row_headers, row.values()):
            label = row_header.name
            canonical = canonicalize_header(label)
            if not canonical or canonical in RESERVED_DYNAMIC_KEYS:
                continue
            header = header_lookup.get(label) or header_lookup_lower.get(label.lower())
            key = header.normalized_key if header else row_header.normalized_key
            dynamic.append((key, _normalize_dynamic_value(value)))
            dynamic_headers.append(row_header)

        for slug, labels in sorted(key_collisions(dynamic_headers).items()):
            anomalies.append(
                f"{row_id}: columns {', '.join(repr(label) for label in labels)} share attribute key {slug}"
            )

        # キー順で切り詰める (列の並びに依存しない)
        dynamic.sort(key=lambda item: item[0])
        if len(dynamic) > max_dynamic_columns:
            anomalies.append(
                f"{row_id}: dynamic attribute count {len(dynamic)} exceeds limit {max_dynamic_columns}"
            )
            dynamic = dynamic[:max_dynamic_columns]

        record = NormalizedRecord(
            identity=explicit_identity.lower(),
            legacy_identity=legacy_identity,
            sheet_origin=sheet_origin,
            assigned_to=assigned_to,
            status=_title_case(status) if status else "Unknown",
            condition=_title_case(condition) if condition else "Unknown",
            offboarding_status=coerce_string(pick("offboarding_status")),
            offboarding_metadata=metadata,
            last_seen=coerce_date(pick("last_seen")),
            last_transfer_notes=coerce_string(pick("last_transfer_notes")),
            dynamic_attributes=dict(dynamic),
            schema_version=schema_version,
            last_synced_at=synced_at,
        )

        errors = _validation_errors(record.to_document())
        if errors:
            anomalies.append(f"{row_id}: {', '.join(errors)}")
            continue

        records.append(_with_hash(record))

    return NormalizationResult(
        records=records,
        anomalies=anomalies,
        row_count=len(rows),
        skipped_count=len(rows) - len(records),
    )


def _with_hash(record: NormalizedRecord) -> NormalizedRecord:
    return replace(record, content_hash=compute_content_hash(record))
