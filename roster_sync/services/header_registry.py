from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence
from datetime import datetime

from ..models.registry import ColumnDataType, ColumnDescriptor, RegistryDiff
from ..models.sheet_data import CellValue, RawRow, SheetHeader

"""Header registry: typed column descriptors, registry diff and version id.

Rename detection is a positional heuristic only. A column that disappears and
a column that appears at the same display order are reported as one rename.
Two unrelated columns swapping places with a coincident order will be
misreported; this is accepted to keep added/removed pairs from flooding the
schema-change events.
"""

__all__ = [
    "COLUMN_SAMPLE_LIMIT",
    "EMPTY_REGISTRY_VERSION",
    "normalize_header_key",
    "build_ordered_headers",
    "key_collisions",
    "infer_column_profile",
    "build_registry",
    "diff_registry",
    "derive_version",
]

COLUMN_SAMPLE_LIMIT = 32
EMPTY_REGISTRY_VERSION = "registry-empty"

_HEADER_KEY_RE = re.compile(r"[^a-z0-9]+")


def normalize_header_key(label: str, fallback_index: int) -> str:
    """Slug of ``label``; ``column_<fallback_index>`` when nothing alphanumeric is left."""
    slug = _HEADER_KEY_RE.sub("_", label.strip().lower()).strip("_")
    return slug if slug else f"column_{fallback_index}"


def build_ordered_headers(labels: Sequence[str]) -> list[SheetHeader]:
    """Assign each label a unique key.

    Labels whose slugs collide are ranked by label text, not by column
    position: the first keeps the bare slug, the n-th gets ``_<n>`` appended.
    Moving columns around therefore never moves a value to another key.
    """
    slugs = [normalize_header_key(label, index + 1) for index, label in enumerate(labels)]
    keys: list[str] = [""] * len(labels)
    used: set[str] = set()
    for index in sorted(range(len(labels)), key=lambda i: (slugs[i], labels[i], i)):
        key = slugs[index]
        rank = 1
        while key in used:
            rank += 1
            key = f"{slugs[index]}_{rank}"
        used.add(key)
        keys[index] = key
    return [
        SheetHeader(name=label, normalized_key=keys[index], position=index)
        for index, label in enumerate(labels)
    ]


def key_collisions(headers: Sequence[SheetHeader]) -> dict[str, list[str]]:
    """Slug -> labels, for slugs shared by more than one header."""
    groups: dict[str, list[str]] = {}
    for header in headers:
        slug = normalize_header_key(header.name, header.position + 1)
        groups.setdefault(slug, []).append(header.name)
    return {slug: sorted(names) for slug, names in groups.items() if len(names) > 1}


def _is_blank(value: CellValue | None) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _primitive_type(value: CellValue) -> ColumnDataType:
    # bool は int のサブクラスなので先に判定
    if isinstance(value, bool):
        return ColumnDataType.BOOLEAN
    if isinstance(value, (int, float)):
        return ColumnDataType.NUMBER
    if isinstance(value, datetime):
        return ColumnDataType.DATE
    return ColumnDataType.STRING


def infer_column_profile(
    header_name: str, rows: Sequence[RawRow] | None
) -> tuple[ColumnDataType, bool]:
    """Infer (data_type, nullable) from up to COLUMN_SAMPLE_LIMIT non-blank values."""
    if not rows:
        return ColumnDataType.UNKNOWN, True

    samples: list[CellValue] = []
    nullable = False
    for row in rows:
        raw = row.get(header_name)
        if _is_blank(raw):
            nullable = True
            continue
        samples.append(raw)
        if len(samples) >= COLUMN_SAMPLE_LIMIT:
            break

    if not samples:
        return ColumnDataType.UNKNOWN, True

    detected = {_primitive_type(v) for v in samples}
    if ColumnDataType.DATE in detected:
        return ColumnDataType.DATE, nullable
    if len(detected) == 1:
        return detected.pop(), nullable
    # 文字列を含む混在は string、number + boolean のみは判定不能
    if ColumnDataType.STRING in detected:
        return ColumnDataType.STRING, nullable
    return ColumnDataType.UNKNOWN, nullable


def build_registry(
    headers: Sequence[SheetHeader], sample_rows: Sequence[RawRow] | None = None
) -> list[ColumnDescriptor]:
    entries: list[ColumnDescriptor] = []
    for index, header in enumerate(headers):
        data_type, nullable = infer_column_profile(header.name, sample_rows)
        entries.append(
            ColumnDescriptor(
                key=header.normalized_key or normalize_header_key(header.name, index + 1),
                label=header.name,
                display_order=header.position if header.position is not None else index,
                data_type=data_type,
                nullable=nullable,
            )
        )
    return entries


def diff_registry(
    current: Sequence[ColumnDescriptor], previous: Sequence[ColumnDescriptor]
) -> RegistryDiff:
    current_keys = {entry.key for entry in current}
    previous_keys = {entry.key for entry in previous}

    added = [entry for entry in current if entry.key not in previous_keys]
    unchanged = [entry for entry in current if entry.key in previous_keys]
    removed = [entry for entry in previous if entry.key not in current_keys]

    # Heuristic rename: pair an added and a removed entry that share display order
    removed_by_order: dict[int, ColumnDescriptor] = {}
    for entry in removed:
        removed_by_order.setdefault(entry.display_order, entry)

    renamed: list[tuple[ColumnDescriptor, ColumnDescriptor]] = []
    filtered_added: list[ColumnDescriptor] = []
    for entry in added:
        match = removed_by_order.pop(entry.display_order, None)
        if match is not None:
            renamed.append((match, entry))
            continue
        filtered_added.append(entry)

    paired = {id(prev) for prev, _ in renamed}
    filtered_removed = [entry for entry in removed if id(entry) not in paired]

    return RegistryDiff(
        added=filtered_added,
        removed=filtered_removed,
        unchanged=unchanged,
        renamed=renamed,
    )


def derive_version(entries: Sequence[ColumnDescriptor]) -> str:
    """Stable registry version id.

    Hash over the sorted (key, label, data_type, nullable) tuples, so moving a
    column does not change the version while any shape change does.
    """
    if not entries:
        return EMPTY_REGISTRY_VERSION
    digest = hashlib.sha1()
    for key, label, data_type, nullable in sorted(
        (e.key, e.label, e.data_type.value, e.nullable) for e in entries
    ):
        digest.update(f"{key}:{label}:{data_type}:{str(nullable).lower()}\n".encode())
    return f"registry-{len(entries)}-{digest.hexdigest()}"
