"""Reading comma separated annotation values."""

from __future__ import annotations

from typing import Optional

from kubesync.common import Resource, get_annotations


def get_annotation_csvs(obj: Optional[Resource], key: str) -> list[str]:
    """Distinct, stripped, non-empty values of the comma separated annotation ``key``."""
    raw = get_annotations(obj).get(key, "")
    values = (item.strip() for item in raw.split(","))
    return list(dict.fromkeys(v for v in values if v))


def has_annotation_option(obj: Optional[Resource], key: str, val: str) -> bool:
    """Whether the annotation ``key`` of ``obj`` lists ``val``."""
    return val in get_annotation_csvs(obj, key)