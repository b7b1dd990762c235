"""Deciding whether a resource is left out of a sync entirely."""

from __future__ import annotations

from kubesync import hooks
from kubesync.common import Resource


def ignore(obj: Resource) -> bool:
    """Whether ``obj`` is a hook of no recognisable type and so is ignored."""
    return hooks.is_hook(obj) and not hooks.hook_types(obj)