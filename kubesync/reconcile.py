"""Matching target manifests against live cluster objects."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Mapping, MutableMapping, Optional, Protocol, Sequence

from kubesync import hooks
from kubesync.common import Resource, ResourceKey, group_version_kind, resource_key
from kubesync.ignore import ignore


class ResourceInfoProvider(Protocol):
    """Tells whether a kind is namespaced; raises when the scope is unknown."""

    def is_namespaced(self, group: str, kind: str) -> bool: ...


@dataclass
class ReconciliationResult:
    """Target and live objects paired by position, plus the hooks."""

    live: list[Optional[Resource]] = field(default_factory=list)
    target: list[Optional[Resource]] = field(default_factory=list)
    hooks: list[Resource] = field(default_factory=list)


def split_hooks(
    target: Sequence[Optional[Resource]],
) -> tuple[list[Resource], list[Resource]]:
    """Split ``target`` into plain objects and hooks, dropping missing and ignored ones."""
    objs: list[Resource] = []
    hook_objs: list[Resource] = []
    for obj in target:
        if obj is None or ignore(obj):
            continue
        (hook_objs if hooks.is_hook(obj) else objs).append(obj)
    return objs, hook_objs


def _uid(obj: Resource) -> str:
    return (obj.get("metadata") or {}).get("uid") or ""


def dedup_live_resources(
    target_objs: Sequence[Resource],
    live_objs_by_key: MutableMapping[ResourceKey, Optional[Resource]],
) -> None:
    """Remove, in place, live objects sharing a UID unless they are targeted.

    The same object can be served under several API groups; at least one
    duplicate always stays.
    """
    target_keys = {resource_key(obj) for obj in target_objs}
    by_uid: dict[str, list[Resource]] = defaultdict(list)
    for obj in live_objs_by_key.values():
        if obj is not None:
            by_uid[_uid(obj)].append(obj)
    for objs in by_uid.values():
        if len(objs) <= 1:
            continue
        left = len(objs)
        for obj in objs:
            key = resource_key(obj)
            if key not in target_keys:
                live_objs_by_key.pop(key, None)
                left -= 1
                if left == 1:
                    break


def reconcile(
    target_objs: Sequence[Optional[Resource]],
    live_obj_by_key: Mapping[ResourceKey, Optional[Resource]],
    namespace: str,
    res_info: ResourceInfoProvider,
) -> ReconciliationResult:
    """Pair every target object with its live object; unmatched live objects get no target."""
    targets, hook_objs = split_hooks(target_objs)
    live = dict(live_obj_by_key)
    dedup_live_resources(targets, live)

    managed_live: list[Optional[Resource]] = []
    for obj in targets:
        gvk = group_version_kind(obj)
        metadata = obj.get("metadata") or {}
        name = metadata.get("name") or ""
        ns = metadata.get("namespace") or namespace
        try:
            namespaced = res_info.is_namespaced(gvk.group, gvk.kind)
            unknown_scope = False
        except Exception:
            # Scope unknown: look under both keys so the object is not missed.
            namespaced = False
            unknown_scope = True

        keys_to_check = []
        if namespaced or unknown_scope:
            keys_to_check.append(ResourceKey(gvk.group, gvk.kind, ns, name))
        if not namespaced or unknown_scope:
            keys_to_check.append(ResourceKey(gvk.group, gvk.kind, "", name))

        match = None
        for key in keys_to_check:
            if key in live:
                match = live.pop(key)
                break
        managed_live.append(match)

    result_targets: list[Optional[Resource]] = list(targets)
    for obj in live.values():
        result_targets.append(None)
        managed_live.append(obj)
    return ReconciliationResult(live=managed_live, target=result_targets, hooks=hook_objs)