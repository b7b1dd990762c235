"""Recognition of sync hooks, their types and delete policies."""

from __future__ import annotations

from kubesync import helm
from kubesync.annotations import get_annotation_csvs
from kubesync.common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    HookDeletePolicy,
    HookType,
    Resource,
    get_annotations,
    parse_delete_policy,
    parse_hook_type,
)


def is_hook(obj: Resource) -> bool:
    """Whether ``obj`` is a hook; a resource marked only ``Skip`` is not."""
    if ANNOTATION_KEY_HOOK in get_annotations(obj):
        return not skip(obj)
    return helm.is_hook(obj)


def skip(obj: Resource) -> bool:
    """Whether ``obj`` is marked ``Skip`` and nothing else."""
    types = hook_types(obj)
    return HookType.SKIP in types and len(types) == 1


def hook_types(obj: Resource) -> list[HookType]:
    """Hook types of ``obj``; Helm hooks are used only when no native type is given."""
    types = [
        t
        for t in map(parse_hook_type, get_annotation_csvs(obj, ANNOTATION_KEY_HOOK))
        if t is not None
    ]
    if not types:
        types = [t.hook_type() for t in helm.hook_types(obj)]
    return types


def delete_policies(obj: Resource) -> list[HookDeletePolicy]:
    """Delete policies of ``obj``, defaulting to ``BeforeHookCreation``."""
    policies = [
        p
        for p in map(
            parse_delete_policy,
            get_annotation_csvs(obj, ANNOTATION_KEY_HOOK_DELETE_POLICY),
        )
        if p is not None
    ]
    policies.extend(p.delete_policy() for p in helm.delete_policies(obj))
    return policies or [HookDeletePolicy.BEFORE_HOOK_CREATION]