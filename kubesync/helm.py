"""Recognition of Helm hook annotations."""

from __future__ import annotations

import re
from enum import Enum

from kubesync.annotations import get_annotation_csvs
from kubesync.common import HookDeletePolicy, HookType, Resource, get_annotations

ANNOTATION_HELM_HOOK = "helm.sh/hook"
ANNOTATION_HELM_HOOK_DELETE_POLICY = "helm.sh/hook-delete-policy"
ANNOTATION_HELM_HOOK_WEIGHT = "helm.sh/hook-weight"

_INTEGER = re.compile(r"[+-]?[0-9]+")


class HelmHookType(str, Enum):
    """Helm hook kinds that map onto sync phases."""

    PRE_INSTALL = "pre-install"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    POST_INSTALL = "post-install"

    def hook_type(self) -> HookType:
        return _HOOK_TYPES[self]


class HelmDeletePolicy(str, Enum):
    """Helm hook delete policies."""

    BEFORE_HOOK_CREATION = "before-hook-creation"
    HOOK_SUCCEEDED = "hook-succeeded"
    HOOK_FAILED = "hook-failed"

    def delete_policy(self) -> HookDeletePolicy:
        return _DELETE_POLICIES[self]


_HOOK_TYPES = {
    HelmHookType.PRE_INSTALL: HookType.PRE_SYNC,
    HelmHookType.PRE_UPGRADE: HookType.PRE_SYNC,
    HelmHookType.POST_UPGRADE: HookType.POST_SYNC,
    HelmHookType.POST_INSTALL: HookType.POST_SYNC,
}

_DELETE_POLICIES = {
    HelmDeletePolicy.BEFORE_HOOK_CREATION: HookDeletePolicy.BEFORE_HOOK_CREATION,
    HelmDeletePolicy.HOOK_SUCCEEDED: HookDeletePolicy.HOOK_SUCCEEDED,
    HelmDeletePolicy.HOOK_FAILED: HookDeletePolicy.HOOK_FAILED,
}

_HOOK_TYPE_VALUES = {t.value: t for t in HelmHookType}
_DELETE_POLICY_VALUES = {p.value: p for p in HelmDeletePolicy}


def is_hook(obj: Resource) -> bool:
    """Whether ``obj`` carries a Helm hook annotation; ``crd-install`` does not count."""
    annotations = get_annotations(obj)
    return ANNOTATION_HELM_HOOK in annotations and (
        annotations[ANNOTATION_HELM_HOOK] != "crd-install"
    )


def hook_types(obj: Resource) -> list[HelmHookType]:
    """Supported Helm hook types named by ``obj``."""
    return [
        _HOOK_TYPE_VALUES[text]
        for text in get_annotation_csvs(obj, ANNOTATION_HELM_HOOK)
        if text in _HOOK_TYPE_VALUES
    ]


def delete_policies(obj: Resource) -> list[HelmDeletePolicy]:
    """Helm delete policies named by ``obj``."""
    return [
        _DELETE_POLICY_VALUES[text]
        for text in get_annotation_csvs(obj, ANNOTATION_HELM_HOOK_DELETE_POLICY)
        if text in _DELETE_POLICY_VALUES
    ]


def weight(obj: Resource) -> int:
    """Helm hook weight of ``obj``, 0 if absent or not an integer."""
    text = get_annotations(obj).get(ANNOTATION_HELM_HOOK_WEIGHT)
    if text is not None and _INTEGER.fullmatch(text):
        return int(text)
    return 0