"""Shared vocabulary of the sync engine: annotation keys, enums and resource keys.

Resources are plain mappings shaped like Kubernetes objects
(``apiVersion``, ``kind``, ``metadata``...).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

Resource = Mapping[str, Any]

ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"
ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
ANNOTATION_KEY_HOOK = "argocd.argoproj.io/hook"
ANNOTATION_KEY_HOOK_DELETE_POLICY = "argocd.argoproj.io/hook-delete-policy"

SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE = "SkipDryRunOnMissingResource=true"
SYNC_OPTION_DISABLE_PRUNE = "Prune=false"
SYNC_OPTION_PRUNE_REQUIRE_CONFIRM = "Prune=confirm"
SYNC_OPTION_DISABLE_VALIDATION = "Validate=false"
SYNC_OPTION_PRUNE_LAST = "PruneLast=true"
SYNC_OPTION_REPLACE = "Replace=true"
SYNC_OPTION_FORCE = "Force=true"
SYNC_OPTION_SERVER_SIDE_APPLY = "ServerSideApply=true"
SYNC_OPTION_DISABLE_SERVER_SIDE_APPLY = "ServerSideApply=false"

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"
CRD_GROUP = "apiextensions.k8s.io"


class HookType(str, Enum):
    """Value of the hook annotation."""

    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"
    SKIP = "Skip"


class HookDeletePolicy(str, Enum):
    """When a hook resource is deleted."""

    HOOK_SUCCEEDED = "HookSucceeded"
    HOOK_FAILED = "HookFailed"
    BEFORE_HOOK_CREATION = "BeforeHookCreation"


class SyncPhase(str, Enum):
    """Phase of a sync operation."""

    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"


class OperationPhase(str, Enum):
    """State of an operation or of a single resource within it."""

    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"
    ERROR = "Error"
    SUCCEEDED = "Succeeded"

    def is_running(self) -> bool:
        return self in (OperationPhase.RUNNING, OperationPhase.TERMINATING)

    def is_completed(self) -> bool:
        return self in (
            OperationPhase.FAILED,
            OperationPhase.ERROR,
            OperationPhase.SUCCEEDED,
        )

    def is_successful(self) -> bool:
        return self is OperationPhase.SUCCEEDED


class ResultCode(str, Enum):
    """Outcome of applying or pruning one resource."""

    SYNCED = "Synced"
    SYNC_FAILED = "SyncFailed"
    PRUNED = "Pruned"
    PRUNE_SKIPPED = "PruneSkipped"


@dataclass(frozen=True)
class GroupVersionKind:
    group: str = ""
    version: str = ""
    kind: str = ""


@dataclass(frozen=True)
class ResourceKey:
    group: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


@dataclass
class ResourceSyncResult:
    """Result of syncing one resource in one phase."""

    resource_key: ResourceKey
    version: str = ""
    order: int = 0
    status: Optional[ResultCode] = None
    message: str = ""
    hook_type: Optional[HookType] = None
    hook_phase: Optional[OperationPhase] = None
    sync_phase: Optional[SyncPhase] = None


def parse_hook_type(text: str) -> Optional[HookType]:
    """Return the hook type named by ``text``, or None if it names none."""
    try:
        return HookType(text)
    except ValueError:
        return None


def parse_delete_policy(text: str) -> Optional[HookDeletePolicy]:
    """Return the delete policy named by ``text``, or None if it names none."""
    try:
        return HookDeletePolicy(text)
    except ValueError:
        return None


def get_annotations(obj: Optional[Resource]) -> dict[str, str]:
    """Annotations of ``obj``; empty when the object or the annotations are missing."""
    if not obj:
        return {}
    metadata = obj.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    return dict(annotations)


def group_version_kind(obj: Resource) -> GroupVersionKind:
    """Group, version and kind of ``obj``; all empty if its apiVersion is malformed."""
    api_version = obj.get("apiVersion") or ""
    kind = obj.get("kind") or ""
    parts = api_version.split("/")
    if api_version == "":
        return GroupVersionKind("", "", kind)
    if len(parts) == 1:
        return GroupVersionKind("", parts[0], kind)
    if len(parts) == 2:
        return GroupVersionKind(parts[0], parts[1], kind)
    return GroupVersionKind()


def resource_key(obj: Resource) -> ResourceKey:
    """Key identifying ``obj`` by group, kind, namespace and name."""
    gvk = group_version_kind(obj)
    metadata = obj.get("metadata") or {}
    return ResourceKey(
        group=gvk.group,
        kind=gvk.kind,
        namespace=metadata.get("namespace") or "",
        name=metadata.get("name") or "",
    )