"""Settings of a sync operation and the resources it works on."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional, Union

from kubesync.cluster import APIResource, HealthStatus
from kubesync.common import Resource, ResourceKey, SyncPhase, resource_key
from kubesync.reconcile import ReconciliationResult

ResourcesFilter = Callable[[ResourceKey, Optional[Resource], Optional[Resource]], bool]
PermissionValidator = Callable[[Resource, APIResource], None]
HealthOverride = Callable[[Resource], Optional[HealthStatus]]
NamespaceModifier = Callable[[Resource, Optional[Resource]], bool]
SyncWaveHook = Callable[[SyncPhase, int, bool], None]


class PropagationPolicy(str, Enum):
    """How dependents of a deleted resource are removed."""

    ORPHAN = "Orphan"
    BACKGROUND = "Background"
    FOREGROUND = "Foreground"


@dataclass(frozen=True)
class DiffResult:
    """Diff of one resource; live states are JSON documents."""

    normalized_live: Union[str, bytes] = "null"
    predicted_live: Union[str, bytes] = "null"
    modified: bool = False


def _allow_all(obj: Resource, api_resource: APIResource) -> None:
    return None


@dataclass
class SyncSettings:
    """Options of a sync operation.

    Callbacks signal failure by raising.
    """

    dry_run: bool = False
    force: bool = False
    validate: bool = True
    skip_hooks: bool = False
    prune: bool = False
    prune_last: bool = False
    prune_confirmed: bool = False
    prune_propagation_policy: Optional[PropagationPolicy] = None
    replace: bool = False
    server_side_apply: bool = False
    server_side_apply_manager: str = ""
    resources_filter: Optional[ResourcesFilter] = None
    permission_validator: PermissionValidator = _allow_all
    health_override: Optional[HealthOverride] = None
    sync_namespace: Optional[NamespaceModifier] = None
    sync_wave_hook: Optional[SyncWaveHook] = None
    apply_out_of_sync_only: bool = False
    modification_result: Optional[dict[ResourceKey, bool]] = field(default=None)


@dataclass
class ReconciledResource:
    """Target and live state of one resource."""

    target: Optional[Resource] = None
    live: Optional[Resource] = None

    def key(self) -> ResourceKey:
        """Key of the live object if there is one, otherwise of the target."""
        return resource_key(self.live if self.live is not None else self.target)


def group_resources(result: ReconciliationResult) -> dict[ResourceKey, ReconciledResource]:
    """Pair targets and live objects of ``result`` under their resource keys."""
    resources: dict[ResourceKey, ReconciledResource] = {}
    for target, live in zip(result.target, result.live):
        res = ReconciledResource(target=target, live=live)
        resources[res.key()] = res
    return resources


def group_diff_results(diffs: Iterable[DiffResult]) -> dict[ResourceKey, bool]:
    """Map each diffed resource to whether it is modified; unreadable diffs are skipped."""
    modified: dict[ResourceKey, bool] = {}
    for diff in diffs:
        live = diff.normalized_live
        text = live.decode() if isinstance(live, bytes) else live
        document = diff.predicted_live if text == "null" else live
        try:
            obj = json.loads(document)
        except (ValueError, TypeError):
            continue
        if obj is None:
            obj = {}
        elif not isinstance(obj, dict):
            continue
        modified[resource_key(obj)] = diff.modified
    return modified