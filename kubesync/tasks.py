"""Sync tasks: one resource, in one phase, to be applied, pruned or run as a hook."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from kubesync import helm, hooks
from kubesync.common import (
    ANNOTATION_SYNC_WAVE,
    GroupVersionKind,
    HookDeletePolicy,
    HookType,
    OperationPhase,
    Resource,
    ResourceKey,
    ResultCode,
    SyncPhase,
    get_annotations,
    group_version_kind,
    resource_key,
)

_INTEGER = re.compile(r"[+-]?[0-9]+")

_PHASE_ORDER = {
    SyncPhase.PRE_SYNC: -1,
    SyncPhase.SYNC: 0,
    SyncPhase.POST_SYNC: 1,
    SyncPhase.SYNC_FAIL: 2,
}

_KINDS_IN_ORDER = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)

# Known kinds get negative ranks; unknown kinds rank 0 and so come last.
_KIND_ORDER = {
    kind: index - len(_KINDS_IN_ORDER) for index, kind in enumerate(_KINDS_IN_ORDER)
}


def sync_wave(obj: Resource) -> int:
    """Sync wave of ``obj`` from its wave annotation, else its Helm hook weight."""
    text = get_annotations(obj).get(ANNOTATION_SYNC_WAVE)
    if text is not None and _INTEGER.fullmatch(text):
        return int(text)
    return helm.weight(obj)


def resource_result_key(key: ResourceKey, phase: SyncPhase) -> str:
    """Key under which the result of ``key`` in ``phase`` is stored."""
    phase_text = phase.value if isinstance(phase, SyncPhase) else str(phase)
    return f"{key}:{phase_text}"


@dataclass
class SyncTask:
    """Live and target object of one resource in one phase.

    A missing target means the live object is to be pruned; a missing live
    object means the target has yet to be deployed.
    """

    phase: SyncPhase
    live_obj: Optional[Resource] = None
    target_obj: Optional[Resource] = None
    skip_dry_run: bool = False
    sync_status: Optional[ResultCode] = None
    operation_state: Optional[OperationPhase] = None
    message: str = ""
    wave_override: Optional[int] = None

    def __str__(self) -> str:
        status = self.sync_status.value if self.sync_status else ""
        state = self.operation_state.value if self.operation_state else ""
        return (
            f"{self.phase.value}/{self.wave()} "
            f"{'hook' if self.is_hook() else 'resource'} "
            f"{self.group()}/{self.kind()}:{self.namespace()}/{self.name()} "
            f"{'obj' if self.live_obj is not None else 'nil'}->"
            f"{'obj' if self.target_obj is not None else 'nil'} "
            f"({status},{state},{self.message})"
        )

    def obj(self) -> Resource:
        """The target object if there is one, otherwise the live object."""
        return self.target_obj if self.target_obj is not None else self.live_obj

    def wave(self) -> int:
        if self.wave_override is not None:
            return self.wave_override
        return sync_wave(self.obj())

    def is_hook(self) -> bool:
        return hooks.is_hook(self.obj())

    def is_prune(self) -> bool:
        return self.target_obj is None

    def group_version_kind(self) -> GroupVersionKind:
        return group_version_kind(self.obj())

    def group(self) -> str:
        return self.group_version_kind().group

    def kind(self) -> str:
        return self.group_version_kind().kind

    def version(self) -> str:
        return self.group_version_kind().version

    def name(self) -> str:
        return (self.obj().get("metadata") or {}).get("name") or ""

    def namespace(self) -> str:
        return (self.obj().get("metadata") or {}).get("namespace") or ""

    def resource_key(self) -> ResourceKey:
        return resource_key(self.obj())

    def result_key(self) -> str:
        return resource_result_key(self.resource_key(), self.phase)

    def pending(self) -> bool:
        return self.operation_state is None

    def running(self) -> bool:
        return self.operation_state is not None and self.operation_state.is_running()

    def completed(self) -> bool:
        return (
            self.operation_state is not None and self.operation_state.is_completed()
        )

    def successful(self) -> bool:
        return (
            self.operation_state is not None
            and self.operation_state.is_successful()
        )

    def pruned(self) -> bool:
        return self.sync_status is ResultCode.PRUNED

    def hook_type(self) -> Optional[HookType]:
        """Hook type matching the task's phase, or None if the task is no hook."""
        if self.is_hook():
            return HookType(self.phase.value)
        return None

    def has_hook_delete_policy(self, policy: HookDeletePolicy) -> bool:
        if not self.is_hook():
            return False
        return policy in hooks.delete_policies(self.obj())

    def delete_before_creation(self) -> bool:
        return (
            self.live_obj is not None
            and self.pending()
            and self.has_hook_delete_policy(HookDeletePolicy.BEFORE_HOOK_CREATION)
        )

    def delete_on_phase_completion(self) -> bool:
        return self.delete_on_phase_failed() or self.delete_on_phase_successful()

    def delete_on_phase_successful(self) -> bool:
        return self.live_obj is not None and self.has_hook_delete_policy(
            HookDeletePolicy.HOOK_SUCCEEDED
        )

    def delete_on_phase_failed(self) -> bool:
        return self.live_obj is not None and self.has_hook_delete_policy(
            HookDeletePolicy.HOOK_FAILED
        )


def _sort_key(task: SyncTask) -> tuple[int, int, int, str]:
    return (
        _PHASE_ORDER[task.phase],
        task.wave(),
        _KIND_ORDER.get(task.kind(), 0),
        task.name(),
    )


def sort_tasks(tasks: list[SyncTask]) -> list[SyncTask]:
    """Sort ``tasks`` in place by phase, wave, kind and name, and return them."""
    tasks.sort(key=_sort_key)
    return tasks


def tasks_phase(tasks: Sequence[SyncTask]) -> Optional[SyncPhase]:
    """Phase of the first task, or None if there are no tasks."""
    return tasks[0].phase if tasks else None


def tasks_wave(tasks: Sequence[SyncTask]) -> int:
    """Wave of the first task, or 0 if there are no tasks."""
    return tasks[0].wave() if tasks else 0


def last_phase(tasks: Sequence[SyncTask]) -> Optional[SyncPhase]:
    """Phase of the last task, or None if there are no tasks."""
    return tasks[-1].phase if tasks else None


def last_wave(tasks: Sequence[SyncTask]) -> int:
    """Wave of the last task, or 0 if there are no tasks."""
    return tasks[-1].wave() if tasks else 0


def is_multi_step(tasks: Sequence[SyncTask]) -> bool:
    """Whether sorted ``tasks`` span more than one phase or wave."""
    return tasks_wave(tasks) != last_wave(tasks) or tasks_phase(tasks) != last_phase(
        tasks
    )