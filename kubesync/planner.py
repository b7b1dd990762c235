"""Turning reconciled resources and hooks into an ordered list of sync tasks."""

from __future__ import annotations

import copy
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from kubesync import hooks
from kubesync.annotations import has_annotation_option
from kubesync.cluster import (
    APIResource,
    ClusterClient,
    ClusterError,
    NotFoundError,
    UnauthorizedError,
)
from kubesync.common import (
    ANNOTATION_SYNC_OPTIONS,
    CRD_GROUP,
    CRD_KIND,
    NAMESPACE_KIND,
    SYNC_OPTION_PRUNE_LAST,
    SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
    GroupVersionKind,
    OperationPhase,
    Resource,
    ResourceKey,
    ResourceSyncResult,
    ResultCode,
    SyncPhase,
    group_version_kind,
)
from kubesync.phases import sync_phases
from kubesync.settings import ReconciledResource, SyncSettings
from kubesync.tasks import SyncTask, sort_tasks

log = logging.getLogger(__name__)

_RETRY_ATTEMPTS = 5
_RETRY_DELAY = 0.01


class PlanningContext(Protocol):
    """What task planning reads from, and records results into, a sync operation."""

    resources: dict[ResourceKey, ReconciledResource]
    hooks: list[Resource]
    settings: SyncSettings
    revision: str
    namespace: str
    started_at: datetime
    client: ClusterClient
    sync_res: dict[str, ResourceSyncResult]

    def set_resource_result(
        self,
        task: SyncTask,
        sync_status: Optional[ResultCode],
        operation_state: Optional[OperationPhase],
        message: str,
    ) -> None: ...


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _with_metadata(obj: Resource, field: str, value: str) -> dict[str, Any]:
    """A deep copy of ``obj`` with one metadata field set, or removed when empty."""
    result = copy.deepcopy(dict(obj))
    metadata = dict(result.get("metadata") or {})
    if value:
        metadata[field] = value
    else:
        metadata.pop(field, None)
    result["metadata"] = metadata
    return result


def live_object(
    resources: Mapping[ResourceKey, ReconciledResource], obj: Resource
) -> Optional[Resource]:
    """The live object matching ``obj``; a cluster scoped key matches any namespace."""
    gvk = group_version_kind(obj)
    metadata = _metadata(obj)
    name = metadata.get("name") or ""
    namespace = metadata.get("namespace") or ""
    for key, resource in resources.items():
        if (
            key.group == gvk.group
            and key.kind == gvk.kind
            and key.namespace in ("", namespace)
            and key.name == name
        ):
            return resource.live
    return None


def _is_crd(obj: Resource) -> bool:
    gvk = group_version_kind(obj)
    return gvk.group == CRD_GROUP and gvk.kind == CRD_KIND


def is_crd_of_group_kind(group: str, kind: str, obj: Optional[Resource]) -> bool:
    """Whether ``obj`` is a CRD defining ``kind`` in ``group``."""
    if obj is None or not _is_crd(obj):
        return False
    spec = obj.get("spec")
    if not isinstance(spec, Mapping):
        return False
    crd_group = spec.get("group")
    names = spec.get("names")
    crd_kind = names.get("kind") if isinstance(names, Mapping) else None
    if not isinstance(crd_group, str) or not isinstance(crd_kind, str):
        return False
    return crd_group == group and crd_kind == kind


def is_namespace_with_name(obj: Optional[Resource], namespace: str) -> bool:
    """Whether ``obj`` is the core Namespace named ``namespace``."""
    if obj is None:
        return False
    gvk = group_version_kind(obj)
    return (
        gvk.group == ""
        and gvk.kind == NAMESPACE_KIND
        and (_metadata(obj).get("name") or "") == namespace
    )


def _target_objects(ctx: PlanningContext) -> list[Resource]:
    objs = list(ctx.hooks)
    objs.extend(r.target for r in ctx.resources.values() if r.target is not None)
    return objs


def _has_crd_of_group_kind(ctx: PlanningContext, group: str, kind: str) -> bool:
    return any(is_crd_of_group_kind(group, kind, obj) for obj in _target_objects(ctx))


def _server_resource(client: ClusterClient, gvk: GroupVersionKind) -> APIResource:
    """Look the resource type up, retrying while the cluster answers unauthorized."""
    for attempt in range(1, _RETRY_ATTEMPTS + 1):
        try:
            return client.server_resource(gvk, "get")
        except UnauthorizedError:
            if attempt == _RETRY_ATTEMPTS:
                raise
            time.sleep(_RETRY_DELAY)
    raise AssertionError("unreachable")


def reorder_prune_waves(tasks: Sequence[SyncTask], prune_last: bool) -> Sequence[SyncTask]:
    """Reverse the wave order of prune tasks and move prune-last tasks past the sync phase."""
    prune_by_wave: dict[int, list[SyncTask]] = defaultdict(list)
    for task in tasks:
        if task.is_prune():
            prune_by_wave[task.wave()].append(task)

    waves = sorted(prune_by_wave)
    for i in range(len(waves) // 2):
        start, end = waves[i], waves[-1 - i]
        for task in prune_by_wave[start]:
            task.wave_override = end
        for task in prune_by_wave[end]:
            task.wave_override = start

    sync_last_wave = max(
        [0, *(t.wave() for t in tasks if t.phase is SyncPhase.SYNC)]
    ) + 1
    for task in tasks:
        if task.is_prune() and (
            prune_last
            or has_annotation_option(
                task.live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_PRUNE_LAST
            )
        ):
            task.wave_override = sync_last_wave
    return tasks


def _append_failed_ns_task(
    ctx: PlanningContext, tasks: list[SyncTask], managed_ns: Resource, message: str
) -> list[SyncTask]:
    task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed_ns)
    ctx.set_resource_result(task, ResultCode.SYNC_FAILED, OperationPhase.ERROR, message)
    tasks.append(task)
    return tasks


def _append_ns_task(
    ctx: PlanningContext,
    tasks: list[SyncTask],
    task: SyncTask,
    managed_ns: Resource,
    live_ns: Optional[Resource],
) -> list[SyncTask]:
    try:
        modified = ctx.settings.sync_namespace(managed_ns, live_ns)
    except Exception as err:
        return _append_failed_ns_task(
            ctx, tasks, managed_ns, f"namespaceModifier error: {err}"
        )
    if modified:
        tasks.append(task)
    return tasks


def _auto_create_namespace(ctx: PlanningContext, tasks: list[SyncTask]) -> list[SyncTask]:
    if any(
        is_namespace_with_name(r.target, ctx.namespace) for r in ctx.resources.values()
    ):
        return tasks

    managed_ns = {
        "apiVersion": "v1",
        "kind": NAMESPACE_KIND,
        "metadata": {"name": ctx.namespace},
    }
    try:
        live_ns = ctx.client.get_resource(
            group_version_kind(managed_ns), ctx.namespace, ""
        )
    except NotFoundError:
        task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed_ns)
        return _append_ns_task(ctx, tasks, task, managed_ns, None)
    except ClusterError as err:
        return _append_failed_ns_task(
            ctx, tasks, managed_ns, f"Namespace auto creation failed: {err}"
        )

    task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed_ns, live_obj=live_ns)
    if task.result_key() in ctx.sync_res or live_ns is not None:
        if live_ns is not None:
            log.info("Namespace already exists: %s", ctx.namespace)
        return _append_ns_task(ctx, tasks, task, managed_ns, live_ns)
    return tasks


def _hook_name_postfix(ctx: PlanningContext, phase: SyncPhase) -> str:
    revision = ctx.revision[:7] if len(ctx.revision) >= 8 else ctx.revision
    return f"{revision}-{phase.value}-{int(ctx.started_at.timestamp())}".lower()


def build_tasks(ctx: PlanningContext) -> tuple[list[SyncTask], bool]:
    """Sorted sync tasks of the operation and whether all of them are valid."""
    settings = ctx.settings
    successful = True
    tasks: list[SyncTask] = []

    for resource in ctx.resources.values():
        if settings.resources_filter is not None and not settings.resources_filter(
            resource.key(), resource.target, resource.live
        ):
            log.debug("Skipping %s", resource.key())
            continue
        obj = resource.target if resource.target is not None else resource.live
        if hooks.is_hook(obj):
            log.debug("Skipping hook %s", resource.key())
            continue
        tasks.extend(
            SyncTask(phase=phase, target_obj=resource.target, live_obj=resource.live)
            for phase in sync_phases(obj)
        )

    if not settings.skip_hooks:
        for obj in ctx.hooks:
            for phase in sync_phases(obj):
                target = copy.deepcopy(dict(obj))
                if not _metadata(target).get("name"):
                    generate_name = _metadata(obj).get("generateName") or ""
                    target = _with_metadata(
                        target, "name", generate_name + _hook_name_postfix(ctx, phase)
                    )
                tasks.append(SyncTask(phase=phase, target_obj=target))

    # Pin every target to a namespace so nothing lands in an unintended one.
    for task in tasks:
        if task.target_obj is not None and not _metadata(task.target_obj).get(
            "namespace"
        ):
            task.target_obj = _with_metadata(task.target_obj, "namespace", ctx.namespace)

    if settings.sync_namespace is not None and ctx.namespace:
        tasks = _auto_create_namespace(ctx, tasks)

    for task in tasks:
        if task.target_obj is not None and task.live_obj is None:
            task.live_obj = live_object(ctx.resources, task.target_obj)

    server_resources: dict[GroupVersionKind, APIResource] = {}
    for task in tasks:
        gvk = task.group_version_kind()
        try:
            server_res = server_resources.get(gvk)
            if server_res is None:
                server_res = _server_resource(ctx.client, gvk)
                server_resources[gvk] = server_res
        except ClusterError as err:
            if isinstance(err, NotFoundError) and (
                (
                    task.target_obj is not None
                    and has_annotation_option(
                        task.target_obj,
                        ANNOTATION_SYNC_OPTIONS,
                        SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
                    )
                )
                or _has_crd_of_group_kind(ctx, task.group(), task.kind())
            ):
                log.debug("Skip dry-run for custom resource %s", task)
                task.skip_dry_run = True
            else:
                ctx.set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                successful = False
            continue
        try:
            settings.permission_validator(task.obj(), server_res)
        except Exception as err:
            ctx.set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
            successful = False

    reorder_prune_waves(tasks, settings.prune_last)
    sort_tasks(tasks)

    for task in tasks:
        result = ctx.sync_res.get(task.result_key())
        if result is not None:
            task.sync_status = result.status
            task.operation_state = result.hook_phase
            task.message = result.message

    return tasks, successful