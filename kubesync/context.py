"""Running a sync operation step by step against a cluster."""

from __future__ import annotations

import copy
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from kubesync.annotations import has_annotation_option
from kubesync.cluster import (
    ClusterClient,
    ClusterError,
    HealthStatus,
    HealthStatusCode,
    NotFoundError,
    RunState,
    merge_run_states,
)
from kubesync.common import (
    ANNOTATION_SYNC_OPTIONS,
    CRD_GROUP,
    CRD_KIND,
    NAMESPACE_KIND,
    SYNC_OPTION_DISABLE_PRUNE,
    SYNC_OPTION_DISABLE_SERVER_SIDE_APPLY,
    SYNC_OPTION_DISABLE_VALIDATION,
    SYNC_OPTION_FORCE,
    SYNC_OPTION_PRUNE_REQUIRE_CONFIRM,
    SYNC_OPTION_REPLACE,
    SYNC_OPTION_SERVER_SIDE_APPLY,
    OperationPhase,
    Resource,
    ResourceKey,
    ResourceSyncResult,
    ResultCode,
    SyncPhase,
    group_version_kind,
    resource_key,
)
from kubesync.planner import build_tasks, is_crd_of_group_kind, live_object
from kubesync.reconcile import ReconciliationResult
from kubesync.settings import (
    PropagationPolicy,
    ReconciledResource,
    SyncSettings,
    group_resources,
)
from kubesync.tasks import (
    SyncTask,
    is_multi_step,
    last_phase,
    last_wave,
    resource_result_key,
    tasks_phase,
    tasks_wave,
)

log = logging.getLogger(__name__)

CRD_READINESS_TIMEOUT = 3.0
_CRD_POLL_INTERVAL = 0.1

_OPERATION_PHASES = {
    ResultCode.SYNCED: OperationPhase.RUNNING,
    ResultCode.SYNC_FAILED: OperationPhase.FAILED,
    ResultCode.PRUNED: OperationPhase.SUCCEEDED,
    ResultCode.PRUNE_SKIPPED: OperationPhase.SUCCEEDED,
}


def _is_crd(obj: Resource) -> bool:
    gvk = group_version_kind(obj)
    return gvk.group == CRD_GROUP and gvk.kind == CRD_KIND


def _name(obj: Resource) -> str:
    return (obj.get("metadata") or {}).get("name") or ""


def _deletion_timestamp(obj: Resource):
    return (obj.get("metadata") or {}).get("deletionTimestamp")


class SyncContext:
    """State of one sync operation; each :meth:`sync` call performs the next step."""

    def __init__(
        self,
        client: ClusterClient,
        revision: str = "",
        reconciliation: Optional[ReconciliationResult] = None,
        namespace: str = "",
        settings: Optional[SyncSettings] = None,
        *,
        phase: Optional[OperationPhase] = None,
        message: str = "",
        results: Iterable[ResourceSyncResult] = (),
        started_at: Optional[datetime] = None,
    ) -> None:
        reconciliation = reconciliation or ReconciliationResult()
        self.client = client
        self.revision = revision
        self.namespace = namespace
        self.settings = settings or SyncSettings()
        self.resources: dict[ResourceKey, ReconciledResource] = group_resources(
            reconciliation
        )
        self.hooks: list[Resource] = list(reconciliation.hooks)
        self.phase = phase
        self.message = message
        self.started_at = started_at or datetime.now(timezone.utc)
        self.sync_res: dict[str, ResourceSyncResult] = {
            resource_result_key(r.resource_key, r.sync_phase): r for r in results
        }
        self._lock = threading.Lock()

    # state ---------------------------------------------------------------

    def started(self) -> bool:
        return bool(self.sync_res)

    def get_state(
        self,
    ) -> tuple[Optional[OperationPhase], str, list[ResourceSyncResult]]:
        """Operation phase, message and resource results in the order they were added."""
        results = sorted(self.sync_res.values(), key=lambda r: r.order)
        return self.phase, self.message, results

    def _set_operation_phase(self, phase: OperationPhase, message: str) -> None:
        if self.phase != phase or self.message != message:
            log.info(
                "Updating operation state. phase: %s -> %s, message: '%s' -> '%s'",
                self.phase, phase, self.message, message,
            )
        self.phase = phase
        self.message = message

    def set_running_phase(
        self, tasks: Sequence[SyncTask], is_pending_deletion: bool
    ) -> None:
        """Mark the operation running and say what it is waiting for."""
        if not tasks:
            return
        first = tasks[0]
        if first.is_hook():
            waiting_for, and_more = "completion of hook", "hooks"
        else:
            waiting_for, and_more = "healthy state of", "resources"
        if is_pending_deletion:
            waiting_for = "deletion of"
        message = f"waiting for {waiting_for} {first.group()}/{first.kind()}/{first.name()}"
        more = len(tasks) - 1
        if more > 0:
            message = f"{message} and {more} more {and_more}"
        self._set_operation_phase(OperationPhase.RUNNING, message)

    def set_operation_failed(
        self,
        sync_fail_tasks: Optional[Sequence[SyncTask]],
        sync_failed_tasks: Optional[Sequence[SyncTask]],
        message: str,
    ) -> None:
        """Fail the operation, first running SyncFail hooks that have not completed."""
        reasons = list(dict.fromkeys(t.message for t in sync_failed_tasks or ()))
        error_message = f"{message}, reason: {','.join(reasons)}" if reasons else message
        sync_fail_tasks = list(sync_fail_tasks or ())
        if not sync_fail_tasks or all(t.completed() for t in sync_fail_tasks):
            self._set_operation_phase(OperationPhase.FAILED, error_message)
            return
        log.debug("Running sync fail tasks")
        if self._run_tasks(sync_fail_tasks, False) is RunState.FAILED:
            self._set_operation_phase(OperationPhase.FAILED, error_message)

    def set_resource_result(
        self,
        task: SyncTask,
        sync_status: Optional[ResultCode],
        operation_state: Optional[OperationPhase],
        message: str,
    ) -> None:
        """Record the outcome of ``task`` on the task and in the operation results."""
        task.sync_status = sync_status
        task.operation_state = operation_state
        if message:
            task.message = message
        with self._lock:
            key = task.result_key()
            existing = self.sync_res.get(key)
            if existing is not None:
                existing.status = task.sync_status
                existing.hook_phase = task.operation_state
                existing.message = task.message
                return
            self.sync_res[key] = ResourceSyncResult(
                resource_key=resource_key(task.obj()),
                version=task.version(),
                order=len(self.sync_res) + 1,
                status=task.sync_status,
                message=task.message,
                hook_type=task.hook_type(),
                hook_phase=task.operation_state,
                sync_phase=task.phase,
            )

    # lookups ---------------------------------------------------------------

    def delete_options(self) -> PropagationPolicy:
        """Propagation policy used when deleting resources."""
        return self.settings.prune_propagation_policy or PropagationPolicy.FOREGROUND

    def _target_objects(self) -> list[Resource]:
        objs = list(self.hooks)
        objs.extend(r.target for r in self.resources.values() if r.target is not None)
        return objs

    def has_crd_of_group_kind(self, group: str, kind: str) -> bool:
        return any(is_crd_of_group_kind(group, kind, o) for o in self._target_objects())

    def live_object(self, obj: Resource) -> Optional[Resource]:
        return live_object(self.resources, obj)

    def _health(self, obj: Resource) -> Optional[HealthStatus]:
        override = self.settings.health_override
        return override(obj) if override is not None else None

    def _hook_operation_phase(self, hook: Resource) -> tuple[OperationPhase, str]:
        health = self._health(hook)
        phase, message = OperationPhase.SUCCEEDED, f"{_name(hook)} created"
        if health is not None:
            if health.status in (HealthStatusCode.UNKNOWN, HealthStatusCode.DEGRADED):
                phase, message = OperationPhase.FAILED, health.message
            elif health.status in (
                HealthStatusCode.PROGRESSING,
                HealthStatusCode.SUSPENDED,
            ):
                phase, message = OperationPhase.RUNNING, health.message
            elif health.status is HealthStatusCode.HEALTHY:
                phase, message = OperationPhase.SUCCEEDED, health.message
        return phase, message

    def _filter_out_of_sync(self, tasks: Sequence[SyncTask]) -> list[SyncTask]:
        modified = self.settings.modification_result or {}
        kept = []
        for t in tasks:
            key = t.resource_key()
            if (
                not t.is_hook()
                and key in modified
                and not modified[key]
                and t.target_obj is not None
                and t.live_obj is not None
            ):
                log.debug("Skipping %s as resource was not modified", key)
                continue
            kept.append(t)
        return kept

    # cluster operations ------------------------------------------------------

    def _delete_resource(self, task: SyncTask) -> None:
        gvk = task.group_version_kind()
        self.client.server_resource(gvk, "delete")
        self.client.delete_resource(
            gvk, task.name(), task.namespace(), self.delete_options().value
        )

    def _delete_hooks(self, tasks: Sequence[SyncTask]) -> None:
        for task in tasks:
            try:
                self._delete_resource(task)
            except NotFoundError:
                pass
            except ClusterError as err:
                self.set_resource_result(
                    task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                )

    def _ensure_crd_ready(self, name: str) -> None:
        deadline = time.monotonic() + CRD_READINESS_TIMEOUT
        while True:
            if self.client.crd_established(name):
                return
            if time.monotonic() >= deadline:
                raise TimeoutError(f"CRD {name} is not established")
            time.sleep(_CRD_POLL_INTERVAL)

    def _use_server_side_apply(self, target: Resource) -> bool:
        if self.settings.dry_run:
            return False
        if has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_SERVER_SIDE_APPLY
        ):
            return False
        return self.settings.server_side_apply or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_SERVER_SIDE_APPLY
        )

    def _apply_object(
        self, t: SyncTask, dry_run: bool, validate: bool
    ) -> tuple[ResultCode, str]:
        target = t.target_obj
        replace = self.settings.replace or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_REPLACE
        )
        force = self.settings.force or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_FORCE
        )
        try:
            if not replace:
                message = self.client.apply_resource(
                    target,
                    dry_run=dry_run,
                    force=force,
                    validate=validate,
                    server_side_apply=self._use_server_side_apply(target),
                    manager=self.settings.server_side_apply_manager,
                )
            elif t.live_obj is None:
                message = self.client.create_resource(
                    target, dry_run=dry_run, validate=validate
                )
            elif _is_crd(target) or target.get("kind") == NAMESPACE_KIND:
                # Replacing these would delete everything that depends on them.
                update = copy.deepcopy(dict(target))
                metadata = dict(update.get("metadata") or {})
                version = (t.live_obj.get("metadata") or {}).get("resourceVersion")
                if version:
                    metadata["resourceVersion"] = version
                update["metadata"] = metadata
                self.client.update_resource(update, dry_run=dry_run)
                message = f"{target.get('kind')}/{_name(target)} updated"
            else:
                message = self.client.replace_resource(
                    target, dry_run=dry_run, force=force
                )
        except ClusterError as err:
            return ResultCode.SYNC_FAILED, str(err)
        if _is_crd(target) and not dry_run:
            try:
                self._ensure_crd_ready(_name(target))
            except (ClusterError, TimeoutError) as err:
                log.error("failed to ensure that CRD %s is ready: %s", _name(target), err)
        return ResultCode.SYNCED, message

    def _prune_object(
        self, live: Resource, prune: bool, dry_run: bool
    ) -> tuple[ResultCode, str]:
        if not prune:
            return ResultCode.PRUNE_SKIPPED, "ignored (requires pruning)"
        if has_annotation_option(live, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_PRUNE):
            return ResultCode.PRUNE_SKIPPED, "ignored (no prune)"
        if dry_run:
            return ResultCode.PRUNED, "pruned (dry run)"
        # An object already being deleted is left alone to avoid an update loop.
        if not _deletion_timestamp(live):
            try:
                self.client.delete_resource(
                    group_version_kind(live),
                    _name(live),
                    (live.get("metadata") or {}).get("namespace") or "",
                    self.delete_options().value,
                )
            except ClusterError as err:
                return ResultCode.SYNC_FAILED, str(err)
        return ResultCode.PRUNED, "pruned"

    # running tasks -----------------------------------------------------------

    def _run_tasks(self, tasks: Sequence[SyncTask], dry_run: bool) -> RunState:
        dry_run = dry_run or self.settings.dry_run
        prune_tasks = [t for t in tasks if t.is_prune()]
        create_tasks = [t for t in tasks if not t.is_prune()]

        if not self.settings.prune_confirmed:
            needing = [
                f"{t.obj().get('apiVersion') or ''}/{t.kind()}/{t.name()}"
                for t in prune_tasks
                if has_annotation_option(
                    t.live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_PRUNE_REQUIRE_CONFIRM
                )
            ]
            if needing:
                more = f" and {len(needing) - 1} more resources" if len(needing) > 1 else ""
                self.message = f"Waiting for pruning confirmation of {needing[0]}{more}"
                return RunState.PENDING

        state = RunState.SUCCESSFUL
        outcomes = []
        for t in prune_tasks:
            result, message = self._prune_object(t.live_obj, self.settings.prune, dry_run)
            outcome = state
            if result is ResultCode.SYNC_FAILED:
                outcome = RunState.FAILED
                log.info("Pruning failed: %s", message)
            if not dry_run or self.settings.dry_run or result is ResultCode.SYNC_FAILED:
                self.set_resource_result(t, result, _OPERATION_PHASES[result], message)
            outcomes.append(outcome)
        state = merge_run_states(state, outcomes)
        if state is not RunState.SUCCESSFUL:
            return state

        outcomes = []
        for t in (t for t in create_tasks if t.delete_before_creation()):
            outcome = state
            if not dry_run:
                try:
                    self._delete_resource(t)
                    outcome = RunState.PENDING
                except NotFoundError:
                    pass
                except ClusterError as err:
                    outcome = RunState.FAILED
                    self.set_resource_result(
                        t, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                    )
            outcomes.append(outcome)
        state = merge_run_states(state, outcomes)
        if state is not RunState.SUCCESSFUL:
            return state

        group: list[SyncTask] = []
        for t in create_tasks:
            if group and group[0].kind() != t.kind():
                state = self._process_create_tasks(state, group, dry_run)
                group = [t]
            else:
                group.append(t)
        if group:
            state = self._process_create_tasks(state, group, dry_run)
        return state

    def _process_create_tasks(
        self, state: RunState, tasks: Sequence[SyncTask], dry_run: bool
    ) -> RunState:
        outcomes = []
        for t in tasks:
            if dry_run and t.skip_dry_run:
                continue
            validate = self.settings.validate and not has_annotation_option(
                t.target_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_VALIDATION
            )
            result, message = self._apply_object(t, dry_run, validate)
            outcome = state
            if result is ResultCode.SYNC_FAILED:
                log.info("Apply failed: %s", message)
                outcome = RunState.FAILED
            if not dry_run or self.settings.dry_run or result is ResultCode.SYNC_FAILED:
                phase = _OPERATION_PHASES[result]
                # Nothing is created in a dry run, so a running apply has succeeded.
                if self.settings.dry_run and phase is OperationPhase.RUNNING:
                    phase = OperationPhase.SUCCEEDED
                self.set_resource_result(t, result, phase, message)
            outcomes.append(outcome)
        return merge_run_states(state, outcomes)

    def _update_running_tasks(self, tasks: Sequence[SyncTask]) -> None:
        for task in tasks:
            if not (task.running() and task.live_obj is not None):
                continue
            if task.is_hook():
                try:
                    phase, message = self._hook_operation_phase(task.live_obj)
                except Exception as err:
                    self.set_resource_result(
                        task, None, OperationPhase.ERROR,
                        f"failed to get resource health: {err}",
                    )
                else:
                    self.set_resource_result(task, None, phase, message)
                continue
            try:
                health = self._health(task.live_obj)
            except Exception:
                continue
            if health is None:
                self.set_resource_result(
                    task, task.sync_status, OperationPhase.SUCCEEDED, task.message
                )
            elif health.status is HealthStatusCode.HEALTHY:
                self.set_resource_result(
                    task, task.sync_status, OperationPhase.SUCCEEDED, health.message
                )
            elif health.status is HealthStatusCode.DEGRADED:
                self.set_resource_result(
                    task, task.sync_status, OperationPhase.FAILED, health.message
                )

    # steps -------------------------------------------------------------------

    def sync(self) -> None:
        """Perform the next step of the operation and update its state."""
        tasks, ok = build_tasks(self)
        if not ok:
            self._set_operation_phase(
                OperationPhase.FAILED, "one or more synchronization tasks are not valid"
            )
            return

        if not self.started():
            dry_run_tasks = (
                self._filter_out_of_sync(tasks)
                if self.settings.apply_out_of_sync_only
                else tasks
            )
            if self._run_tasks(dry_run_tasks, True) is RunState.FAILED:
                self._set_operation_phase(
                    OperationPhase.FAILED, "one or more objects failed to apply (dry run)"
                )
                return

        self._update_running_tasks(tasks)

        multi_step = is_multi_step(tasks)
        running = [t for t in tasks if (multi_step or t.is_hook()) and t.running()]
        if running:
            self.set_running_phase(running, False)
            return

        pending_delete = [
            t for t in tasks
            if t.pruned() and t.live_obj is not None and _deletion_timestamp(t.live_obj)
        ]
        if pending_delete:
            self.set_running_phase(pending_delete, True)
            return

        hooks_delete_ok = [
            t for t in tasks
            if t.is_hook() and t.live_obj is not None and not t.running()
            and t.delete_on_phase_successful()
        ]
        hooks_delete_failed = [
            t for t in tasks
            if t.is_hook() and t.live_obj is not None and not t.running()
            and t.delete_on_phase_failed()
        ]

        sync_fail_tasks = [t for t in tasks if t.phase is SyncPhase.SYNC_FAIL]
        tasks = [t for t in tasks if t.phase is not SyncPhase.SYNC_FAIL]
        sync_failed = [t for t in tasks if t.sync_status is ResultCode.SYNC_FAILED]

        if any(t.completed() and not t.successful() for t in tasks):
            self._delete_hooks(hooks_delete_failed)
            self.set_operation_failed(
                sync_fail_tasks, sync_failed,
                "one or more synchronization tasks completed unsuccessfully",
            )
            return

        tasks = [t for t in tasks if t.pending()]
        if self.settings.apply_out_of_sync_only:
            tasks = self._filter_out_of_sync(tasks)

        if not tasks:
            self._delete_hooks(hooks_delete_ok)
            self._set_operation_phase(
                OperationPhase.SUCCEEDED, "successfully synced (no more tasks)"
            )
            return

        phase, wave = tasks_phase(tasks), tasks_wave(tasks)
        final_wave = phase == last_phase(tasks) and wave == last_wave(tasks)
        remaining = [
            t for t in tasks if t.phase != phase or t.wave() != wave or t.is_hook()
        ]
        tasks = [t for t in tasks if t.phase == phase and t.wave() == wave]

        self._set_operation_phase(OperationPhase.RUNNING, "one or more tasks are running")
        run_state = self._run_tasks(tasks, False)

        hook = self.settings.sync_wave_hook
        if hook is not None and run_state is not RunState.FAILED:
            try:
                hook(phase, wave, final_wave)
            except Exception as err:
                self._delete_hooks(hooks_delete_failed)
                self._set_operation_phase(
                    OperationPhase.FAILED, f"SyncWaveHook failed: {err}"
                )
                log.error("SyncWaveHook failed: %s", err)
                return

        if run_state is RunState.FAILED:
            failed = [t for t in tasks if t.sync_status is ResultCode.SYNC_FAILED]
            self._delete_hooks(hooks_delete_failed)
            self.set_operation_failed(
                sync_fail_tasks, failed, "one or more objects failed to apply"
            )
        elif run_state is RunState.SUCCESSFUL:
            if not remaining:
                self._delete_hooks(hooks_delete_ok)
                self._set_operation_phase(
                    OperationPhase.SUCCEEDED, "successfully synced (all tasks run)"
                )
            else:
                self.set_running_phase(remaining, False)
        else:
            self.set_running_phase(
                [t for t in tasks if t.delete_on_phase_completion()], True
            )

    def terminate(self) -> None:
        """Delete running hooks and mark the operation terminated."""
        ok = True
        tasks, _ = build_tasks(self)
        for task in tasks:
            if not task.is_hook() or task.live_obj is None:
                continue
            try:
                phase, message = self._hook_operation_phase(task.live_obj)
            except Exception as err:
                self._set_operation_phase(
                    OperationPhase.ERROR, f"Failed to get hook health: {err}"
                )
                return
            if phase is OperationPhase.RUNNING:
                try:
                    self._delete_resource(task)
                except ClusterError as err:
                    self.set_resource_result(
                        task, None, OperationPhase.FAILED, f"Failed to delete: {err}"
                    )
                    ok = False
                else:
                    self.set_resource_result(task, None, OperationPhase.SUCCEEDED, "Deleted")
            else:
                self.set_resource_result(task, None, phase, message)
        if ok:
            self._set_operation_phase(OperationPhase.FAILED, "Operation terminated")
        else:
            self._set_operation_phase(
                OperationPhase.ERROR, "Operation termination had errors"
            )