import pytest

from kubesync.cluster import (
    APIResource,
    ClusterError,
    HealthStatus,
    HealthStatusCode,
    NotFoundError,
)
from kubesync.common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    ANNOTATION_SYNC_OPTIONS,
    GroupVersionKind,
    OperationPhase,
    ResultCode,
)
from kubesync.context import SyncContext
from kubesync.reconcile import ReconciliationResult
from kubesync.settings import PropagationPolicy, SyncSettings
from kubesync.tasks import SyncTask

NS = "fake-argocd-ns"
KNOWN = {("", "Pod"), ("", "Service"), ("", "Namespace"), ("apps", "Deployment")}


class FakeClient:
    def __init__(self, errors=None):
        self.errors = errors or {}
        self.commands = {}
        self.last_validate = None
        self.last_force = None
        self.last_ssa = None
        self.deleted = []

    def server_resource(self, gvk, verb):
        if (gvk.group, gvk.kind) not in KNOWN:
            raise NotFoundError(f"{gvk.kind} not found")
        return APIResource(kind=gvk.kind, group=gvk.group, version=gvk.version)

    def get_resource(self, gvk, name, namespace):
        raise NotFoundError(name)

    def _record(self, obj, command):
        name = obj["metadata"]["name"]
        self.commands[name] = command
        if name in self.errors:
            raise ClusterError(self.errors[name])
        return ""

    def apply_resource(self, obj, *, dry_run, force, validate, server_side_apply, manager):
        self.last_validate, self.last_force, self.last_ssa = validate, force, server_side_apply
        return self._record(obj, "apply")

    def replace_resource(self, obj, *, dry_run, force):
        self.last_force = force
        return self._record(obj, "replace")

    def create_resource(self, obj, *, dry_run, validate):
        self.last_validate = validate
        return self._record(obj, "create")

    def update_resource(self, obj, *, dry_run):
        self._record(obj, "update")
        return obj

    def delete_resource(self, gvk, name, namespace, propagation_policy):
        if name in self.errors:
            raise ClusterError(self.errors[name])
        if name not in {o for o in self.existing}:
            raise NotFoundError(name)
        self.deleted.append((name, propagation_policy))

    existing = ()

    def crd_established(self, name):
        return True


class ExistingClient(FakeClient):
    existing = ("my-pod", "my-service")


def pod(name="my-pod", annotations=None, namespace=None):
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if annotations:
        metadata["annotations"] = annotations
    return {"apiVersion": "v1", "kind": "Pod", "metadata": metadata}


def service(name="my-service", namespace=None):
    obj = pod(name, namespace=namespace)
    obj["kind"] = "Service"
    return obj


def make(live, target, client=None, settings=None, hooks=()):
    return SyncContext(
        client or FakeClient(),
        "FooBarBaz",
        ReconciliationResult(live=list(live), target=list(target), hooks=list(hooks)),
        NS,
        settings or SyncSettings(),
    )


def test_create_in_sorted_order():
    ctx = make([None, None], [pod(), service()])
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    assert len(results) == 2
    assert [r.resource_key.kind for r in results] == ["Service", "Pod"]
    assert all(r.status is ResultCode.SYNCED and r.message == "" for r in results)


def test_prune_successfully():
    client = ExistingClient()
    ctx = make([None, pod(namespace=NS)], [service(), None], client, SyncSettings(prune=True))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    by_kind = {r.resource_key.kind: r for r in results}
    assert by_kind["Pod"].status is ResultCode.PRUNED
    assert by_kind["Pod"].message == "pruned"
    assert by_kind["Service"].status is ResultCode.SYNCED
    assert client.deleted == [("my-pod", "Foreground")]


def test_create_failure():
    ctx = make([None], [service()], FakeClient({"my-service": "foo"}))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert len(results) == 1
    assert results[0].status is ResultCode.SYNC_FAILED
    assert results[0].message == "foo"


def test_not_permitted():
    def deny(obj, res):
        raise PermissionError("not permitted in project")

    ctx = make([None, None], [pod(namespace="kube-system"), service()],
               settings=SyncSettings(permission_validator=deny))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert "not permitted in project" in results[0].message


def test_do_not_prune_prune_false():
    live = pod(namespace=NS, annotations={ANNOTATION_SYNC_OPTIONS: "Prune=false"})
    ctx = make([live], [None], settings=SyncSettings(prune=True))
    ctx.sync()
    phase, _, results = ctx.get_state()
    assert phase is OperationPhase.SUCCEEDED
    assert results[0].status is ResultCode.PRUNE_SKIPPED
    assert results[0].message == "ignored (no prune)"
    ctx.sync()
    assert ctx.get_state()[0] is OperationPhase.SUCCEEDED


@pytest.mark.parametrize(
    "annotation,want", [("", True), ("Validate=true", True), ("Validate=false", False)]
)
def test_validate_option(annotation, want):
    client = FakeClient()
    obj = pod(namespace=NS, annotations={ANNOTATION_SYNC_OPTIONS: annotation})
    make([obj], [obj], client).sync()
    assert client.last_validate is want


@pytest.mark.parametrize(
    "annotation,live,command,force",
    [
        (None, True, "apply", False),
        ("Replace=true", True, "replace", False),
        ("Replace=true", False, "create", None),
        ("Force=true", True, "apply", True),
        ("Force=true,Replace=true", True, "replace", True),
    ],
)
def test_replace_and_force(annotation, live, command, force):
    client = FakeClient()
    ann = {ANNOTATION_SYNC_OPTIONS: annotation} if annotation else None
    target = pod(namespace=NS, annotations=ann)
    make([pod(namespace=NS) if live else None], [target], client).sync()
    assert client.commands["my-pod"] == command
    assert client.last_force is force


def test_server_side_apply_annotation():
    client = FakeClient()
    target = pod(namespace=NS, annotations={ANNOTATION_SYNC_OPTIONS: "ServerSideApply=true"})
    make([pod(namespace=NS)], [target], client).sync()
    assert client.last_ssa is True


def test_sync_wave_hook_fail():
    def hook(phase, wave, final):
        raise RuntimeError("intentional error")

    ctx = make([None], [pod("pod-1")], settings=SyncSettings(sync_wave_hook=hook))
    ctx.sync()
    phase, msg, results = ctx.get_state()
    assert phase is OperationPhase.FAILED
    assert msg == "SyncWaveHook failed: intentional error"
    assert results[0].hook_phase is OperationPhase.RUNNING


def test_sync_wave_hook_called_with_first_wave():
    calls = []
    p1 = pod("pod-1", annotations={"argocd.argoproj.io/sync-wave": "-1"})
    ctx = make([None, None], [p1, pod("pod-2")],
               settings=SyncSettings(sync_wave_hook=lambda *a: calls.append(a)))
    ctx.sync()
    assert [(c[0].value, c[1], c[2]) for c in calls] == [("Sync", -1, False)]
    ctx.sync()
    assert len(calls) == 1


def test_before_hook_creation():
    hook = pod(namespace=NS, annotations={
        ANNOTATION_KEY_HOOK: "Sync",
        ANNOTATION_KEY_HOOK_DELETE_POLICY: "BeforeHookCreation",
    })
    ctx = make([hook], [None], hooks=[hook])
    ctx.sync()
    _, _, results = ctx.get_state()
    assert len(results) == 1
    assert results[0].message == ""
    assert ctx.message == "waiting for completion of hook /Pod/my-pod"


def test_prune_requires_confirmation():
    live = pod(namespace=NS, annotations={ANNOTATION_SYNC_OPTIONS: "Prune=confirm"})
    ctx = make([live], [None], settings=SyncSettings(prune=True))
    ctx.sync()
    assert ctx.message == "Waiting for pruning confirmation of v1/Pod/my-pod"
    assert ctx.get_state()[2] == []


def test_terminate_deletes_running_hooks():
    hook = pod(namespace=NS, annotations={ANNOTATION_KEY_HOOK: "Sync"})
    settings = SyncSettings(
        health_override=lambda o: HealthStatus(HealthStatusCode.PROGRESSING, "test")
    )
    client = ExistingClient()
    ctx = make([hook], [None], client, settings, hooks=[hook])
    ctx.terminate()
    phase, msg, results = ctx.get_state()
    assert (phase, msg) == (OperationPhase.FAILED, "Operation terminated")
    assert results[0].message == "Deleted"
    assert client.deleted == [("my-pod", "Foreground")]


def test_set_running_phase_messages():
    ctx = make([], [])
    ctx.set_running_phase([SyncTask(phase="Sync", target_obj=pod()) for _ in range(3)], False)
    assert ctx.message == "waiting for healthy state of /Pod/my-pod and 2 more resources"
    ctx.set_running_phase([SyncTask(phase="Sync", target_obj=pod()) for _ in range(3)], True)
    assert ctx.message == "waiting for deletion of /Pod/my-pod and 2 more resources"
    hook = pod(annotations={ANNOTATION_KEY_HOOK: "SyncFail"})
    ctx.set_running_phase([SyncTask(phase="SyncFail", target_obj=hook)], False)
    assert ctx.message == "waiting for completion of hook /Pod/my-pod"


@pytest.mark.parametrize(
    "messages,expected",
    [
        (["namespace not found"], "one or more objects failed to apply, reason: namespace not found"),
        (["namespace not found"] * 2, "one or more objects failed to apply, reason: namespace not found"),
        ([], "one or more objects failed to apply"),
    ],
)
def test_set_operation_failed(messages, expected):
    ctx = make([], [])
    tasks = [SyncTask(phase="Sync", message=m) for m in messages]
    ctx.set_operation_failed(None, tasks, "one or more objects failed to apply")
    assert ctx.message == expected
    assert ctx.phase is OperationPhase.FAILED


def test_delete_options():
    assert make([], []).delete_options() is PropagationPolicy.FOREGROUND
    ctx = make([], [], settings=SyncSettings(prune_propagation_policy=PropagationPolicy.BACKGROUND))
    assert ctx.delete_options() is PropagationPolicy.BACKGROUND


def test_has_crd_of_group_kind():
    crd = {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": "testcrds.argoproj.io"},
        "spec": {"group": "argoproj.io", "names": {"kind": "TestCrd"}},
    }
    ctx = make([None], [crd])
    assert ctx.has_crd_of_group_kind("argoproj.io", "TestCrd")
    assert not ctx.has_crd_of_group_kind("", "")


def test_live_object_matches_cluster_scoped_key():
    found = pod()
    ctx = make([found], [None])
    assert ctx.live_object(pod(namespace="my-ns")) is found
    assert ctx.live_object({"apiVersion": "v1", "kind": "Service", "metadata": {}}) is None
    assert GroupVersionKind("", "v1", "Pod").kind == "Pod"