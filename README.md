# kubesync

`kubesync` plans and runs the synchronization of Kubernetes resources. It
applies manifests, prunes objects that no longer belong, and runs resource
hooks. Everything is ordered by phase, wave, kind and name.

Manifests and live objects are plain dictionaries shaped like the Kubernetes
JSON representation (`apiVersion`, `kind`, `metadata`, ...). All work against
a cluster goes through a `ClusterClient` that you supply.

## Features

- **Basic syncing**: each target resource is applied, created, replaced or
  updated. The order is fixed by kind, with namespaces first and workloads
  later.
- **Pruning**: a live resource with no target is deleted when pruning is
  enabled. Otherwise it is reported as `PruneSkipped`.
- **Hooks**: a resource annotated with `argocd.argoproj.io/hook` takes part in
  the phases it names: `PreSync`, `Sync`, `PostSync` or `SyncFail`. A resource
  marked only `Skip` is not a hook and is not synced at all. Helm hooks
  (`helm.sh/hook`: `pre-install`, `pre-upgrade`, `post-install`,
  `post-upgrade`) are recognised whenever no native hook type is given.
  Unnamed hooks get a name built from `generateName`, the revision, the phase
  and the start time.
- **Hook delete policies**: set with `argocd.argoproj.io/hook-delete-policy`
  (`HookSucceeded`, `HookFailed`, `BeforeHookCreation`) or with
  `helm.sh/hook-delete-policy`. When no policy is given, the default is
  `BeforeHookCreation`.
- **Sync waves**: `argocd.argoproj.io/sync-wave` groups resources into batches
  that run one after another. A Helm hook weight is used when no wave is set.
  Prune tasks run in reverse wave order. Pruning can be moved past the last
  sync wave with `prune_last` or with the `PruneLast=true` option.
- **Sync options** in `argocd.argoproj.io/sync-options`:

  | Option | Effect |
  | --- | --- |
  | `Prune=false` | never prune the resource |
  | `Prune=confirm` | wait until pruning is confirmed |
  | `PruneLast=true` | prune the resource after the last sync wave |
  | `Validate=false` | apply without validation |
  | `Replace=true` | replace instead of apply |
  | `Force=true` | force the apply or replace |
  | `ServerSideApply=true` | use server-side apply |
  | `ServerSideApply=false` | do not use server-side apply |
  | `SkipDryRunOnMissingResource=true` | skip the dry run when the resource type is unknown |

## Installing

```
pip install kubesync
```

## Looking at hooks

```python
from kubesync.hooks import is_hook, hook_types
from kubesync.phases import sync_phases

job = {
    "apiVersion": "batch/v1",
    "kind": "Job",
    "metadata": {
        "generateName": "schema-migrate-",
        "annotations": {"argocd.argoproj.io/hook": "PreSync,PostSync"},
    },
}

assert is_hook(job)
print(sorted(t.value for t in hook_types(job)))   # ['PostSync', 'PreSync']
print(sorted(p.value for p in sync_phases(job)))  # ['PostSync', 'PreSync']
```

## Modules

- `kubesync.common` holds the annotation keys and sync option strings. It also
  has the enums `HookType`, `HookDeletePolicy`, `SyncPhase`, `OperationPhase`
  and `ResultCode`, the types `ResourceKey`, `GroupVersionKind` and
  `ResourceSyncResult`, and the helpers `resource_key`, `group_version_kind`
  and `get_annotations`.
- `kubesync.annotations` provides `get_annotation_csvs` and
  `has_annotation_option`.
- `kubesync.helm` recognises Helm hook types, delete policies and weights.
- `kubesync.hooks` provides `is_hook`, `skip`, `hook_types` and
  `delete_policies`.
- `kubesync.ignore` provides `ignore`, which is true for a hook with no
  recognisable type.
- `kubesync.phases` provides `sync_phases`.
- `kubesync.tasks` provides `SyncTask`, `sync_wave` and `sort_tasks`.
- `kubesync.reconcile` provides `reconcile`, `split_hooks`,
  `dedup_live_resources`, `ReconciliationResult` and `ResourceInfoProvider`.
- `kubesync.cluster` provides the `ClusterClient` protocol and the errors
  `ClusterError`, `NotFoundError` and `UnauthorizedError`. It also provides
  `HealthStatus`, `HealthStatusCode`, `APIResource`, `RunState` and
  `merge_run_states`.
- `kubesync.settings` provides `SyncSettings`, `PropagationPolicy`,
  `DiffResult`, `group_resources` and `group_diff_results`.
- `kubesync.planner` provides `build_tasks`, which turns an operation into
  sorted, validated tasks. It also provides `reorder_prune_waves`.
- `kubesync.context` provides `SyncContext`, which runs the operation.

## Reconciling

`reconcile(target_objs, live_obj_by_key, namespace, res_info)` pairs each
target manifest with its live counterpart.

- Live objects are keyed by `ResourceKey`.
- `res_info.is_namespaced(group, kind)` reports whether a kind is namespaced.
  If it raises, the object is looked up both with and without a namespace.
- Live objects that share a UID are de-duplicated. At least one duplicate
  always stays.
- Live objects with no target come last, paired with `None`.
- Hooks are returned separately, and ignored hooks are dropped.

## Running a sync

A `SyncContext` is built from a `ClusterClient`, a revision, a
`ReconciliationResult`, a namespace and `SyncSettings`. It is driven step by
step:

- `sync()` performs the next step.
- `get_state()` returns the operation phase, the message and the per-resource
  results in the order they were added.
- `terminate()` deletes running hooks and marks the operation terminated.

The first step dry-runs every task. Each later step runs the next phase and
wave that still has pending work.

```python
from kubesync.cluster import APIResource, NotFoundError
from kubesync.context import SyncContext
from kubesync.reconcile import ReconciliationResult
from kubesync.settings import SyncSettings


class InMemoryClient:
    def server_resource(self, gvk, verb):
        return APIResource(kind=gvk.kind, group=gvk.group, version=gvk.version)

    def get_resource(self, gvk, name, namespace):
        raise NotFoundError(name)

    def apply_resource(self, obj, *, dry_run, force, validate,
                       server_side_apply, manager):
        return f"{obj['kind']}/{obj['metadata']['name']} configured"

    def replace_resource(self, obj, *, dry_run, force):
        return "replaced"

    def create_resource(self, obj, *, dry_run, validate):
        return "created"

    def update_resource(self, obj, *, dry_run):
        return obj

    def delete_resource(self, gvk, name, namespace, propagation_policy):
        pass

    def crd_established(self, name):
        return True


pod = {"apiVersion": "v1", "kind": "Pod", "metadata": {"name": "web"}}
ctx = SyncContext(
    InMemoryClient(),
    revision="abc1234",
    reconciliation=ReconciliationResult(target=[pod], live=[None]),
    namespace="default",
    settings=SyncSettings(prune=True),
)
ctx.sync()
phase, message, results = ctx.get_state()
print(phase.value, message)  # Succeeded successfully synced (all tasks run)
print(results[0].status.value, results[0].message)  # Synced Pod/web configured
```

Notes on `SyncSettings`:

- Callbacks signal failure by raising. This covers `permission_validator`,
  `sync_namespace`, `sync_wave_hook` and `resources_filter`.
- A resource-type lookup that fails with `UnauthorizedError` is retried up to
  five times.
- With `sync_namespace` set and a namespace given, the namespace can be created
  automatically in the `PreSync` phase.
- `apply_out_of_sync_only` together with `modification_result` skips resources
  that are known to be unchanged. `group_diff_results` builds that mapping
  from `DiffResult` values.

## What it does not do

- It contains no Kubernetes client. Discovery, apply, delete and every other
  cluster call go through the `ClusterClient` you provide.
- It has no built-in health assessment. The health of live resources and hooks
  comes only from `SyncSettings.health_override`. Without one, an applied
  resource counts as healthy once its step completes.
- It has no command-line tool and no background agent. You call `sync()`
  yourself, as often as you like.

## Running the tests

```
pip install -e .[test]
pytest
```