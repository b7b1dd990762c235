"""Which sync phases a resource takes part in."""

from __future__ import annotations

from kubesync import hooks
from kubesync.common import HookType, Resource, SyncPhase

_PHASE_OF_HOOK = {
    HookType.PRE_SYNC: SyncPhase.PRE_SYNC,
    HookType.SYNC: SyncPhase.SYNC,
    HookType.POST_SYNC: SyncPhase.POST_SYNC,
    HookType.SYNC_FAIL: SyncPhase.SYNC_FAIL,
}


def sync_phases(obj: Resource) -> list[SyncPhase]:
    """Distinct phases of ``obj``: none if skipped, its hook phases, or just Sync."""
    if hooks.skip(obj):
        return []
    if hooks.is_hook(obj):
        phases = (_PHASE_OF_HOOK.get(t) for t in hooks.hook_types(obj))
        return list(dict.fromkeys(p for p in phases if p is not None))
    return [SyncPhase.SYNC]