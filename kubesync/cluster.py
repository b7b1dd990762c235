"""What the sync engine needs from a cluster, and the errors it can raise."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Protocol

from kubesync.common import GroupVersionKind, Resource


class ClusterError(Exception):
    """An operation against the cluster failed."""


class NotFoundError(ClusterError):
    """The requested resource or resource type does not exist."""


class UnauthorizedError(ClusterError):
    """The cluster refused the request for lack of credentials."""


class HealthStatusCode(str, Enum):
    """Health of a live resource."""

    UNKNOWN = "Unknown"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    SUSPENDED = "Suspended"
    DEGRADED = "Degraded"
    MISSING = "Missing"


@dataclass(frozen=True)
class HealthStatus:
    """Health code of a resource and the message explaining it."""

    status: HealthStatusCode
    message: str = ""


@dataclass(frozen=True)
class APIResource:
    """A resource type served by the cluster."""

    name: str = ""
    kind: str = ""
    group: str = ""
    version: str = ""
    namespaced: bool = True
    verbs: tuple[str, ...] = field(default_factory=tuple)


class ClusterClient(Protocol):
    """Operations the sync engine performs against a cluster.

    Failures are raised as :class:`ClusterError` or one of its subclasses.
    """

    def server_resource(self, gvk: GroupVersionKind, verb: str) -> APIResource:
        """The served resource type for ``gvk`` supporting ``verb``."""
        ...

    def get_resource(
        self, gvk: GroupVersionKind, name: str, namespace: str
    ) -> Optional[Resource]:
        """The live object, raising NotFoundError if it does not exist."""
        ...

    def apply_resource(
        self,
        obj: Resource,
        *,
        dry_run: bool,
        force: bool,
        validate: bool,
        server_side_apply: bool,
        manager: str,
    ) -> str:
        """Apply ``obj`` and return a message describing the outcome."""
        ...

    def replace_resource(self, obj: Resource, *, dry_run: bool, force: bool) -> str:
        """Replace the live object with ``obj``."""
        ...

    def create_resource(self, obj: Resource, *, dry_run: bool, validate: bool) -> str:
        """Create ``obj``."""
        ...

    def update_resource(self, obj: Resource, *, dry_run: bool) -> Resource:
        """Update the live object with ``obj`` and return the result."""
        ...

    def delete_resource(
        self,
        gvk: GroupVersionKind,
        name: str,
        namespace: str,
        propagation_policy: str,
    ) -> None:
        """Delete the named object."""
        ...

    def crd_established(self, name: str) -> bool:
        """Whether the named custom resource definition is established."""
        ...


class RunState(Enum):
    """Outcome of running a batch of tasks."""

    SUCCESSFUL = 0
    PENDING = 1
    FAILED = 2


def merge_run_states(current: RunState, results: Iterable[RunState]) -> RunState:
    """Combine ``results`` into ``current``: pending overrides success, failure is final."""
    state = current
    for result in results:
        if state is RunState.FAILED:
            break
        if state is RunState.PENDING:
            if result is RunState.FAILED:
                state = RunState.FAILED
        elif result in (RunState.PENDING, RunState.FAILED):
            state = result
    return state