"""Phase- and wave-ordered synchronization of Kubernetes resources."""

__version__ = "0.1.0"

__all__ = [
    "annotations",
    "cluster",
    "common",
    "context",
    "helm",
    "hooks",
    "ignore",
    "phases",
    "planner",
    "reconcile",
    "settings",
    "tasks",
]