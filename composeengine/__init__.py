"""Reconcile multi-container application projects against a container engine."""

__version__ = "0.1.0"

__all__ = [
    "containers",
    "convergence",
    "create",
    "dependencies",
    "down",
    "engine",
    "errors",
    "filters",
    "images",
    "kill",
    "model",
    "mounts",
    "resources",
    "startup",
]