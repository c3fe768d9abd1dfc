"""Exceptions that abort a diagnostic run.

Everything else the tool encounters is data: it becomes a Finding.
"""

from __future__ import annotations


class VolDiagError(Exception):
    """Base class for run-level failures."""


class ConfigError(VolDiagError):
    """Required configuration is missing or invalid."""


class ClusterUnreachableError(VolDiagError):
    """A kubeconfig context could not be loaded or the API server did not answer."""

    def __init__(self, context: str, reason: str = ""):
        self.context = context
        self.reason = reason
        msg = f"Cannot connect to cluster with context '{context}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class NamespaceNotFoundError(VolDiagError):
    """The management namespace does not exist."""

    def __init__(self, namespace: str, context: str = ""):
        self.namespace = namespace
        self.context = context
        where = f" in context '{context}'" if context else ""
        super().__init__(f"Namespace '{namespace}' does not exist{where}")
