"""Configuration management for kub-voldiag."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from kub_voldiag.errors import ConfigError

CONFIG_FILENAME = ".kub-voldiag.yaml"
DEFAULT_PATHS = [
    Path.cwd() / CONFIG_FILENAME,
    Path.home() / CONFIG_FILENAME,
    Path.home() / ".config" / "kub-voldiag" / "config.yaml",
]

DEFAULT_CLUSTER_LABEL = "guestcluster.harvesterhci.io/name"
DEFAULT_BLOCK_STORAGE_NAMESPACE = "longhorn-system"


@dataclass
class Config:
    """Application configuration."""

    # Kubernetes
    kubeconfig: str = ""
    downstream_context: str = ""
    management_context: str = ""
    management_namespace: str = ""

    # Management-cluster conventions
    cluster_name: str = ""  # Empty = downstream context
    cluster_label: str = DEFAULT_CLUSTER_LABEL
    block_storage_namespace: str = DEFAULT_BLOCK_STORAGE_NAMESPACE
    hotplug_pod_prefix: str = "hp-volume-"
    launcher_prefix: str = "virt-launcher-"

    # Execution
    workers: int = 8
    timeout: float = 0.0  # seconds, 0 = no limit
    request_timeout: float = 10.0  # seconds per management-cluster lookup

    # Output
    verbose: bool = False
    log_file: str = ""  # Empty = ./volume-diagnostic-<context>-<timestamp>.log

    @property
    def effective_cluster_name(self) -> str:
        return self.cluster_name or self.downstream_context

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Config:
        """Create config from a dictionary (e.g., parsed YAML)."""
        return cls(
            kubeconfig=data.get("kubeconfig", ""),
            downstream_context=data.get("downstream_context", ""),
            management_context=data.get("management_context", ""),
            management_namespace=data.get("management_namespace", ""),
            cluster_name=data.get("cluster_name", ""),
            cluster_label=data.get("cluster_label", DEFAULT_CLUSTER_LABEL),
            block_storage_namespace=data.get(
                "block_storage_namespace", DEFAULT_BLOCK_STORAGE_NAMESPACE
            ),
            hotplug_pod_prefix=data.get("hotplug_pod_prefix", "hp-volume-"),
            launcher_prefix=data.get("launcher_prefix", "virt-launcher-"),
            workers=int(data.get("workers", 8)),
            timeout=float(data.get("timeout", 0.0)),
            request_timeout=float(data.get("request_timeout", 10.0)),
            verbose=bool(data.get("verbose", False)),
            log_file=data.get("log_file", ""),
        )

    @classmethod
    def load(cls, path: str | None = None) -> Config:
        """Load config from file, with env var overrides."""
        config_data: dict[str, Any] = {}

        # Find config file
        if path:
            config_path = Path(path)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_path}")
        else:
            config_path = None
            for p in DEFAULT_PATHS:
                if p.exists():
                    config_path = p
                    break

        if config_path and config_path.exists():
            with open(config_path) as f:
                try:
                    config_data = yaml.safe_load(f) or {}
                except yaml.YAMLError as exc:
                    raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(config_data, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")

        try:
            config = cls.from_dict(config_data)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value in {config_path}: {exc}") from exc

        # Environment variable overrides
        if env_ctx := os.environ.get("KUB_VOLDIAG_DOWNSTREAM_CONTEXT"):
            config.downstream_context = env_ctx

        if env_ctx := os.environ.get("KUB_VOLDIAG_MANAGEMENT_CONTEXT"):
            config.management_context = env_ctx

        if env_ns := os.environ.get("KUB_VOLDIAG_NAMESPACE"):
            config.management_namespace = env_ns

        if env_workers := os.environ.get("KUB_VOLDIAG_WORKERS"):
            try:
                config.workers = int(env_workers)
            except ValueError as exc:
                raise ConfigError(f"KUB_VOLDIAG_WORKERS must be an integer: {env_workers}") from exc

        return config

    def validate(self) -> None:
        """Raise ConfigError if required settings are missing or invalid."""
        missing = [
            flag
            for flag, value in (
                ("--downstream", self.downstream_context),
                ("--management", self.management_context),
                ("--namespace", self.management_namespace),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"Missing required arguments: {', '.join(missing)}")
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1 (got {self.workers})")
        if self.timeout < 0:
            raise ConfigError(f"timeout must not be negative (got {self.timeout})")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be positive (got {self.request_timeout})")
