"""Cross-cluster volume attachment diagnostics for hotplug CSI storage."""

__version__ = "2.0.0"
