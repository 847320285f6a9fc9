"""Image certification inventory for Kubernetes clusters."""

__version__ = "0.3.0"
