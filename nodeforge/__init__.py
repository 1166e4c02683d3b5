"""nodeforge: container runtime and CNI provisioning for Kubernetes nodes."""

__version__ = '0.1.0'
