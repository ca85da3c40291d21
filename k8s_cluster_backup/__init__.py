"""Backup and restore for a self-managed Kubernetes cluster on EC2."""

__version__ = "0.3.0"
