"""Prepare raw block devices on a Kubernetes node as local persistent volumes."""

__version__ = "0.1.0"
