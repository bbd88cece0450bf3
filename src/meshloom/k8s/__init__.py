"""Kubernetes access."""
