"""Upstream Istio backend."""
