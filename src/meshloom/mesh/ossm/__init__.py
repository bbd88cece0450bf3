"""OpenShift Service Mesh backend."""
