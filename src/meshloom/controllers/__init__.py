"""Reconcilers for the hub and spoke roles."""

from meshloom.controllers.deploy import MeshDeployController
from meshloom.controllers.discovery import MeshDiscoveryController
from meshloom.controllers.federation import MeshFederationController
from meshloom.controllers.meshdeployment import MeshDeploymentController
from meshloom.controllers.peering import OSSMFederationAgent
from meshloom.controllers.runner import Controller, ControllerRunner, Request, WatchSource, WorkQueue
from meshloom.controllers.trust import IstioTrustAgent

__all__ = [
    "Controller",
    "ControllerRunner",
    "IstioTrustAgent",
    "MeshDeployController",
    "MeshDeploymentController",
    "MeshDiscoveryController",
    "MeshFederationController",
    "OSSMFederationAgent",
    "Request",
    "WatchSource",
    "WorkQueue",
]
