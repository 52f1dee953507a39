"""
Gate controller module.

This module contains the gate evaluator, the step/job executor, the
container manager for service dependencies, and the controller that
executes queued gate runs independently of the HTTP server.
"""

from .container_manager import ContainerInfo, ContainerManager, ServiceHandle
from .controller import GateController
from .gate import Gate

__all__ = ["ContainerInfo", "ContainerManager", "Gate", "GateController", "ServiceHandle"]
