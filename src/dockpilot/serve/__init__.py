"""HTTP surface for DockPilot deployments.

Exposes deployment creation, status, cancellation, health probes and the
Server-Sent Events progress stream via FastAPI.
"""

from dockpilot.serve.server import DeploymentServer, create_app

__all__ = ["DeploymentServer", "create_app"]
