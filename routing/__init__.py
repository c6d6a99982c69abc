"""
Routing — clients for the external routing decision service.
"""
from routing.client import (
    RoutingCollaborator, RoutingDecision,
    SimulatedRoutingService, HttpRoutingClient,
    create_routing_client,
)

__all__ = [
    "RoutingCollaborator", "RoutingDecision",
    "SimulatedRoutingService", "HttpRoutingClient",
    "create_routing_client",
]
