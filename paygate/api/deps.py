"""Dependencies shared by the routers. Built once in the application lifespan."""

from fastapi import Request

from paygate.gateways.registry import GatewayRegistry
from paygate.services.defaults import Collaborators


def get_registry(request: Request) -> GatewayRegistry:
    return request.app.state.registry


def get_collaborators(request: Request) -> Collaborators:
    return request.app.state.collaborators
