"""Request-scoped access to the services built at startup."""

from fastapi import Request

from zapninja.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
