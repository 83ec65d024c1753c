"""
API Dependencies — orchestration services and per-request correlation id.

The service container is built once in the application lifespan and kept on
``app.state.services``; handlers receive it through ``get_services`` so tests
can swap it via ``app.dependency_overrides``.
"""

from uuid import uuid4

from fastapi import Request

from app.middleware.request_context import get_request_id
from app.orchestration.services import OrchestrationServices


def get_services(request: Request) -> OrchestrationServices:
    return request.app.state.services


def get_correlation_id() -> str:
    """The request id doubles as the correlation id for everything the request triggers."""
    return get_request_id() or uuid4().hex
