from fastapi import Request

from conversion_agent.services.cart import CartAggregate
from conversion_agent.services.container import Services
from conversion_agent.services.orchestrator import Orchestrator
from conversion_agent.services.session_store import SessionStore


def get_services(request: Request) -> Services:
    """Provide the service graph built at startup to endpoint functions."""
    return request.app.state.services


def get_orchestrator(request: Request) -> Orchestrator:
    return get_services(request).orchestrator


def get_cart(request: Request) -> CartAggregate:
    return get_services(request).cart


def get_sessions(request: Request) -> SessionStore:
    return get_services(request).sessions
