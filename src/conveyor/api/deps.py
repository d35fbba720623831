"""Request-scoped access to the daemon's shared services."""

from fastapi import Request

from conveyor.adapters.registry import AdapterRegistry
from conveyor.daemon.manager import RunManager
from conveyor.repositories.run_repo import RunStateStore


def get_store(request: Request) -> RunStateStore:
    return request.app.state.store


def get_manager(request: Request) -> RunManager:
    return request.app.state.manager


def get_adapters(request: Request) -> AdapterRegistry:
    return request.app.state.adapters
