"""
Database-backed Service Registry

This package provides:
1. EntityStore: SQLAlchemy tables and atomic units of work
2. Registry: register / get / list / search / update / heartbeat / unregister
3. ServiceRegistryClient: HTTP client for the registry API
4. start_registry_server: launches the HTTP API in a daemon thread
"""

from .client import ServiceRegistryClient
from .core import Registry
from .models import RegisterRequest, Service
from .server import make_registry_server, start_registry_server
from .store import EntityStore, open_store

__version__ = '0.1.0'
__all__ = [
    'EntityStore',
    'Registry',
    'RegisterRequest',
    'Service',
    'ServiceRegistryClient',
    'make_registry_server',
    'open_store',
    'start_registry_server',
]
