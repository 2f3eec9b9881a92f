# api/__init__.py
from api.container import AppServices, build_services
from api.server import create_app

__all__ = [
    "AppServices",
    "build_services",
    "create_app",
]
