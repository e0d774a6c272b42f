# api/__init__.py
from api.server import (
    app,
    build_orchestrator,
    create_app,
)

__all__ = [
    "app",
    "build_orchestrator",
    "create_app",
]
