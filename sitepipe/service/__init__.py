"""Development server package."""

from .app import BuildStatus, DevServer, HealthResponse, ReloadHub, create_app, inject_snippet

__all__ = ["BuildStatus", "DevServer", "HealthResponse", "ReloadHub", "create_app", "inject_snippet"]
