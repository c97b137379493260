"""FastAPI server adapter for process-orchestrator.

Design intent:
- Keep business logic in the component packages and `process_orchestrator.core`
- Keep server-specific concerns (routing, CORS, error mapping, scheduler lifespan) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from process_orchestrator.server.app import create_app
