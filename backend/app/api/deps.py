"""FastAPI dependencies shared by the v1 routers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from app.services.jobs import JobOrchestrator


def get_orchestrator(request: Request) -> JobOrchestrator:
    """The process-wide orchestrator built in the application lifespan."""
    return request.app.state.orchestrator


Orchestrator = Annotated[JobOrchestrator, Depends(get_orchestrator)]
