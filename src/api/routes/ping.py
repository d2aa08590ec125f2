"""
Ping Route

Liveness endpoint that also reports whether the meme generator is serving.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter()


class PingResponse(BaseModel):
    """Response for ping endpoint."""

    message: str  # noqa: F841
    status: str  # noqa: F841
    timestamp: str
    backend: Optional[str] = None
    templates: Optional[int] = None


@router.get("/ping", response_model=PingResponse)  # noqa
async def ping(request: Request) -> PingResponse:
    """Ping endpoint; status is "starting" until templates are loaded."""
    generator = getattr(request.app.state, "meme_generator", None)
    ready = generator is not None and generator.ready
    return PingResponse(
        message="pong",
        status="ok" if ready else "starting",
        timestamp=datetime.now().isoformat(),
        backend=generator.backend.variant if ready and generator.backend else None,
        templates=len(generator.cache) if ready and generator.cache else None,
    )
