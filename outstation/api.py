"""
Read-only status API for the outstation
Serves breaker states and connected masters over HTTP
"""

import logging
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from outstation.engine import Outstation
from outstation.registry import state_name

logger = logging.getLogger(__name__)


# ============================================================================
# Data Models
# ============================================================================

class BreakerResponse(BaseModel):
    ioa: int
    closed: bool
    state: str


class SessionResponse(BaseModel):
    session_id: int
    remote_address: str
    data_transfer_active: bool
    connected_at: str
    selections: Dict[int, Dict]


class StatusResponse(BaseModel):
    breakers: int
    sessions: int
    last_common_address: int
    select_timeout_s: Optional[float] = None
    strict_execute: bool
    stats: Dict[str, int]


def _breaker(ioa: int, closed: bool) -> BreakerResponse:
    return BreakerResponse(ioa=ioa, closed=closed, state=state_name(closed))


def create_app(outstation: Outstation) -> FastAPI:
    """Build the status API bound to one outstation"""
    app = FastAPI(
        title="IEC 104 Breaker Outstation",
        description="Breaker states and connected masters",
        version="1.0.0"
    )

    @app.get("/status", response_model=StatusResponse)
    async def get_status():
        status = outstation.get_status()
        status['breakers'] = len(status['breakers'])
        return status

    @app.get("/breakers", response_model=List[BreakerResponse])
    async def list_breakers():
        return [_breaker(ioa, closed) for ioa, closed in outstation.registry.snapshot()]

    @app.get("/breakers/{ioa}", response_model=BreakerResponse)
    async def get_breaker(ioa: int):
        closed = outstation.registry.get(ioa)
        if closed is None:
            raise HTTPException(status_code=404, detail=f"Unknown IOA {ioa}")
        return _breaker(ioa, closed)

    @app.get("/sessions", response_model=List[SessionResponse])
    async def list_sessions():
        return [session.to_dict() for session in outstation.sessions]

    return app


async def serve_api(outstation: Outstation, host: str, port: int):
    """Run the status API on the current event loop until cancelled"""
    config = uvicorn.Config(create_app(outstation), host=host, port=port,
                            log_level="warning")
    server = uvicorn.Server(config)
    logger.info(f"Status API listening on http://{host}:{port}")
    await server.serve()
