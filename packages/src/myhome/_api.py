"""HTTP surface of the RPC server (FastAPI).

``POST /rpc`` takes the same ``{id, src, method, params}`` envelope as
the MQTT surface and always answers 200; failures live in the
envelope's ``error`` member.  ``GET /healthz`` reports liveness.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, FastAPI, Request

from myhome._errors import BadRequestError
from myhome._server import RpcServer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rpc"])


@router.post("/rpc")
async def rpc(request: Request) -> dict[str, Any]:
    server: RpcServer = request.app.state.server
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {
            "id": None,
            "src": server.server_id,
            "error": BadRequestError("request body is not JSON").to_error(),
        }
    return await server.handle(body)


@router.get("/healthz")
async def healthz(request: Request) -> dict[str, Any]:
    health: Callable[[], dict[str, Any]] | None = request.app.state.health
    return health() if health is not None else {"status": "online"}


def create_api(
    server: RpcServer,
    *,
    health: Callable[[], dict[str, Any]] | None = None,
    version: str = "",
) -> FastAPI:
    """Build the FastAPI app serving *server*."""
    app = FastAPI(title="myhome", version=version or "0")
    app.state.server = server
    app.state.health = health
    app.include_router(router)
    return app
