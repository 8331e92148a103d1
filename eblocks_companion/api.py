"""HTTP API for the polling UI client."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from eblocks_companion.companion import Companion
from eblocks_companion.config import CompanionConfig
from eblocks_companion.errors import (
    CompanionError,
    CompileFailed,
    NoPortResolved,
    NotConnected,
    PortAlreadyHeld,
    PortUnavailable,
    ToolchainNotFound,
    UploadFailed,
)
from eblocks_companion.upload import AUTO, UploadRequest

logger = logging.getLogger(__name__)

# Each failure class keeps its own status so the client can tell a compile
# error from an unreachable board from a missing toolchain.
_STATUS = {
    CompileFailed: 422,
    UploadFailed: 502,
    ToolchainNotFound: 503,
    PortUnavailable: 409,
    PortAlreadyHeld: 409,
    NotConnected: 404,
    NoPortResolved: 404,
}


# The UI client sends camelCase keys (connectionId, baudRate) and the baud
# rate as a string; snake_case names are accepted too.
class ConnectBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: str
    baud_rate: int | None = Field(default=None, alias="baudRate")


class PortBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: str = Field(alias="connectionId")


class SendBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    port: str = Field(alias="connectionId")
    data: str


class UploadBody(BaseModel):
    code: str = ""
    board: str = ""
    port: str = AUTO


def _companion(request: Request) -> Companion:
    return request.app.state.companion


async def _companion_error(request: Request, exc: CompanionError) -> JSONResponse:
    status = _STATUS.get(type(exc), 500)
    logger.warning("%s: %s", exc.kind, exc.message)
    return JSONResponse(status_code=status, content={"success": False, **exc.to_dict()})


async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": "bad_request", "message": str(exc)})


def create_app(config: CompanionConfig | None = None, companion: Companion | None = None) -> FastAPI:
    """Create the FastAPI application around one Companion instance."""
    companion = companion or Companion(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Companion API starting")
        yield
        await companion.shutdown()
        logger.info("Companion API stopped")

    app = FastAPI(title="E-Blocks Companion", version="0.1.0", lifespan=lifespan)
    app.state.companion = companion
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CompanionError, _companion_error)
    app.add_exception_handler(ValueError, _value_error)

    @app.get("/api/health")
    async def health() -> dict:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/check-cli")
    async def check_cli(request: Request) -> dict:
        status = await _companion(request).check_toolchain()
        return {"success": status["ok"], "installed": status["ok"], **status}

    @app.get("/api/ports")
    async def ports(request: Request) -> dict:
        descriptors = await _companion(request).list_ports()
        return {"success": True, "ports": [d.to_dict() for d in descriptors]}

    @app.post("/api/connect")
    @app.post("/api/serial/connect")
    async def serial_connect(body: ConnectBody, request: Request) -> dict:
        record = await _companion(request).connect(body.port, body.baud_rate)
        return {
            "success": True,
            "connectionId": record.port,
            "message": f"Connected to {record.port}",
            **record.to_dict(),
        }

    @app.post("/api/disconnect")
    @app.post("/api/serial/disconnect")
    async def serial_disconnect(body: PortBody, request: Request) -> dict:
        was_connected = await _companion(request).disconnect(body.port)
        return {"success": True, "message": "Disconnected" if was_connected else "Already disconnected"}

    @app.post("/api/serial/send")
    async def serial_send(body: SendBody, request: Request) -> dict:
        written = await _companion(request).write(body.port, body.data)
        return {"success": True, "bytes": written}

    @app.get("/api/serial/data/{connection_id:path}")
    async def serial_data_by_id(connection_id: str, request: Request) -> dict:
        return {"success": True, "data": _companion(request).drain(connection_id)}

    @app.get("/api/serial/data")
    async def serial_data(request: Request, port: str = Query(...)) -> dict:
        return {"success": True, "data": _companion(request).drain(port)}

    @app.post("/api/upload")
    async def upload(body: UploadBody, request: Request) -> dict:
        if not body.code:
            raise ValueError("No code provided")
        if not body.board:
            raise ValueError("No board specified")
        result = await _companion(request).upload(
            UploadRequest(source_code=body.code, target_family=body.board, port=body.port or AUTO)
        )
        return {"success": True, "message": "Code uploaded successfully", **result.to_dict()}

    return app
