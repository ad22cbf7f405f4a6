#!/usr/bin/env python3
"""HTTP surface of the orchestrator.

Endpoints are plain ``def`` functions so FastAPI runs each request on its own
worker thread; the lifecycle manager does its own locking.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import SandboxError
from .log import get_logger

logger = get_logger(__name__)


class CreateRequest(BaseModel):
    root_image_path: str = Field(..., min_length=1)
    vcpu_count: Optional[int] = Field(None, gt=0)
    mem_size_mib: Optional[int] = Field(None, gt=0)


class CreateResponse(BaseModel):
    ip_address: str
    id: str


class DeleteRequest(BaseModel):
    id: str = Field(..., min_length=1)


class InstanceInfo(BaseModel):
    id: str
    ip_address: str
    mac_address: str
    tap_device: str
    socket_path: str
    root_image_path: str
    vcpu_count: int
    mem_size_mib: int
    state: str
    created_at: float
    exit_code: Optional[int] = None


def create_app(lifecycle, shutdown_controller, watcher_timeout=10):
    """Build the FastAPI application around an already wired lifecycle manager

    Args:
        lifecycle: VMLifecycle used by every request
        shutdown_controller: ShutdownController whose cleanup runs on exit
        watcher_timeout: seconds to wait for exit watchers during shutdown
    """

    @asynccontextmanager
    async def lifespan(app):
        logger.info(f"fcsandbox {__version__} ready")
        yield
        logger.info("Shutting down, stopping all instances")
        await asyncio.to_thread(shutdown_controller.cleanup)
        released = await asyncio.to_thread(lifecycle.join_watchers, watcher_timeout)
        if not released:
            logger.warning("Some instances were still being released at exit")

    app = FastAPI(title="fcsandbox", version=__version__, lifespan=lifespan)
    app.state.lifecycle = lifecycle
    app.state.shutdown_controller = shutdown_controller

    @app.exception_handler(SandboxError)
    async def sandbox_error_handler(request: Request, exc: SandboxError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    @app.post("/create", response_model=CreateResponse)
    def create(req: CreateRequest):
        instance = lifecycle.create(
            req.root_image_path,
            vcpu_count=req.vcpu_count,
            mem_size_mib=req.mem_size_mib,
        )
        return CreateResponse(ip_address=instance.ip, id=instance.id)

    @app.post("/delete")
    def delete(req: DeleteRequest):
        lifecycle.delete(req.id)
        return Response(status_code=200)

    @app.get("/instances", response_model=List[InstanceInfo])
    def list_instances():
        return [instance.to_dict() for instance in lifecycle.list_instances()]

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__, "instances": len(lifecycle.registry)}

    return app
