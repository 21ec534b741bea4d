from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel
from uvicorn import run as uvicorn_run

from migration.archive import pack_images, unpack_images
from migration.config import MigrationConfig
from migration.driver import MigrationDriver
from migration.errors import MigrationError
from migration.models import CheckpointRequest, OperationResult, RestoreRequest


logger = logging.getLogger("lxmigrate.api")


class HealthCheckResponse(BaseModel):
    status: str
    engine: str
    engine_available: bool
    in_flight: list[str]
    timestamp: str


class CheckpointSubmitRequest(BaseModel):
    name: str
    pid: int
    image_dir: str
    rootfs_source: str
    console: bool = True
    archive: Optional[str] = None


class RestoreSubmitRequest(BaseModel):
    name: str
    image_dir: str
    rootfs_source: str
    tty_path: Optional[str] = None
    archive: Optional[str] = None
    cgroup_root: Optional[str] = None


class OperationResponse(BaseModel):
    operation: str
    status: str
    stage: str
    failed_at: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    warnings: list[str] = []
    image_dir: Optional[str] = None
    log_path: Optional[str] = None
    archive: Optional[str] = None


def _configure_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    level = (level or os.getenv("LXMIGRATE_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(asctime)s %(levelname)s %(name)s %(message)s")


def _http_status(result: OperationResult) -> int:
    if result.ok:
        return 200
    if result.error_kind == "unsupported_capability":
        return 501
    if result.error_kind == "resource_acquisition_failure":
        return 400
    return 500


def _response(result: OperationResult, archive: Optional[str] = None) -> OperationResponse:
    payload: dict[str, Any] = result.to_dict()
    payload["archive"] = archive
    return OperationResponse(**payload)


def create_app(driver: Optional[MigrationDriver] = None, config: Optional[MigrationConfig] = None) -> FastAPI:
    _configure_logging()
    config = config or (driver.config if driver else MigrationConfig.from_env())
    holder: dict[str, Optional[MigrationDriver]] = {"driver": driver}
    in_flight: set[str] = set()
    in_flight_lock = asyncio.Lock()

    def _driver() -> MigrationDriver:
        if holder["driver"] is None:
            holder["driver"] = MigrationDriver(config=config)
        return holder["driver"]

    async def _claim(name: str) -> None:
        # The engine gives no cross-invocation guarantee, so operations on one container are serialized here.
        async with in_flight_lock:
            if name in in_flight:
                raise HTTPException(status_code=409, detail=f"An operation for {name!r} is already in progress")
            in_flight.add(name)

    async def _release(name: str) -> None:
        async with in_flight_lock:
            in_flight.discard(name)

    app = FastAPI(
        title="lxmigrate API",
        description="Checkpoint and restore containers through CRIU",
        version="1.0.0",
    )

    @app.middleware("http")
    async def request_logger(request, call_next):  # type: ignore[no-untyped-def]
        start = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        client = request.client.host if request.client else "unknown"
        logger.info(
            "HTTP %s %s -> %s dur_ms=%s client=%s in_flight=%s",
            request.method,
            request.url.path,
            getattr(response, "status_code", "unknown"),
            duration_ms,
            client,
            len(in_flight),
        )
        return response

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check() -> HealthCheckResponse:
        drv = _driver()
        available = await asyncio.to_thread(drv.check)
        async with in_flight_lock:
            names = sorted(in_flight)
        return HealthCheckResponse(
            status="healthy" if available else "degraded",
            engine=drv.engine.name,
            engine_available=available,
            in_flight=names,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.post("/checkpoint", response_model=OperationResponse)
    async def checkpoint(request: CheckpointSubmitRequest, response: Response) -> OperationResponse:
        await _claim(request.name)
        try:
            ckpt = CheckpointRequest(
                pid=request.pid,
                image_dir=Path(request.image_dir),
                rootfs_source=Path(request.rootfs_source),
                name=request.name,
                console=request.console,
            )
            result = await asyncio.to_thread(_driver().checkpoint, ckpt)
            archive_path: Optional[str] = None
            if result.ok and request.archive:
                try:
                    archive_path = str(await asyncio.to_thread(pack_images, Path(request.image_dir), Path(request.archive)))
                except MigrationError as exc:
                    logger.error("archive_failed name=%s err=%s", request.name, exc)
                    raise HTTPException(status_code=500, detail=f"Checkpoint succeeded but archiving failed: {exc}")
            response.status_code = _http_status(result)
            return _response(result, archive_path)
        finally:
            await _release(request.name)

    @app.post("/restore", response_model=OperationResponse)
    async def restore(request: RestoreSubmitRequest, response: Response) -> OperationResponse:
        await _claim(request.name)
        dir_fd: Optional[int] = None
        tty_fd: Optional[int] = None
        try:
            image_dir = Path(request.image_dir)
            if request.archive:
                try:
                    image_dir = await asyncio.to_thread(unpack_images, Path(request.archive), image_dir)
                except MigrationError as exc:
                    raise HTTPException(status_code=400, detail=str(exc))
            try:
                dir_fd = os.open(image_dir, os.O_RDONLY | os.O_DIRECTORY | os.O_CLOEXEC)
            except OSError as exc:
                raise HTTPException(status_code=400, detail=f"Can't open images dir {image_dir}: {exc}")
            if request.tty_path:
                try:
                    tty_fd = os.open(request.tty_path, os.O_RDWR | os.O_NOCTTY | os.O_CLOEXEC)
                except OSError as exc:
                    raise HTTPException(status_code=400, detail=f"Can't open tty {request.tty_path}: {exc}")

            rst = RestoreRequest(
                image_dir_fd=dir_fd,
                tty_fd=tty_fd,
                rootfs_source=Path(request.rootfs_source),
                name=request.name,
                cgroup_root=Path(request.cgroup_root) if request.cgroup_root else None,
            )
            result = await asyncio.to_thread(_driver().restore, rst)
            response.status_code = _http_status(result)
            return _response(result)
        finally:
            for fd in (tty_fd, dir_fd):
                if fd is not None:
                    os.close(fd)
            await _release(request.name)

    return app


def run_api(host: Optional[str] = None, port: Optional[int] = None, config: Optional[MigrationConfig] = None) -> None:
    config = config or MigrationConfig.from_env()
    _configure_logging(config.log_level)
    host = host or config.api_host
    port = int(port or config.api_port)
    app = create_app(config=config)
    logger.info("starting lxmigrate api host=%s port=%s", host, port)
    uvicorn_run(app, host=host, port=port, log_level=os.getenv("LXMIGRATE_UVICORN_LOG_LEVEL", "info"))


if __name__ == "__main__":
    run_api()
