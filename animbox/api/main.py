from __future__ import annotations

from contextlib import asynccontextmanager
import posixpath

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from loguru import logger

from animbox.config import load_settings
from animbox.log import configure_logging
from animbox.models.sandbox import SandboxStatus
from animbox.providers.sandbox import (
    InvalidSandboxPathError,
    SandboxNotFoundError,
    SandboxOperationError,
    SandboxProvider,
    SandboxProvisioningError,
    get_sandbox_provider,
    reset_sandbox_provider,
)
from animbox.providers.sandbox.safety import validate_path
from animbox.providers.snapshot import SnapshotStore, get_snapshot_store

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".json": "application/json",
    ".js": "text/javascript",
    ".ts": "text/typescript",
    ".tsx": "text/typescript",
    ".css": "text/css",
    ".html": "text/html",
    ".txt": "text/plain",
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_file)
    get_sandbox_provider(settings)
    yield
    reset_sandbox_provider()


app = FastAPI(title="animbox", lifespan=lifespan)


def get_provider() -> SandboxProvider:
    return get_sandbox_provider()


def get_store() -> SnapshotStore:
    return get_snapshot_store()


@app.get("/health")
def health_check(provider: SandboxProvider = Depends(get_provider)) -> dict:
    return {"status": "ok", "provider": provider.name}


@app.get("/sandboxes/{sandbox_id}")
def get_sandbox(
    sandbox_id: str, provider: SandboxProvider = Depends(get_provider)
) -> dict:
    instance = provider.get_instance(sandbox_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Sandbox {sandbox_id} not found")
    return instance.to_dict()


@app.get("/sandboxes/{sandbox_id}/file")
def get_sandbox_file(
    sandbox_id: str,
    path: str = Query(..., min_length=1),
    provider: SandboxProvider = Depends(get_provider),
) -> Response:
    try:
        validate_path(path)
    except InvalidSandboxPathError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if path.startswith("/"):
        raise HTTPException(status_code=400, detail="Invalid path")

    try:
        instance = provider.get_instance(sandbox_id)
        if instance is None or instance.status in (SandboxStatus.DESTROYED, SandboxStatus.ERROR):
            raise HTTPException(status_code=404, detail="Sandbox not found or not running")
        data = provider.read_file_raw(sandbox_id, path)
    except (SandboxNotFoundError, SandboxOperationError) as exc:
        logger.debug(f"File read failed for {sandbox_id}:{path}: {exc}")
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SandboxProvisioningError as exc:
        logger.warning(f"Sandbox backend unavailable for {sandbox_id}: {exc}")
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    ext = posixpath.splitext(path)[1].lower()
    return Response(
        content=data,
        media_type=MIME_TYPES.get(ext, "application/octet-stream"),
        headers={"Cache-Control": "no-cache"},
    )


@app.delete("/sandboxes/{sandbox_id}")
def delete_sandbox(
    sandbox_id: str, provider: SandboxProvider = Depends(get_provider)
) -> dict:
    provider.destroy(sandbox_id)
    return {"success": True}


@app.get("/snapshots/{node_id}")
def get_snapshot(node_id: str, store: SnapshotStore = Depends(get_store)) -> dict:
    try:
        metadata = store.get_metadata(node_id)
    except InvalidSandboxPathError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "exists": metadata is not None,
        "metadata": metadata.to_dict() if metadata else None,
    }


@app.delete("/snapshots/{node_id}")
def delete_snapshot(node_id: str, store: SnapshotStore = Depends(get_store)) -> dict:
    try:
        store.delete(node_id)
    except InvalidSandboxPathError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True}
