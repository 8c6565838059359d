from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .blob_store import BlobStore, LocalBlobStore, create_blob_store
from .configuration import make_settings
from .database import BridgeDatabase
from .errors import BridgeError
from .job_manager import JobManager
from .key_manager import AuthContext, KeyManager
from .models import (
    APIKeyCreate,
    APIKeyCreated,
    APIKeyRecord,
    DeleteResult,
    EnqueueRequest,
    EnqueueResult,
    FileUrlRequest,
    FileUrlResponse,
    JobResponse,
    JobUpdate,
    PollResult,
    Role,
    UploadResult,
    VariantCreate,
    VariantList,
    VariantResponse,
    VariantUpdate,
)
from .variant_manager import VariantManager

settings = make_settings()

logging.basicConfig(
    level=settings.logging.level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Variant Bridge API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database = BridgeDatabase(Path(settings.database.path))
blob_store = create_blob_store(settings)
job_manager = JobManager(database, blob_store, settings)
variant_manager = VariantManager(database, blob_store)
key_manager = KeyManager(settings.database.path, master_key=settings.auth.master_key, bypass=settings.auth.bypass)

if isinstance(blob_store, LocalBlobStore):
    app.mount(blob_store.url_prefix, StaticFiles(directory=blob_store.root), name="blobs")


def get_job_manager() -> JobManager:
    return job_manager


def get_variant_manager() -> VariantManager:
    return variant_manager


def get_blob_store() -> BlobStore:
    return blob_store


def get_key_manager() -> KeyManager:
    return key_manager


def require_roles(*roles: Role):
    """Dependency factory: an authenticated caller holding one of ``roles`` (any role if none given)."""

    def dependency(
        x_api_key: Optional[str] = Header(default=None),
        keys: KeyManager = Depends(get_key_manager),
    ) -> AuthContext:
        auth = keys.authenticate(x_api_key)
        if not auth.authenticated:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if roles and auth.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth

    return dependency


designer_access = require_roles(Role.ADMIN, Role.DESIGNER)
bridge_access = require_roles(Role.ADMIN, Role.BRIDGE)
admin_access = require_roles(Role.ADMIN)


@app.exception_handler(BridgeError)
async def handle_bridge_error(request: Request, exc: BridgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


# ---------- Bridge job queue ----------


@app.post("/bridge/jobs", response_model=EnqueueResult, dependencies=[Depends(designer_access)])
def enqueue_jobs(payload: EnqueueRequest, manager: JobManager = Depends(get_job_manager)) -> EnqueueResult:
    return manager.enqueue(payload.variant_ids, priority=payload.priority)


@app.get("/bridge/jobs", response_model=PollResult, dependencies=[Depends(bridge_access)])
def poll_jobs(
    status: str = Query("pending"),
    limit: Optional[int] = Query(None),
    claim: Optional[bool] = Query(None),
    manager: JobManager = Depends(get_job_manager),
) -> PollResult:
    return PollResult(jobs=manager.poll(status=status, limit=limit, claim=claim))


@app.patch("/bridge/jobs/{job_id}", response_model=JobResponse, dependencies=[Depends(bridge_access)])
def update_job(job_id: str, payload: JobUpdate, manager: JobManager = Depends(get_job_manager)) -> JobResponse:
    return JobResponse(job=manager.update_job(job_id, payload))


@app.delete(
    "/bridge/jobs/{job_id}",
    response_model=DeleteResult,
    dependencies=[Depends(require_roles(Role.ADMIN, Role.BRIDGE, Role.DESIGNER))],
)
def delete_job(job_id: str, manager: JobManager = Depends(get_job_manager)) -> DeleteResult:
    manager.delete_job(job_id)
    return DeleteResult()


@app.post("/bridge/upload", response_model=UploadResult, status_code=201, dependencies=[Depends(bridge_access)])
async def upload_artifact(
    file: UploadFile = File(...),
    is_public: bool = Form(False, alias="isPublic"),
    store: BlobStore = Depends(get_blob_store),
) -> UploadResult:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file must have a filename")

    data = await file.read()
    await file.close()
    path = store.build_path(file.filename, is_public=is_public)
    await run_in_threadpool(store.put, path, data, file.content_type or "application/octet-stream", is_public=is_public)
    return UploadResult(cloud_storage_path=path, is_public=is_public)


@app.post("/upload/file-url", response_model=FileUrlResponse, dependencies=[Depends(require_roles())])
def file_url(payload: FileUrlRequest, store: BlobStore = Depends(get_blob_store)) -> FileUrlResponse:
    return FileUrlResponse(url=store.get_url(payload.cloud_storage_path, payload.is_public))


# ---------- Design variants ----------


@app.get("/items/{item_id}/variants", response_model=VariantList, dependencies=[Depends(designer_access)])
def list_variants(item_id: str, manager: VariantManager = Depends(get_variant_manager)) -> VariantList:
    return VariantList(variants=manager.list_variants(item_id))


@app.post(
    "/items/{item_id}/variants",
    response_model=VariantResponse,
    status_code=201,
    dependencies=[Depends(designer_access)],
)
def create_variant(
    item_id: str,
    payload: VariantCreate,
    manager: VariantManager = Depends(get_variant_manager),
) -> VariantResponse:
    variant = manager.create_variant(item_id, payload)
    return VariantResponse(variant=manager.describe_variant(item_id, variant.id))


@app.delete("/items/{item_id}/variants", response_model=DeleteResult, dependencies=[Depends(designer_access)])
def delete_item_variants(item_id: str, manager: VariantManager = Depends(get_variant_manager)) -> DeleteResult:
    deleted = manager.delete_item_variants(item_id)
    return DeleteResult(message="All variants deleted", deleted=deleted)


@app.get(
    "/items/{item_id}/variants/{variant_id}",
    response_model=VariantResponse,
    dependencies=[Depends(designer_access)],
)
def get_variant(item_id: str, variant_id: str, manager: VariantManager = Depends(get_variant_manager)) -> VariantResponse:
    return VariantResponse(variant=manager.describe_variant(item_id, variant_id))


@app.patch(
    "/items/{item_id}/variants/{variant_id}",
    response_model=VariantResponse,
    dependencies=[Depends(designer_access)],
)
def update_variant(
    item_id: str,
    variant_id: str,
    payload: VariantUpdate,
    manager: VariantManager = Depends(get_variant_manager),
) -> VariantResponse:
    manager.update_variant(item_id, variant_id, payload)
    return VariantResponse(variant=manager.describe_variant(item_id, variant_id))


@app.delete(
    "/items/{item_id}/variants/{variant_id}",
    response_model=DeleteResult,
    dependencies=[Depends(designer_access)],
)
def delete_variant(item_id: str, variant_id: str, manager: VariantManager = Depends(get_variant_manager)) -> DeleteResult:
    manager.delete_variant(item_id, variant_id)
    return DeleteResult(message="Variant deleted")


# ---------- API key administration ----------


@app.post("/admin/keys", response_model=APIKeyCreated, status_code=201, dependencies=[Depends(admin_access)])
def create_api_key(payload: APIKeyCreate, keys: KeyManager = Depends(get_key_manager)) -> APIKeyCreated:
    raw_key, record = keys.create_key(payload.owner, payload.role)
    return APIKeyCreated(api_key=raw_key, record=record)


@app.get("/admin/keys", response_model=List[APIKeyRecord], dependencies=[Depends(admin_access)])
def list_api_keys(keys: KeyManager = Depends(get_key_manager)) -> List[APIKeyRecord]:
    return keys.list_keys()


@app.delete("/admin/keys/{key_id}", dependencies=[Depends(admin_access)])
def revoke_api_key(key_id: str, keys: KeyManager = Depends(get_key_manager)) -> Dict[str, str]:
    if not keys.revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"status": "revoked"}
