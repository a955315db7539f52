from __future__ import annotations

import logging
import os
from typing import Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .catalog import EntityCatalog
from .configuration import Settings, get_settings
from .database import AssetDatabase
from .errors import UploadError
from .image_processor import ImageProcessor
from .models import (
    ConfigDebugReport,
    DeleteResponse,
    EntityImagesResponse,
    ImagePurpose,
    MediaUploadResponse,
    UploadResponse,
)
from .s3_service import S3Service
from .token_store import Principal, TokenStore
from .upload_manager import UploadedFile, UploadManager
from .validation import FileValidator

logger = logging.getLogger(__name__)

app = FastAPI(title="Playbill Media API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

settings = get_settings()
token_store = TokenStore(settings.database_path)
entity_catalog = EntityCatalog(settings.database_path)
s3_service = S3Service(settings.aws, url_mode=settings.url_mode, presign_expiration=settings.presign_expiration)
upload_manager = UploadManager(
    store=s3_service,
    registry=AssetDatabase(settings.database_path),
    catalog=entity_catalog,
    validator=FileValidator(settings.policies, settings.min_dimension, settings.max_pixels),
    processor=ImageProcessor(settings.policies),
)

bearer_scheme = HTTPBearer(auto_error=False)


def get_upload_manager() -> UploadManager:
    return upload_manager


def get_token_store() -> TokenStore:
    return token_store


def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    tokens: TokenStore = Depends(get_token_store),
) -> Optional[Principal]:
    """Resolve the bearer token; absence is decided by the route, not here."""
    if credentials is None:
        return None
    return tokens.resolve(credentials.credentials)


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def _read_upload(file: Optional[UploadFile], limit: int) -> Optional[UploadedFile]:
    """Read at most ``limit + 1`` bytes so oversized bodies fail validation without full buffering."""
    if file is None:
        return None
    data = await file.read(limit + 1)
    await file.close()
    return UploadedFile(filename=file.filename or "upload", content_type=file.content_type, data=data)


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/upload/poster", response_model=UploadResponse, status_code=201)
async def upload_poster(
    file: Optional[UploadFile] = File(None),
    entity_type: Optional[str] = Form(None, alias="type"),
    entity_id: Optional[str] = Form(None, alias="entityId"),
    principal: Optional[Principal] = Depends(get_principal),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadResponse:
    upload = await _read_upload(file, manager.validator.policies[ImagePurpose.POSTER].max_bytes)
    try:
        return await run_in_threadpool(manager.upload_poster, principal, upload, entity_type, entity_id)
    except UploadError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error during poster upload")
        raise UploadError() from exc


@app.post("/upload/profile", response_model=UploadResponse, status_code=201)
async def upload_profile(
    file: Optional[UploadFile] = File(None),
    principal: Optional[Principal] = Depends(get_principal),
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadResponse:
    upload = await _read_upload(file, manager.validator.policies[ImagePurpose.PROFILE].max_bytes)
    try:
        return await run_in_threadpool(manager.upload_profile, principal, upload)
    except UploadError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error during profile upload")
        raise UploadError() from exc


@app.post("/media", response_model=MediaUploadResponse, status_code=201)
async def upload_media(
    file: Optional[UploadFile] = File(None),
    image_type: Optional[str] = Form(None, alias="imageType"),
    principal: Optional[Principal] = Depends(get_principal),
    manager: UploadManager = Depends(get_upload_manager),
) -> MediaUploadResponse:
    # Purpose is unknown until the form is validated; read up to the largest ceiling
    limit = max(policy.max_bytes for policy in manager.validator.policies.values())
    upload = await _read_upload(file, limit)
    try:
        return await run_in_threadpool(manager.upload_media, principal, upload, image_type)
    except UploadError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error during media upload")
        raise UploadError() from exc


@app.get("/upload/debug", response_model=ConfigDebugReport)
@app.get("/media/debug", response_model=ConfigDebugReport)
def debug_config(current: Settings = Depends(get_settings)):
    if current.is_production:
        return JSONResponse(status_code=404, content={"error": "Not found"})

    aws = current.aws
    config = {
        "AWS_ACCESS_KEY_ID": "SET" if aws.access_key_id else "NOT SET",
        "AWS_SECRET_ACCESS_KEY": "SET" if aws.secret_access_key else "NOT SET",
        "AWS_S3_BUCKET": aws.bucket or "NOT SET",
        "AWS_REGION": aws.region,
    }
    return ConfigDebugReport(
        message="AWS Configuration Debug (Development Only)",
        config=config,
        issues=[f"Missing {name}" for name in aws.missing()],
    )


@app.get("/upload/entity/{entity_type}/{entity_id}", response_model=EntityImagesResponse)
def list_entity_images(
    entity_type: str,
    entity_id: str,
    image_type: Optional[str] = Query(None, alias="imageType"),
    principal: Optional[Principal] = Depends(get_principal),
    manager: UploadManager = Depends(get_upload_manager),
) -> EntityImagesResponse:
    return manager.list_entity_images(principal, entity_type, entity_id, image_type)


@app.delete("/upload/{image_id}", response_model=DeleteResponse)
@app.delete("/media/{image_id}", response_model=DeleteResponse)
def delete_image(
    image_id: str,
    principal: Optional[Principal] = Depends(get_principal),
    manager: UploadManager = Depends(get_upload_manager),
) -> DeleteResponse:
    return manager.delete_image(principal, image_id)


def run() -> None:
    """Serve the API with uvicorn; host and port come from PLAYBILL_HOST/PLAYBILL_PORT."""
    uvicorn.run(
        "playbill_backend.main:app",
        host=os.environ.get("PLAYBILL_HOST", "0.0.0.0"),
        port=int(os.environ.get("PLAYBILL_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
