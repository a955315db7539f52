from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EntityType(str, Enum):
    MUSICAL = "musical"
    PERFORMANCE = "performance"
    USER = "user"


class ImagePurpose(str, Enum):
    POSTER = "poster"
    PROFILE = "profile"


class UploadState(str, Enum):
    RECEIVED = "received"
    AUTHORIZED = "authorized"
    TARGET_VALIDATED = "target_validated"
    CONTENT_VALIDATED = "content_validated"
    TRANSCODED = "transcoded"
    STORED = "stored"
    REGISTERED = "registered"
    PROFILE_REPLACED = "profile_replaced"
    COMPLETE = "complete"
    FAILED = "failed"


class UploadEvent(BaseModel):
    timestamp: datetime
    state: UploadState
    message: str


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadResponse(ApiModel):
    success: bool = True
    image_id: str
    url: str
    width: int
    height: int
    file_size: int


class MediaUploadResponse(UploadResponse):
    image_type: ImagePurpose


class ImageView(ApiModel):
    id: str
    url: str
    image_type: ImagePurpose
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: int
    created_at: datetime


class EntityImagesResponse(ApiModel):
    success: bool = True
    images: List[ImageView]


class DeleteResponse(ApiModel):
    success: bool = True
    message: str


class ConfigDebugReport(BaseModel):
    message: str
    config: dict[str, str]
    issues: List[str]
