from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import EntityType, ImagePurpose

load_dotenv()

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [_HERE.parent / "config/config.yaml"] + [parent / "config/config.yaml" for parent in _HERE.parents[:3]]


def _resolve_config_path() -> Path:
    override = os.environ.get("PLAYBILL_CONFIG")
    if override:
        return Path(override)
    path = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
    if path is None:  # pragma: no cover - fail fast in broken installs
        raise FileNotFoundError("Default config.yaml could not be located; ensure package data was installed.")
    return path


@dataclass(frozen=True)
class AWSSettings:
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    bucket: Optional[str] = None
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None

    def missing(self) -> List[str]:
        """Names of required environment variables that are not set."""
        missing = []
        if not self.access_key_id:
            missing.append("AWS_ACCESS_KEY_ID")
        if not self.secret_access_key:
            missing.append("AWS_SECRET_ACCESS_KEY")
        if not self.bucket:
            missing.append("AWS_S3_BUCKET")
        return missing


@dataclass(frozen=True)
class PurposePolicy:
    """
    Everything that differs between image purposes.

    Adding a purpose means adding one entry under ``policies`` in config.yaml
    and one member to ``ImagePurpose``.
    """

    purpose: ImagePurpose
    max_bytes: int
    allowed_mime_types: frozenset[str]
    entity_types: frozenset[EntityType]
    crop_to_square: bool = False
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    square_size: Optional[int] = None
    quality: int = 85
    format: str = "jpeg"


@dataclass(frozen=True)
class Settings:
    environment: str
    aws: AWSSettings
    url_mode: str
    presign_expiration: int
    database_path: Path
    min_dimension: int
    max_pixels: int
    policies: Dict[ImagePurpose, PurposePolicy] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def policy(self, purpose: ImagePurpose) -> PurposePolicy:
        return self.policies[purpose]


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    config_path = _resolve_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Default config not found at {config_path}")
    return OmegaConf.load(config_path)


def _build_policy(purpose: ImagePurpose, raw: Dict[str, Any]) -> PurposePolicy:
    return PurposePolicy(
        purpose=purpose,
        max_bytes=int(raw["max_bytes"]),
        allowed_mime_types=frozenset(raw["allowed_mime_types"]),
        entity_types=frozenset(EntityType(value) for value in raw["entity_types"]),
        crop_to_square=bool(raw.get("crop_to_square", False)),
        max_width=raw.get("max_width"),
        max_height=raw.get("max_height"),
        square_size=raw.get("square_size"),
        quality=int(raw.get("quality", 85)),
        format=str(raw.get("format", "jpeg")).lower(),
    )


def make_settings(overrides: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Merge overrides into the default config and build typed settings.

    Args:
        overrides: Nested dictionary mirroring config.yaml (e.g. ``{"aws": {"bucket": "b"}}``)

    Returns:
        Fully resolved Settings
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)
    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    resolved: Dict[str, Any] = OmegaConf.to_container(merged, resolve=True)  # type: ignore[assignment]

    aws = resolved["aws"]
    policies = {purpose: _build_policy(purpose, resolved["policies"][purpose.value]) for purpose in ImagePurpose}

    return Settings(
        environment=str(resolved["app"]["environment"]),
        aws=AWSSettings(
            access_key_id=aws.get("access_key_id") or None,
            secret_access_key=aws.get("secret_access_key") or None,
            bucket=aws.get("bucket") or None,
            region=aws.get("region") or "us-east-1",
            endpoint_url=aws.get("endpoint_url") or None,
        ),
        url_mode=str(resolved["storage"]["url_mode"]),
        presign_expiration=int(resolved["storage"]["presign_expiration"]),
        database_path=Path(resolved["database"]["path"]),
        min_dimension=int(resolved["validation"]["min_dimension"]),
        max_pixels=int(resolved["validation"]["max_pixels"]),
        policies=policies,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return make_settings()
