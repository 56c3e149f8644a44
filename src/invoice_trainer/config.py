from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigError
from .field_types import DEFAULT_FIELD_TYPES, FieldTypeTable
from .schemas import FieldTypeSpec


class EngineConfig(BaseModel):
    min_draw_size: float = Field(default=10.0, gt=0.0)
    history_limit: int = Field(default=50, ge=2)
    min_completed_fields: int = Field(default=3, ge=1)


class AutosaveConfig(BaseModel):
    enabled: bool = True
    cache_dir: Path = Path("~/.cache/invoice_trainer")
    session_key: str = "visual_annotation_session"
    debounce_sec: float = Field(default=2.0, ge=0.0)
    ttl_hours: float = Field(default=24.0, gt=0.0)


class FunctionNames(BaseModel):
    list_carriers: str = "getUnifiedTrainingCarriers"
    create_carrier: str = "addUnifiedTrainingCarrier"
    upload_document: str = "addTrainingSample"
    fetch_document: str = "getTrainingSample"
    submit_training: str = "processVisualTrainingSample"


class ServicesConfig(BaseModel):
    base_url: str = "http://127.0.0.1:5001/invoice-trainer/us-central1"
    timeout_sec: float = Field(default=60.0, gt=0.0)
    upload_timeout_sec: float = Field(default=300.0, gt=0.0)
    api_token: Optional[str] = None
    api_token_env: str = "INVOICE_TRAINER_API_TOKEN"
    default_carrier_category: str = "general"
    functions: FunctionNames = Field(default_factory=FunctionNames)

    @model_validator(mode="after")
    def _validate_base_url(self) -> "ServicesConfig":
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("services.base_url must be an http(s) URL.")
        return self


class RenderConfig(BaseModel):
    dpi: int = Field(default=150, ge=36, le=600)
    output_dir: Path = Path("data/pdf_images")


class TrainerConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    autosave: AutosaveConfig = Field(default_factory=AutosaveConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    render: RenderConfig = Field(default_factory=RenderConfig)
    field_types: Optional[List[FieldTypeSpec]] = None

    @model_validator(mode="after")
    def _validate_field_types(self) -> "TrainerConfig":
        if self.field_types is not None:
            FieldTypeTable(self.field_types)
        return self

    def field_table(self) -> FieldTypeTable:
        return FieldTypeTable(self.field_types if self.field_types is not None else DEFAULT_FIELD_TYPES)


def resolve_api_token(services_cfg: ServicesConfig) -> Optional[str]:
    candidates = [
        services_cfg.api_token,
        os.getenv(services_cfg.api_token_env),
        os.getenv("INVOICE_TRAINER_API_TOKEN"),
    ]
    for token in candidates:
        if isinstance(token, str) and token.strip():
            return token.strip()
    return None


def _read_yaml_file(path: Path) -> dict:
    import yaml

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a YAML object at top level: {path}")
    return raw


def load_trainer_config(config_path: Path | str | None = None) -> TrainerConfig:
    """Load config from YAML, or defaults when no path is given.

    ``INVOICE_TRAINER_CONFIG`` is consulted when ``config_path`` is None and
    ``INVOICE_TRAINER_SERVICES_URL`` overrides ``services.base_url``.
    """
    raw_path = config_path or os.getenv("INVOICE_TRAINER_CONFIG")
    payload: dict = {}
    path: Optional[Path] = None
    if raw_path:
        path = Path(raw_path).expanduser().resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Trainer config not found: {path}")
        payload = _read_yaml_file(path)

    env_url = str(os.getenv("INVOICE_TRAINER_SERVICES_URL") or "").strip()
    if env_url:
        services = payload.get("services") if isinstance(payload.get("services"), dict) else {}
        payload = {**payload, "services": {**services, "base_url": env_url}}

    try:
        cfg = TrainerConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid trainer config at {path or '<defaults>'}:\n{exc}") from exc

    cfg.autosave.cache_dir = cfg.autosave.cache_dir.expanduser()
    cfg.render.output_dir = cfg.render.output_dir.expanduser()
    return cfg


__all__ = [
    "AutosaveConfig",
    "EngineConfig",
    "FunctionNames",
    "RenderConfig",
    "ServicesConfig",
    "TrainerConfig",
    "load_trainer_config",
    "resolve_api_token",
]
