import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .schemas.merge import MergeStrategy

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "BACKUP_MERGE_CONFIG"
SECONDS_PER_DAY = 86400


class MergeSettings(BaseModel):
    schemaVersion: int = 1
    timestampResolutionSeconds: int = Field(default=60, gt=0, le=SECONDS_PER_DAY)
    descriptionPreviewLength: int = Field(default=50, gt=0)
    defaultStrategy: MergeStrategy = MergeStrategy.stopOnConflict
    reportIndent: int = Field(default=2, ge=0)

    @field_validator("timestampResolutionSeconds")
    @classmethod
    def _divides_day(cls, value: int) -> int:
        if SECONDS_PER_DAY % value:
            raise ValueError("timestampResolutionSeconds must divide a day evenly")
        return value


_settings: Optional[MergeSettings] = None


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        raise RuntimeError(f"Could not read merge settings from {path}: {error}") from error
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise RuntimeError(f"Merge settings in {path} did not produce an object")
    return parsed


def load_settings(path: Optional[Path] = None) -> MergeSettings:
    if path is None:
        configured = os.environ.get(CONFIG_ENV_VAR)
        if not configured:
            return MergeSettings()
        path = Path(configured)
    try:
        settings = MergeSettings(**_read_yaml(path))
    except ValidationError as error:
        raise RuntimeError(f"Invalid merge settings in {path}: {error}") from error
    logger.info("Loaded merge settings from %s", path)
    return settings


def get_settings() -> MergeSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
