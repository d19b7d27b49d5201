import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ..config import get_settings
from ..schemas.backup import BackupPayload
from .validator import validate_against_schema

logger = logging.getLogger(__name__)

MERGED_BACKUP_PREFIX = "merged-backup"
CONFLICT_REPORT_PREFIX = "merge-conflict-report"
FILE_EXTENSION = "json"


class BackupError(ValueError):
    """A backup document that cannot be merged. ``code`` is one of empty, invalid, unsupported_version."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @classmethod
    def empty(cls) -> "BackupError":
        return cls("empty", "The selected backup file is empty.")

    @classmethod
    def invalid(cls, detail: str = "") -> "BackupError":
        message = "We couldn't read that backup file."
        return cls("invalid", f"{message} {detail}".strip())

    @classmethod
    def unsupported_version(cls, version: int) -> "BackupError":
        return cls("unsupported_version", f"This backup was created with a newer version ({version}).")


def _as_document(data: Any) -> Any:
    if not isinstance(data, (bytes, str)):
        # Already-parsed documents go straight to schema validation.
        return data
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="strict") if data else ""
    if not data.strip():
        raise BackupError.empty()
    try:
        return json.loads(data)
    except json.JSONDecodeError as error:
        raise BackupError.invalid(f"({error.msg} at line {error.lineno})") from error


def decode_payload(data: Union[bytes, str, Dict[str, Any]], supported_version: Optional[int] = None) -> BackupPayload:
    if supported_version is None:
        supported_version = get_settings().schemaVersion
    try:
        document = _as_document(data)
    except UnicodeDecodeError as error:
        logger.warning("Backup document is not UTF-8: %s", error)
        raise BackupError.invalid("(not UTF-8 text)") from error

    validation = validate_against_schema("backup", document)
    if not validation["valid"]:
        logger.warning("Backup document failed validation: %s", validation["errors"])
        raise BackupError.invalid("(" + "; ".join(validation["errors"]) + ")")

    if document["version"] > supported_version:
        raise BackupError.unsupported_version(document["version"])

    try:
        return BackupPayload.model_validate(document)
    except ValidationError as error:
        logger.warning("Backup document rejected: %s", error)
        details = "; ".join(
            f"{'/'.join(map(str, item['loc']))} {item['msg']}" for item in error.errors()
        )
        raise BackupError.invalid(f"({details})") from error


def payload_document(payload: BackupPayload) -> Dict[str, Any]:
    return payload.model_dump(mode="json")


def encode_payload(payload: BackupPayload, indent: Optional[int] = None) -> bytes:
    if indent is None:
        indent = get_settings().reportIndent
    text = json.dumps(payload_document(payload), sort_keys=True, indent=indent, ensure_ascii=False)
    return text.encode("utf-8")


def _file_timestamp(now: Optional[datetime]) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def merged_backup_filename(now: Optional[datetime] = None) -> str:
    return f"{MERGED_BACKUP_PREFIX}-{_file_timestamp(now)}.{FILE_EXTENSION}"


def conflict_report_filename(now: Optional[datetime] = None) -> str:
    return f"{CONFLICT_REPORT_PREFIX}-{_file_timestamp(now)}.{FILE_EXTENSION}"
