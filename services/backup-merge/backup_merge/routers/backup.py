import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from pydantic import ValidationError

from ..backup.codec import (
    BackupError,
    conflict_report_filename,
    decode_payload,
    encode_payload,
    merged_backup_filename,
    payload_document,
)
from ..backup.validator import validate_against_schema
from ..config import get_settings
from ..merge.engine import merge_backups
from ..merge.report import ExportError, export_conflict_report
from ..schemas.merge import MergeConflictReport, MergeStrategy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup", tags=["backup"])


def _file_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _strategy(body: Dict[str, Any]) -> MergeStrategy:
    raw = body.get("strategy") or get_settings().defaultStrategy
    try:
        return MergeStrategy(raw)
    except ValueError as error:
        raise HTTPException(status_code=400, detail=f"Unsupported strategy: {raw}") from error


@router.post("/merge")
async def merge(body: Dict[str, Any]) -> Dict[str, Any]:
    if body.get("primary") is None or body.get("secondary") is None:
        raise HTTPException(status_code=400, detail="primary and secondary required")
    strategy = _strategy(body)
    try:
        primary = decode_payload(body["primary"])
        secondary = decode_payload(body["secondary"])
    except BackupError as error:
        logger.info("Merge request rejected (%s)", error.code)
        raise HTTPException(status_code=400, detail=f"Merge failed: {error.message}") from error

    now = datetime.now(timezone.utc)
    result = merge_backups(primary, secondary, strategy, now=now)
    return {
        "success": result.success,
        "hasConflicts": result.hasConflicts,
        "merged": payload_document(result.merged) if result.merged else None,
        "conflicts": result.conflicts.model_dump(mode="json") if result.conflicts else None,
        "filename": merged_backup_filename(now) if result.success else conflict_report_filename(now),
    }


@router.post("/export")
async def export_merged(body: Dict[str, Any]) -> Response:
    document = body.get("payload")
    if document is None:
        raise HTTPException(status_code=400, detail="payload required")
    try:
        payload = decode_payload(document)
    except BackupError as error:
        raise HTTPException(status_code=400, detail=f"Export failed: {error.message}") from error
    return _file_response(encode_payload(payload), merged_backup_filename())


@router.post("/conflict-report")
async def export_report(body: Dict[str, Any]) -> Response:
    document = body.get("report")
    if document is None:
        raise HTTPException(status_code=400, detail="report required")
    try:
        report = MergeConflictReport.model_validate(document)
    except ValidationError as error:
        raise HTTPException(status_code=400, detail="report is not a conflict report") from error
    try:
        content = export_conflict_report(report)
    except ExportError as error:
        raise HTTPException(status_code=500, detail=str(error)) from error
    return _file_response(content, conflict_report_filename(report.generatedAt))


@router.post("/validate")
async def validate(body: Dict[str, Any]) -> Dict[str, Any]:
    schema = body.get("schema") or "backup"
    if schema not in ("backup", "conflict_report"):
        raise HTTPException(status_code=400, detail="Unsupported schema")
    return validate_against_schema(schema, body.get("document"))
