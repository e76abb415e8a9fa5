"""CSV template API.

POST   /api/csv/templates/upload        — derive a template from a file's headers
GET    /api/csv/templates               — active templates, newest first
GET    /api/csv/templates/{id}/download — rendered template CSV
DELETE /api/csv/templates/{id}          — remove a template and its stored file
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, File, Form, HTTPException, Query, Response, UploadFile, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from app.database import get_db
from app.models.template import CsvTemplate
from app.services.bulk_intake import IntakeError, check_user_id
from app.services.storage import BUCKET_CSV_TEMPLATES, URL_PREFIX, get_storage
from generapix.csv_loader import SUPPORTED_EXTENSIONS, read_headers
from generapix.templates import (
    MIN_TEMPLATE_COLUMNS,
    column_descriptions,
    headers_csv,
    render_template_csv,
    sample_row,
    split_columns,
    template_name,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/csv/templates", tags=["templates"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class TemplateResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: str
    user_id: str
    name: str
    description: str
    template_type: str
    required_columns: list[str]
    optional_columns: list[str]
    column_descriptions: dict | None
    download_count: int
    file_url: str
    created_at: datetime


class TemplateUploadResponse(BaseModel):
    success: bool = True
    message: str = "Template uploaded successfully"
    template: TemplateResponse


class TemplateListResponse(BaseModel):
    templates: list[TemplateResponse]
    total: int


def _to_response(template: CsvTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        user_id=template.user_id,
        name=template.name,
        description=template.description,
        template_type=template.template_type,
        required_columns=template.required_columns or [],
        optional_columns=template.optional_columns or [],
        column_descriptions=template.column_descriptions,
        download_count=template.download_count,
        file_url=f"{URL_PREFIX}{template.storage_bucket}/{template.storage_path}",
        created_at=template.created_at,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/upload", response_model=TemplateUploadResponse)
async def upload_template(
    file: UploadFile = File(..., description="CSV or Excel file; its header row defines the template"),
    user_id: str = Form(default=""),
) -> TemplateUploadResponse:
    """Create a template from an uploaded file's header row.

    Only the headers are kept; data rows in the upload are ignored.
    """
    try:
        user_id = check_user_id(user_id)
    except IntakeError as exc:
        raise HTTPException(exc.status_code, exc.message) from exc

    filename = Path(file.filename or "template.csv").name
    if Path(filename).suffix.lower() not in SUPPORTED_EXTENSIONS:
        raise HTTPException(400, "File must be a CSV or Excel file (.csv, .xlsx, .xls)")

    content = await file.read()
    try:
        headers = read_headers(content, filename)
    except ValueError as exc:
        logger.info("Could not parse template %s: %s", filename, exc)
        raise HTTPException(400, f"Could not parse file: {exc}") from exc

    if not headers:
        raise HTTPException(400, "Template file is empty or has no valid headers")
    if len(headers) < MIN_TEMPLATE_COLUMNS:
        raise HTTPException(400, f"Template must have at least {MIN_TEMPLATE_COLUMNS} columns")

    timestamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
    path = f"{user_id}/template_{timestamp}_{Path(filename).stem}.csv"
    data = headers_csv(headers)
    storage = get_storage()
    try:
        storage.store_file(BUCKET_CSV_TEMPLATES, path, data, overwrite=False)
    except OSError:
        logger.exception("Failed to store template file %s", path)
        raise HTTPException(500, "Failed to store template file") from None

    required, optional = split_columns(headers)
    db = get_db()
    try:
        template = CsvTemplate(
            user_id=user_id,
            name=template_name(filename),
            description="Custom template uploaded by user",
            required_columns=required,
            optional_columns=optional,
            column_descriptions=column_descriptions(headers),
            sample_data=[sample_row(headers)],
            storage_bucket=BUCKET_CSV_TEMPLATES,
            storage_path=path,
            file_size_bytes=len(data),
        )
        db.add(template)
        db.commit()
        db.refresh(template)
        response = _to_response(template)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to create template record for %s", path)
        storage.delete(BUCKET_CSV_TEMPLATES, path)
        raise HTTPException(500, "Failed to create template record") from None
    finally:
        db.close()

    logger.info("Template %s created from %s (%d columns)", response.id, filename, len(headers))
    return TemplateUploadResponse(template=response)


@router.get("", response_model=TemplateListResponse)
def list_templates(user_id: str | None = Query(default=None)) -> TemplateListResponse:
    """Active templates, optionally limited to one user's uploads."""
    db = get_db()
    try:
        query = db.query(CsvTemplate).filter(CsvTemplate.is_active.is_(True))
        if user_id:
            query = query.filter(CsvTemplate.user_id == user_id)
        rows = query.order_by(CsvTemplate.created_at.desc(), CsvTemplate.id).all()
        templates = [_to_response(t) for t in rows]
    finally:
        db.close()
    return TemplateListResponse(templates=templates, total=len(templates))


@router.get("/{template_id}/download")
def download_template(template_id: str) -> Response:
    """Render the template as CSV and count the download."""
    db = get_db()
    try:
        template = db.get(CsvTemplate, template_id)
        if template is None or not template.is_active:
            raise HTTPException(status_code=404, detail="Template not found")
        content = render_template_csv(
            template.columns, template.column_descriptions, template.sample_data
        )
        template.download_count = (template.download_count or 0) + 1
        db.commit()
        attachment = re.sub(r"[^A-Za-z0-9._-]+", "_", template.name) + "_template.csv"
    finally:
        db.close()

    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{attachment}"',
            "Cache-Control": "no-cache",
        },
    )


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template(template_id: str) -> Response:
    """Delete a template record and (best-effort) its stored file."""
    db = get_db()
    try:
        template = db.get(CsvTemplate, template_id)
        if template is None:
            raise HTTPException(status_code=404, detail="Template not found")
        bucket, path = template.storage_bucket, template.storage_path
        db.delete(template)
        db.commit()
    finally:
        db.close()

    try:
        get_storage().delete(bucket, path)
    except OSError:
        logger.warning("Could not delete stored file for template %s", template_id, exc_info=True)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
