from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.bulk.config import MODE_APPLY, MODE_DRY_RUN, SEVERITY_ERROR, SEVERITY_WARN
from app.bulk.exporter import build_errors_csv
from app.bulk.importer import (
    TOP_MESSAGES_LIMIT,
    list_row_results,
    load_run,
    row_result_message,
    run_import,
    stored_summary,
)
from app.bulk.parser import parse_import_file
from app.bulk.templates import build_template
from app.core.errors import bad_request, not_found, request_id_for
from app.core.rate_limit import rate_limit
from app.core.security import (
    Actor,
    get_settings_from_request,
    require_any_permission,
    require_csrf,
    require_permission,
)
from app.db import models
from app.db.session import get_db
from app.services.formatting import iso_timestamp, parse_uuid

router = APIRouter(tags=["Imports"])


class ImportResultCounts(BaseModel):
    created: int = 0
    updated: int = 0
    skipped: int = 0
    error: int = 0


class ImportSummary(BaseModel):
    rowsTotal: int = 0
    rowsValid: int = 0
    rowsError: int = 0
    customer: ImportResultCounts = ImportResultCounts()
    estimate: ImportResultCounts = ImportResultCounts()
    job: ImportResultCounts = ImportResultCounts()
    storageRecord: ImportResultCounts = ImportResultCounts()


class ImportRowMessage(BaseModel):
    rowNumber: int
    severity: str
    entityType: str
    result: str
    idempotencyKey: str
    field: str | None = None
    message: str
    rawValue: str | None = None
    targetEntityId: str | None = None


class ImportDownloadUrls(BaseModel):
    errorsCsv: str
    reportJson: str


class ImportRunResponse(BaseModel):
    importRunId: str
    mode: str
    status: str
    source: str
    filename: str
    summary: ImportSummary
    topWarnings: list[ImportRowMessage]
    topErrors: list[ImportRowMessage]
    downloadUrls: ImportDownloadUrls
    createdAt: str
    completedAt: str | None = None
    requestId: str


class ImportRunReport(BaseModel):
    run: ImportRunResponse
    rows: list[ImportRowMessage]
    requestId: str


def run_response(
    run: models.ImportRun,
    summary: dict,
    warnings: list[dict],
    errors: list[dict],
    request_id: str,
) -> ImportRunResponse:
    return ImportRunResponse(
        importRunId=run.id,
        mode=run.mode,
        status=run.status,
        source=run.source,
        filename=run.filename,
        summary=ImportSummary(**summary),
        topWarnings=[ImportRowMessage(**message) for message in warnings],
        topErrors=[ImportRowMessage(**message) for message in errors],
        downloadUrls=ImportDownloadUrls(
            errorsCsv=f"/api/imports/{run.id}/errors.csv",
            reportJson=f"/api/imports/{run.id}/report.json",
        ),
        createdAt=iso_timestamp(run.created_at),
        completedAt=iso_timestamp(run.completed_at),
        requestId=request_id,
    )


def _stored_run_response(db: Session, run: models.ImportRun, request_id: str) -> ImportRunResponse:
    warnings = list_row_results(db, run.tenant_id, run.id, SEVERITY_WARN, TOP_MESSAGES_LIMIT)
    errors = list_row_results(db, run.tenant_id, run.id, SEVERITY_ERROR, TOP_MESSAGES_LIMIT)
    return run_response(
        run,
        stored_summary(run),
        [row_result_message(result) for result in warnings],
        [row_result_message(result) for result in errors],
        request_id,
    )


def _handle_import(
    mode: str,
    request: Request,
    file: UploadFile | None,
    options: str | None,
    actor: Actor,
    db: Session,
) -> ImportRunResponse:
    content_type = request.headers.get("content-type", "").lower()
    if not content_type.startswith("multipart/form-data"):
        raise bad_request("invalid_content_type", "Content-Type must be multipart/form-data")
    if file is None:
        raise bad_request("missing_file", "file is required")

    settings = get_settings_from_request(request)
    parsed = parse_import_file(
        filename=file.filename or "",
        content_type=file.content_type,
        data=file.file.read(),
        options_raw=options,
        max_rows=settings.IMPORT_MAX_ROWS,
    )
    request_id = request_id_for(request)
    result = run_import(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        mode=mode,
        parsed=parsed,
        request_id=request_id,
    )
    return run_response(result.run, result.summary, result.top_warnings, result.top_errors, request_id)


@router.post(
    "/imports/dry-run",
    response_model=ImportRunResponse,
    dependencies=[Depends(rate_limit("imports")), Depends(require_csrf)],
)
def import_dry_run(
    request: Request,
    file: UploadFile | None = File(None),
    options: str | None = Form(None),
    actor: Actor = Depends(require_permission("imports.write")),
    db: Session = Depends(get_db),
):
    return _handle_import(MODE_DRY_RUN, request, file, options, actor, db)


@router.post(
    "/imports/apply",
    response_model=ImportRunResponse,
    dependencies=[Depends(rate_limit("imports")), Depends(require_csrf)],
)
def import_apply(
    request: Request,
    file: UploadFile | None = File(None),
    options: str | None = Form(None),
    actor: Actor = Depends(require_permission("imports.write")),
    db: Session = Depends(get_db),
):
    return _handle_import(MODE_APPLY, request, file, options, actor, db)


@router.get("/imports/templates/{template}.csv")
def download_import_template(
    template: str,
    actor: Actor = Depends(require_any_permission("imports.read", "exports.read")),
):
    built = build_template(template)
    if built is None:
        raise not_found("template_not_found", "Import template not found")
    content, filename = built
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get(
    "/imports/{import_run_id}",
    response_model=ImportRunResponse,
    dependencies=[Depends(rate_limit("imports"))],
)
def get_import_run(
    import_run_id: str,
    request: Request,
    actor: Actor = Depends(require_permission("imports.read")),
    db: Session = Depends(get_db),
):
    import_run_id = parse_uuid(import_run_id, "invalid_import_run_id", "Import run")
    run = load_run(db, actor.tenant_id, import_run_id)
    return _stored_run_response(db, run, request_id_for(request))


@router.get(
    "/imports/{import_run_id}/errors.csv",
    dependencies=[Depends(rate_limit("imports"))],
)
def download_import_errors(
    import_run_id: str,
    actor: Actor = Depends(require_permission("imports.read")),
    db: Session = Depends(get_db),
):
    import_run_id = parse_uuid(import_run_id, "invalid_import_run_id", "Import run")
    run = load_run(db, actor.tenant_id, import_run_id)
    content = build_errors_csv(list_row_results(db, actor.tenant_id, run.id))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-{run.id}-errors.csv"'},
    )


@router.get(
    "/imports/{import_run_id}/report.json",
    response_model=ImportRunReport,
    dependencies=[Depends(rate_limit("imports"))],
)
def download_import_report(
    import_run_id: str,
    request: Request,
    actor: Actor = Depends(require_permission("imports.read")),
    db: Session = Depends(get_db),
):
    import_run_id = parse_uuid(import_run_id, "invalid_import_run_id", "Import run")
    run = load_run(db, actor.tenant_id, import_run_id)
    request_id = request_id_for(request)
    rows = list_row_results(db, actor.tenant_id, run.id)
    return ImportRunReport(
        run=_stored_run_response(db, run, request_id),
        rows=[ImportRowMessage(**row_result_message(result)) for result in rows],
        requestId=request_id,
    )
