from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.bulk.exporter import stream_export
from app.core.errors import request_id_for
from app.core.rate_limit import rate_limit
from app.core.security import Actor, require_permission
from app.db.session import get_db
from app.services.audit import log_audit

router = APIRouter(tags=["Exports"])


def _export(entity: str, request: Request, actor: Actor, db: Session) -> StreamingResponse:
    lines, filename = stream_export(db, actor.tenant_id, entity)
    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="export.download",
        entity_type=entity,
        entity_id=None,
        request_id=request_id_for(request),
        metadata={"filename": filename, "entity": entity},
    )
    return StreamingResponse(
        lines,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/exports/customers.csv", dependencies=[Depends(rate_limit("exports"))])
def export_customers(
    request: Request,
    actor: Actor = Depends(require_permission("exports.read")),
    db: Session = Depends(get_db),
):
    return _export("customers", request, actor, db)


@router.get("/exports/estimates.csv", dependencies=[Depends(rate_limit("exports"))])
def export_estimates(
    request: Request,
    actor: Actor = Depends(require_permission("exports.read")),
    db: Session = Depends(get_db),
):
    return _export("estimates", request, actor, db)


@router.get("/exports/jobs.csv", dependencies=[Depends(rate_limit("exports"))])
def export_jobs(
    request: Request,
    actor: Actor = Depends(require_permission("exports.read")),
    db: Session = Depends(get_db),
):
    return _export("jobs", request, actor, db)


@router.get("/exports/storage.csv", dependencies=[Depends(rate_limit("exports"))])
def export_storage(
    request: Request,
    actor: Actor = Depends(require_permission("exports.read")),
    db: Session = Depends(get_db),
):
    return _export("storage", request, actor, db)
