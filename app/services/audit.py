import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db import models

logger = logging.getLogger("moveops.audit")


def log_audit(
    db: Session,
    *,
    tenant_id: str,
    user_id: str | None,
    action: str,
    entity_type: str,
    entity_id: str | None,
    request_id: str | None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append an audit row in its own commit.

    Called after the mutation it describes has been committed. A failure here
    is logged and rolled back so it never changes the caller's response.
    """
    try:
        db.add(
            models.AuditLog(
                tenant_id=tenant_id,
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                request_id=request_id,
                metadata_json=metadata or {},
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning(
            "audit write failed action=%s entity_type=%s entity_id=%s request_id=%s",
            action,
            entity_type,
            entity_id,
            request_id,
            exc_info=True,
        )
