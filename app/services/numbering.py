from sqlalchemy.orm import Session

from app.db import models

ESTIMATE_COUNTER = "estimate"
JOB_COUNTER = "job"


def next_counter_value(db: Session, tenant_id: str, counter_type: str) -> int:
    """Increment the tenant counter inside the caller's transaction.

    The UPDATE takes the row lock, so concurrent allocations serialize on it.
    A rolled-back caller releases the number along with its insert.
    """
    updated = (
        db.query(models.TenantCounter)
        .filter(
            models.TenantCounter.tenant_id == tenant_id,
            models.TenantCounter.counter_type == counter_type,
        )
        .update(
            {models.TenantCounter.value: models.TenantCounter.value + 1},
            synchronize_session=False,
        )
    )
    if not updated:
        db.add(models.TenantCounter(tenant_id=tenant_id, counter_type=counter_type, value=1))
        db.flush()
        return 1
    value = (
        db.query(models.TenantCounter.value)
        .filter(
            models.TenantCounter.tenant_id == tenant_id,
            models.TenantCounter.counter_type == counter_type,
        )
        .scalar()
    )
    return int(value)


def next_estimate_number(db: Session, tenant_id: str) -> str:
    return "E-%06d" % next_counter_value(db, tenant_id, ESTIMATE_COUNTER)


def next_job_number(db: Session, tenant_id: str) -> str:
    return "J-%06d" % next_counter_value(db, tenant_id, JOB_COUNTER)
