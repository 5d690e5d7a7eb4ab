from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import conflict, not_found, request_id_for, validation_error
from app.core.security import Actor, require_csrf, require_permission
from app.db import models
from app.db.session import get_db
from app.services.audit import log_audit
from app.services.formatting import clean_optional, iso_timestamp, parse_uuid

router = APIRouter(tags=["Customers"])


class CustomerCreate(BaseModel):
    firstName: str = ""
    lastName: str = ""
    email: str | None = None
    phone: str | None = None


class CustomerResponse(BaseModel):
    id: str
    tenantId: str
    firstName: str
    lastName: str
    email: str | None = None
    phone: str | None = None
    createdAt: str
    updatedAt: str


def to_response(customer: models.Customer) -> CustomerResponse:
    return CustomerResponse(
        id=customer.id,
        tenantId=customer.tenant_id,
        firstName=customer.first_name,
        lastName=customer.last_name,
        email=customer.email,
        phone=customer.phone,
        createdAt=iso_timestamp(customer.created_at),
        updatedAt=iso_timestamp(customer.updated_at),
    )


def find_customer_by_email(db: Session, tenant_id: str, email: str) -> models.Customer | None:
    return (
        db.query(models.Customer)
        .filter(
            models.Customer.tenant_id == tenant_id,
            func.lower(models.Customer.email) == email.lower(),
        )
        .first()
    )


@router.post(
    "/customers",
    status_code=201,
    response_model=CustomerResponse,
    dependencies=[Depends(require_csrf)],
)
def create_customer(
    payload: CustomerCreate,
    request: Request,
    actor: Actor = Depends(require_permission("customers.write")),
    db: Session = Depends(get_db),
):
    first_name = payload.firstName.strip()
    last_name = payload.lastName.strip()
    if not first_name or not last_name:
        raise validation_error("firstName and lastName are required")

    email = clean_optional(payload.email)
    customer = models.Customer(
        tenant_id=actor.tenant_id,
        first_name=first_name,
        last_name=last_name,
        email=email.lower() if email else None,
        phone=clean_optional(payload.phone),
        created_by=actor.user_id,
        updated_by=actor.user_id,
    )
    db.add(customer)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise conflict("customer_exists", "Customer with this email already exists")
    db.refresh(customer)

    log_audit(
        db,
        tenant_id=actor.tenant_id,
        user_id=actor.user_id,
        action="customers.create",
        entity_type="customer",
        entity_id=customer.id,
        request_id=request_id_for(request),
    )
    return to_response(customer)


@router.get("/customers/{customer_id}", response_model=CustomerResponse)
def get_customer(
    customer_id: str,
    actor: Actor = Depends(require_permission("customers.read")),
    db: Session = Depends(get_db),
):
    customer_id = parse_uuid(customer_id, "invalid_customer_id", "Customer")
    customer = (
        db.query(models.Customer)
        .filter(models.Customer.id == customer_id, models.Customer.tenant_id == actor.tenant_id)
        .first()
    )
    if not customer:
        raise not_found("customer_not_found", "Customer was not found")
    return to_response(customer)
