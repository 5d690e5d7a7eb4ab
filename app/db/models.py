import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=_uuid)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="users_tenant_email_key"),)

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    email = Column(String, nullable=False, index=True)
    full_name = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    tenant = relationship("Tenant", back_populates="users")
    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="roles_tenant_name_key"),)

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")
    users = relationship("UserRole", back_populates="role", cascade="all, delete-orphan")


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False, unique=True)
    description = Column(String, nullable=True)

    roles = relationship("RolePermission", back_populates="permission", cascade="all, delete-orphan")


class RolePermission(Base):
    __tablename__ = "role_permissions"
    __table_args__ = (UniqueConstraint("role_id", "permission_id", name="role_permissions_key"),)

    id = Column(String, primary_key=True, default=_uuid)
    role_id = Column(String, ForeignKey("roles.id"), nullable=False)
    permission_id = Column(String, ForeignKey("permissions.id"), nullable=False)

    role = relationship("Role", back_populates="permissions")
    permission = relationship("Permission", back_populates="roles")


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", "role_id", name="user_roles_key"),)

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    role_id = Column(String, ForeignKey("roles.id"), nullable=False)

    user = relationship("User", back_populates="roles")
    role = relationship("Role", back_populates="users")


class UserSession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    token_hash = Column(String, nullable=False, unique=True)
    csrf_token = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")
    tenant = relationship("Tenant")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    updated_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


Index(
    "customers_tenant_email_uidx",
    Customer.tenant_id,
    func.lower(Customer.email),
    unique=True,
)


class Estimate(Base):
    __tablename__ = "estimates"
    __table_args__ = (
        UniqueConstraint("tenant_id", "estimate_number", name="estimates_tenant_number_key"),
        UniqueConstraint("tenant_id", "idempotency_key", name="estimates_tenant_idempotency_uidx"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    estimate_number = Column(String, nullable=False)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False)
    customer_name = Column(String, nullable=False)
    primary_phone = Column(String, nullable=False)
    secondary_phone = Column(String, nullable=True)
    email = Column(String, nullable=False)
    status = Column(String, nullable=False, default="draft")
    origin_address_line1 = Column(String, nullable=False)
    origin_city = Column(String, nullable=False)
    origin_state = Column(String, nullable=False)
    origin_postal_code = Column(String, nullable=False)
    destination_address_line1 = Column(String, nullable=False)
    destination_city = Column(String, nullable=False)
    destination_state = Column(String, nullable=False)
    destination_postal_code = Column(String, nullable=False)
    move_date = Column(Date, nullable=False)
    pickup_time = Column(String, nullable=True)
    lead_source = Column(String, nullable=False)
    move_size = Column(String, nullable=True)
    location_type = Column(String, nullable=True)
    estimated_total_cents = Column(Integer, nullable=True)
    deposit_cents = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    converted_job_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    idempotency_payload_hash = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    updated_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    customer = relationship("Customer")


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("tenant_id", "job_number", name="jobs_tenant_number_key"),
        UniqueConstraint("tenant_id", "estimate_id", name="jobs_tenant_estimate_uidx"),
        UniqueConstraint("tenant_id", "convert_idempotency_key", name="jobs_tenant_convert_idempotency_uidx"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    job_number = Column(String, nullable=False)
    estimate_id = Column(String, ForeignKey("estimates.id"), nullable=True)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False)
    status = Column(String, nullable=False, default="booked")
    scheduled_date = Column(Date, nullable=True, index=True)
    pickup_time = Column(String, nullable=True)
    job_type = Column(String, nullable=True)
    convert_idempotency_key = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    updated_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    customer = relationship("Customer")
    estimate = relationship("Estimate", foreign_keys=[estimate_id])
    storage_record = relationship("StorageRecord", back_populates="job", uselist=False)


class StorageRecord(Base):
    __tablename__ = "storage_records"
    __table_args__ = (UniqueConstraint("tenant_id", "job_id", name="storage_record_tenant_job_uidx"),)

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False)
    facility = Column(String, nullable=False)
    status = Column(String, nullable=False, default="in_storage")
    date_in = Column(Date, nullable=True)
    date_out = Column(Date, nullable=True)
    next_bill_date = Column(Date, nullable=True)
    lot_number = Column(String, nullable=True)
    location_label = Column(String, nullable=True)
    vaults = Column(Integer, nullable=False, default=0)
    pads = Column(Integer, nullable=False, default=0)
    items = Column(Integer, nullable=False, default=0)
    oversize_items = Column(Integer, nullable=False, default=0)
    volume = Column(Integer, nullable=False, default=0)
    monthly_rate_cents = Column(Integer, nullable=True)
    storage_balance_cents = Column(Integer, nullable=False, default=0)
    move_balance_cents = Column(Integer, nullable=False, default=0)
    last_payment_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    updated_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="storage_record")


class TenantCounter(Base):
    __tablename__ = "tenant_counters"
    __table_args__ = (UniqueConstraint("tenant_id", "counter_type", name="tenant_counters_key"),)

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    counter_type = Column(String, nullable=False)
    value = Column(Integer, nullable=False, default=0)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    request_id = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ImportRun(Base):
    __tablename__ = "import_runs"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)
    created_by_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    source = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    file_sha256 = Column(String, nullable=False)
    mode = Column(String, nullable=False)
    status = Column(String, nullable=False, default="failed")
    mapping_json = Column(JSON, nullable=False, default=dict)
    summary_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)


class ImportRowResult(Base):
    __tablename__ = "import_row_results"
    __table_args__ = (
        UniqueConstraint(
            "import_run_id",
            "row_number",
            "entity_type",
            "idempotency_key",
            name="import_row_results_key",
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    import_run_id = Column(String, ForeignKey("import_runs.id"), nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    entity_type = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    result = Column(String, nullable=False)
    field = Column(String, nullable=True)
    message = Column(String, nullable=False)
    raw_value = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ImportIdempotency(Base):
    __tablename__ = "import_idempotency"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_type", "idempotency_key", name="import_idempotency_key"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False)
    entity_type = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)
    target_entity_id = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
