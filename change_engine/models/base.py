"""
TenantModel — Abstract base class for tenant-scoped models.

Every change-management table inherits from TenantModel instead of
db.Model directly. This adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
  - created/updated audit columns shared by reference data and requests
"""

from datetime import datetime, timezone

from change_engine.models import db


def utcnow():
    return datetime.now(timezone.utc)


def iso(value):
    """Serialise an optional datetime the way every to_dict() does."""
    return as_utc(value).isoformat() if value else None


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)


class AuditedTenantModel(TenantModel):
    """Tenant-scoped table with who/when columns."""
    __abstract__ = True

    created_by = db.Column(db.String(150), default="system")
    updated_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on DateTime(timezone=True) columns, so anything read
    back from the store goes through here before being compared with utcnow().
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
