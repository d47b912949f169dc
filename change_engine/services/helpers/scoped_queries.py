"""
Tenant-scoped query helpers.

Every get-by-id in the change engine goes through these helpers instead of
db.session.get(Model, pk). A plain .get() bypasses tenant isolation.

Usage:
    change = get_scoped(ChangeRequest, change_id, tenant_id=tenant_id)

    # When None is an acceptable outcome (optional FK lookups)
    category = get_scoped_or_none(ChangeCategory, category_id, tenant_id=tenant_id)

Cross-tenant access is indistinguishable from a missing record: both raise
NotFoundError → HTTP 404.
"""

import logging

from sqlalchemy import select

from change_engine.core.exceptions import NotFoundError
from change_engine.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk, *, tenant_id: int | None = None, for_update: bool = False):
    """Fetch a single entity by PK inside one tenant.

    Args:
        model: SQLAlchemy model class with ``id`` and ``tenant_id`` columns.
        pk: Primary key value to look up.
        tenant_id: Mandatory scope. ``None`` is a programming error.
        for_update: Emit SELECT ... FOR UPDATE where the backend supports it.

    Raises:
        ValueError: If no tenant scope is provided or the model has no
                    tenant_id column.
        NotFoundError: If the entity does not exist OR belongs to a different
                       tenant.
    """
    if tenant_id is None:
        raise ValueError(
            f"{model.__name__} id={pk} requires a tenant_id scope. "
            "Unscoped lookups are forbidden."
        )
    if not hasattr(model, "tenant_id"):
        raise ValueError(f"{model.__name__} has no tenant_id column; refusing an unscoped lookup.")

    try:
        pk = int(pk)
    except (TypeError, ValueError):
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id) from None

    stmt = select(model).where(model.id == pk, model.tenant_id == tenant_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug("get_scoped: %s id=%s not found for tenant %s", model.__name__, pk, tenant_id)
        raise NotFoundError(resource=model.__name__, resource_id=pk, tenant_id=tenant_id)
    return result


def get_scoped_or_none(model, pk, *, tenant_id: int | None = None):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    if pk is None:
        return None
    try:
        return get_scoped(model, pk, tenant_id=tenant_id)
    except NotFoundError:
        return None
