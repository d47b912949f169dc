"""
Collaborator interfaces consumed by the change engine.

    ChangeNumberGenerator.next_id(tenant_id, sequence) -> str
    RoleResolver.resolve(tenant_id, role) -> list[str]
    Notifier.notify(change, event, recipients=None, message="") -> None

The defaults below are wired into ``app.extensions["change_collaborators"]``
by create_app; hosts replace any of them by assigning a different object
to the matching attribute of that registry.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from flask import current_app, has_app_context
from sqlalchemy import select

from change_engine.models import db
from change_engine.models.change_request import ChangeSequence
from change_engine.models.tenant import Tenant
from change_engine.services.notification import NotificationService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "change_collaborators"


# ═════════════════════════════════════════════════════════════════════════════
# Interfaces
# ═════════════════════════════════════════════════════════════════════════════

class ChangeNumberGenerator(ABC):
    @abstractmethod
    def next_id(self, tenant_id: int, sequence: str) -> str:
        """Mint the next human-readable identifier for *sequence*."""


class RoleResolver(ABC):
    @abstractmethod
    def resolve(self, tenant_id: int, role: str) -> list[str]:
        """Identities holding *role* in the tenant (may be empty)."""


class Notifier(ABC):
    @abstractmethod
    def notify(self, change, event: str, *, recipients=None, message: str = "") -> None:
        """Hand a change event to the delivery side. Must not block."""


# ═════════════════════════════════════════════════════════════════════════════
# Defaults
# ═════════════════════════════════════════════════════════════════════════════

class SequenceNumberGenerator(ChangeNumberGenerator):
    """Counter row per (tenant, sequence) in ``change_sequences``.

    The increment runs in the caller's transaction, so a rolled-back create
    gives its number back instead of leaving a gap.
    """

    def __init__(self, prefix: str | None = None, width: int = 6):
        self._prefix = prefix
        self.width = width

    @property
    def prefix(self) -> str:
        if self._prefix:
            return self._prefix
        if has_app_context():
            return current_app.config.get("CHANGE_NUMBER_PREFIX", "CHG")
        return "CHG"

    def next_id(self, tenant_id: int, sequence: str) -> str:
        row = db.session.execute(
            select(ChangeSequence)
            .where(ChangeSequence.tenant_id == tenant_id, ChangeSequence.name == sequence)
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            row = ChangeSequence(tenant_id=tenant_id, name=sequence, last_value=0)
            db.session.add(row)
        row.last_value = (row.last_value or 0) + 1
        db.session.flush()
        return f"{self.prefix}-{row.last_value:0{self.width}d}"


class TenantSettingsRoleResolver(RoleResolver):
    """Reads ``Tenant.settings["role_members"] = {role: [identity, ...]}``."""

    def resolve(self, tenant_id: int, role: str) -> list[str]:
        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None:
            return []
        members = ((tenant.settings or {}).get("role_members") or {}).get(role) or []
        return [str(m) for m in members]


class OutboxNotifier(Notifier):
    """Queues Notification rows in the current transaction."""

    def notify(self, change, event: str, *, recipients=None, message: str = "") -> None:
        NotificationService.notify_change_event(change, event, recipients=recipients, message=message)


@dataclass
class Collaborators:
    numbers: ChangeNumberGenerator = field(default_factory=SequenceNumberGenerator)
    roles: RoleResolver = field(default_factory=TenantSettingsRoleResolver)
    notifier: Notifier = field(default_factory=OutboxNotifier)


_fallback = Collaborators()


def get_collaborators() -> Collaborators:
    """Registry of the running app, or the defaults outside an app."""
    if has_app_context():
        registry = current_app.extensions.get(EXTENSION_KEY)
        if registry is not None:
            return registry
    return _fallback
