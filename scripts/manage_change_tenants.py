#!/usr/bin/env python3
"""
Change Engine — Tenant & settings management CLI.

Commands:
    python scripts/manage_change_tenants.py list
    python scripts/manage_change_tenants.py create <slug> --name "Acme Corp" [--plan starter]
    python scripts/manage_change_tenants.py deactivate <tenant_id>
    python scripts/manage_change_tenants.py init-settings <tenant_id>
    python scripts/manage_change_tenants.py set-role <tenant_id> <role> <identity> [<identity> ...]
    python scripts/manage_change_tenants.py sweep [--tenant-id N]

Usage in docker:
    docker compose exec app python scripts/manage_change_tenants.py list
"""

import argparse
import os
import sys

sys.path.insert(0, ".")


def _app():
    from change_engine import create_app
    return create_app(os.getenv("APP_ENV", "development"))


def cmd_list(args):
    """List all tenants with their change counts."""
    from change_engine.models.change_request import ChangeRequest
    from change_engine.models.tenant import Tenant

    tenants = Tenant.query.order_by(Tenant.id).all()
    print(f"\n  Tenants ({len(tenants)})")
    print("  " + "═" * 60)
    for t in tenants:
        count = ChangeRequest.query_for_tenant(t.id).count()
        state = "active" if t.is_active else "inactive"
        print(f"  {t.id:<6} {t.slug:<20} {t.name:<25} {state:<9} changes={count}")
    print()


def cmd_create(args):
    """Register a new tenant."""
    from change_engine.models import db
    from change_engine.models.tenant import Tenant

    slug = args.slug.strip().lower()
    if Tenant.query.filter_by(slug=slug).first():
        print(f"  ⚠️  Tenant '{slug}' already exists")
        sys.exit(1)
    tenant = Tenant(name=args.name or slug.replace("-", " ").title(), slug=slug, plan=args.plan)
    db.session.add(tenant)
    db.session.commit()
    print(f"  ✅ Tenant created: id={tenant.id} slug={slug}")


def cmd_deactivate(args):
    from change_engine.models import db
    from change_engine.models.tenant import Tenant

    tenant = db.session.get(Tenant, args.tenant_id)
    if tenant is None:
        print(f"  ❌ Tenant {args.tenant_id} not found")
        sys.exit(1)
    tenant.is_active = False
    db.session.commit()
    print(f"  ✅ Tenant {tenant.slug} deactivated")


def cmd_init_settings(args):
    """Seed the default risk matrix, workflows and categories."""
    from change_engine.core.exceptions import ConflictError
    from change_engine.services.change_settings_service import initialize_defaults

    try:
        created = initialize_defaults(args.tenant_id, user="cli")
    except ConflictError:
        print(f"  ⚠️  Tenant {args.tenant_id} already has change settings")
        sys.exit(1)
    for bucket, rows in created.items():
        print(f"  ✅ {bucket}: {', '.join(r['name'] for r in rows)}")


def cmd_set_role(args):
    """Set the identities holding a role (used for approver notifications)."""
    from change_engine.models import db
    from change_engine.models.tenant import Tenant

    tenant = db.session.get(Tenant, args.tenant_id)
    if tenant is None:
        print(f"  ❌ Tenant {args.tenant_id} not found")
        sys.exit(1)
    settings = dict(tenant.settings or {})
    members = dict(settings.get("role_members") or {})
    members[args.role] = list(args.identities)
    settings["role_members"] = members
    tenant.settings = settings
    db.session.commit()
    print(f"  ✅ {args.role}: {', '.join(args.identities)}")


def cmd_sweep(args):
    """Run the approval timeout sweep once."""
    from change_engine.services.escalation import EscalationService

    summary = EscalationService.sweep_timeouts(tenant_id=args.tenant_id)
    print("  " + "  ".join(f"{k}={v}" for k, v in summary.items()))


def main():
    parser = argparse.ArgumentParser(description="Change Engine tenant management")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List tenants")

    p = sub.add_parser("create", help="Create a tenant")
    p.add_argument("slug")
    p.add_argument("--name", default=None)
    p.add_argument("--plan", default="trial")

    p = sub.add_parser("deactivate", help="Deactivate a tenant")
    p.add_argument("tenant_id", type=int)

    p = sub.add_parser("init-settings", help="Seed default change settings")
    p.add_argument("tenant_id", type=int)

    p = sub.add_parser("set-role", help="Set role members")
    p.add_argument("tenant_id", type=int)
    p.add_argument("role")
    p.add_argument("identities", nargs="+")

    p = sub.add_parser("sweep", help="Run the escalation sweep")
    p.add_argument("--tenant-id", type=int, default=None)

    args = parser.parse_args()
    handlers = {
        "list": cmd_list,
        "create": cmd_create,
        "deactivate": cmd_deactivate,
        "init-settings": cmd_init_settings,
        "set-role": cmd_set_role,
        "sweep": cmd_sweep,
    }
    with _app().app_context():
        handlers[args.command](args)


if __name__ == "__main__":
    main()
