"""Approval timeout sweep: auto-approve, auto-reject and escalation notices."""

from datetime import datetime, timedelta, timezone

from change_engine.models import db
from change_engine.models.notification import Notification
from change_engine.models.scheduling import ScheduledJob
from change_engine.services import change_request_service as svc
from change_engine.services import change_settings_service as settings
from change_engine.services.escalation import EscalationService
from change_engine.services.scheduler_service import SchedulerService, get_registered_jobs

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


def _sweep(tenant, hours):
    return EscalationService.sweep_timeouts(tenant_id=tenant.id, now=T0 + timedelta(hours=hours))


def _notices(tenant, change, event):
    return (Notification.query_for_tenant(tenant.id)
            .filter_by(change_request_id=change.id, event=event)
            .order_by(Notification.id).all())


def test_emergency_step_auto_approves_after_timeout(seeded_tenant, category_id):
    change = svc.create_change_request(seeded_tenant.id, {
        "title": "Hotfix payment gateway", "submitted_by": "alice",
        "category_id": category_id("Emergency"), "is_emergency": True,
    }, now=T0)
    assert change.approval_workflow_name == "Emergency Change Workflow"

    summary = _sweep(seeded_tenant, 1)
    assert summary["checked"] == 1
    assert summary["auto_approved"] == 0

    summary = _sweep(seeded_tenant, 3)
    assert summary["auto_approved"] == 1

    change = svc.get_change_request(seeded_tenant.id, change.id)
    assert change.status == "Approved"
    assert change.approved_by == "system"
    [record] = svc.get_approval_ledger(seeded_tenant.id, change.id)
    assert record.is_system is True
    assert record.approver == "system"
    assert record.step_number == 1
    assert _notices(seeded_tenant, change, "auto_approved")[0].recipient == "alice"

    assert _sweep(seeded_tenant, 4)["checked"] == 0


def test_escalation_notifies_path_at_notification_frequency(seeded_tenant, category_id):
    seeded_tenant.settings = {"role_members": {"Director": ["dana"]}}
    db.session.commit()
    change = svc.create_change_request(seeded_tenant.id, {
        "title": "Resize database cluster", "submitted_by": "alice",
        "category_id": category_id("Infrastructure"),
    }, now=T0)
    assert change.escalation_rules["timeout_action"] == "escalate"

    assert _sweep(seeded_tenant, 23)["escalated"] == 0
    assert _sweep(seeded_tenant, 25)["escalated"] == 1
    notices = _notices(seeded_tenant, change, "escalated")
    assert [n.recipient for n in notices] == ["dana", "CTO"]

    # inside the 8h notification window
    assert _sweep(seeded_tenant, 30)["escalated"] == 0
    assert _sweep(seeded_tenant, 34)["escalated"] == 1
    assert len(_notices(seeded_tenant, change, "escalated")) == 4

    change = svc.get_change_request(seeded_tenant.id, change.id)
    assert change.status == "Pending Approval"
    assert svc.get_approval_ledger(seeded_tenant.id, change.id) == []


def test_completing_step_restarts_escalation_clock(seeded_tenant, category_id):
    change = svc.create_change_request(seeded_tenant.id, {
        "title": "Resize database cluster", "submitted_by": "alice",
        "category_id": category_id("Infrastructure"),
    }, now=T0)
    assert _sweep(seeded_tenant, 25)["escalated"] == 1

    for approver in ("ann", "bob"):
        svc.approve(seeded_tenant.id, change.id, approver, now=T0 + timedelta(hours=26))
    change = svc.get_change_request(seeded_tenant.id, change.id)
    assert change.last_escalated_at is None

    # step 2 has a 48h timeout counted from T0+26h
    assert _sweep(seeded_tenant, 60)["escalated"] == 0
    assert _sweep(seeded_tenant, 75)["escalated"] == 1


def test_auto_reject_on_timeout(tenant):
    settings.create_setting(tenant.id, "approval_workflow", {
        "name": "Strict",
        "trigger_conditions": {},
        "approval_steps": [{"step_number": 1, "name": "Owner", "required_approvers": 1, "timeout_hours": 1}],
        "escalation_rules": {"timeout_action": "auto_reject"},
    })
    change = svc.create_change_request(tenant.id, {"title": "Open firewall port", "submitted_by": "alice"}, now=T0)

    assert _sweep(tenant, 2)["auto_rejected"] == 1
    change = svc.get_change_request(tenant.id, change.id)
    assert change.status == "Rejected"
    assert change.rejected_by == "system"
    assert "timeout" in change.rejection_reason
    [record] = svc.get_approval_ledger(tenant.id, change.id)
    assert (record.decision, record.is_system) == ("rejected", True)

    assert _sweep(tenant, 3)["checked"] == 0


def test_steps_without_timeout_are_never_touched(tenant):
    change = svc.create_change_request(tenant.id, {"title": "Rename DNS zone", "submitted_by": "alice"}, now=T0)
    summary = _sweep(tenant, 24 * 365)
    assert summary == {"checked": 1, "auto_approved": 0, "auto_rejected": 0, "escalated": 0, "conflicts": 0}
    assert svc.get_change_request(tenant.id, change.id).status == "Pending Approval"


def test_sweep_covers_only_active_tenants(seeded_tenant, other_tenant, category_id):
    svc.create_change_request(other_tenant.id, {"title": "Idle", "submitted_by": "gus"}, now=T0)
    svc.create_change_request(seeded_tenant.id, {
        "title": "Hotfix", "submitted_by": "alice",
        "category_id": category_id("Emergency"), "is_emergency": True,
    }, now=T0)
    other_tenant.is_active = False
    db.session.commit()

    summary = EscalationService.sweep_timeouts(now=T0 + timedelta(hours=3))
    assert summary["checked"] == 1
    assert summary["auto_approved"] == 1


def test_sweep_job_is_registered_and_records_runs(app, tenant):
    assert "change_escalation_sweep" in get_registered_jobs()
    SchedulerService.ensure_jobs_registered()

    result = SchedulerService.run_job("change_escalation_sweep")
    assert result["status"] == "success"
    assert result["result"]["checked"] == 0

    job = ScheduledJob.query.filter_by(job_name="change_escalation_sweep").one()
    db.session.refresh(job)
    assert job.run_count == 1
    assert job.last_run_status == "success"
    assert job.schedule_config["minutes"] == 15


def test_unknown_job():
    result = SchedulerService.run_job("does_not_exist")
    assert result["status"] == "error"
