"""HTTP surface: tenant headers, error envelope, optimistic locking, ops endpoints."""

import pytest

from change_engine.models import db
from change_engine.models.notification import Notification


def _create(client, headers, tenant, **body):
    payload = {"title": "Rotate TLS certificates"}
    payload.update(body)
    res = client.post("/api/v1/changes", json=payload, headers=headers(tenant))
    assert res.status_code == 201, res.get_json()
    return res


# ── Tenant context ───────────────────────────────────────────────────────


class TestTenantContext:
    def test_missing_tenant_header(self, client):
        res = client.get("/api/v1/changes")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_non_integer_tenant_header(self, client):
        res = client.get("/api/v1/changes", headers={"X-Tenant-ID": "acme"})
        assert res.status_code == 400

    def test_unknown_tenant(self, client):
        res = client.get("/api/v1/changes", headers={"X-Tenant-ID": "999"})
        assert res.status_code == 404

    def test_inactive_tenant(self, client, tenant, headers):
        tenant.is_active = False
        db.session.commit()
        res = client.get("/api/v1/changes", headers=headers(tenant))
        assert res.status_code == 404

    def test_health_needs_no_tenant(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "ok"
        assert body["checks"]["database"]["status"] == "ok"

    def test_timing_headers(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "req-1"})
        assert res.headers["X-Request-ID"] == "req-1"
        assert "X-Request-Duration-Ms" in res.headers


# ── Change requests ──────────────────────────────────────────────────────


class TestChangeRequests:
    def test_create_returns_etag_and_snapshot(self, client, seeded_tenant, headers, category_id):
        res = _create(client, headers, seeded_tenant, category_id=category_id("Infrastructure"))
        body = res.get_json()
        assert body["change_number"] == "CHG-000001"
        assert body["status"] == "Pending Approval"
        assert body["submitted_by"] == "alice"
        assert res.headers["ETag"] == f'"{body["version"]}"'

    def test_create_validation_error_envelope(self, client, tenant, headers):
        res = client.post("/api/v1/changes", json={"title": ""}, headers=headers(tenant))
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert "title" in body["details"]

    def test_approve_flow_and_ledger(self, client, seeded_tenant, headers, category_id):
        change = _create(client, headers, seeded_tenant, category_id=category_id("Infrastructure")).get_json()
        url = f"/api/v1/changes/{change['id']}"

        for user in ("ann", "bob", "meg"):
            res = client.post(f"{url}/approve", json={"reason": "lgtm"}, headers=headers(seeded_tenant, user))
            assert res.status_code == 200
        assert res.get_json()["status"] == "Approved"

        ledger = client.get(f"{url}/approvals", headers=headers(seeded_tenant)).get_json()
        assert [(r["approver"], r["step_number"]) for r in ledger["items"]] == [
            ("ann", 1), ("bob", 1), ("meg", 2),
        ]
        state = client.get(f"{url}/approval-state", headers=headers(seeded_tenant)).get_json()
        assert state["outcome"] == "approved"
        assert state["consistent"] is True

    def test_stale_if_match_is_rejected(self, client, tenant, headers):
        res = _create(client, headers, tenant)
        change_id = res.get_json()["id"]
        etag = res.headers["ETag"]

        ok = client.post(f"/api/v1/changes/{change_id}/approve",
                         headers=headers(tenant, "ann", **{"If-Match": etag}))
        assert ok.status_code == 200
        assert ok.headers["ETag"] != etag

        stale = client.put(f"/api/v1/changes/{change_id}", json={"title": "Renamed"},
                           headers=headers(tenant, "ann", **{"If-Match": etag}))
        assert stale.status_code == 409
        body = stale.get_json()
        assert body["code"] == "ERR_CONFLICT_CONCURRENT"
        assert body["details"]["actual_version"] == int(ok.headers["ETag"].strip('"'))

    def test_malformed_if_match(self, client, tenant, headers):
        change_id = _create(client, headers, tenant).get_json()["id"]
        res = client.post(f"/api/v1/changes/{change_id}/approve",
                          headers=headers(tenant, "ann", **{"If-Match": "abc"}))
        assert res.status_code == 400

    def test_reject_requires_reason(self, client, tenant, headers):
        change_id = _create(client, headers, tenant).get_json()["id"]
        res = client.post(f"/api/v1/changes/{change_id}/reject", json={}, headers=headers(tenant, "rita"))
        assert res.status_code == 400
        assert "reason" in res.get_json()["details"]

        res = client.post(f"/api/v1/changes/{change_id}/reject", json={"reason": "No rollback plan"},
                          headers=headers(tenant, "rita"))
        assert res.status_code == 200
        assert res.get_json()["rejected_by"] == "rita"

    def test_invalid_transition(self, client, tenant, headers):
        change_id = _create(client, headers, tenant).get_json()["id"]
        res = client.post(f"/api/v1/changes/{change_id}/complete", headers=headers(tenant))
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"] == {"request_id": change_id, "action": "complete",
                                   "current_status": "Pending Approval"}

    def test_full_lifecycle(self, client, tenant, headers):
        change_id = _create(client, headers, tenant, save_as_draft="true").get_json()["id"]
        base = f"/api/v1/changes/{change_id}"
        assert client.post(f"{base}/submit", headers=headers(tenant)).get_json()["status"] == "Pending Approval"
        assert client.post(f"{base}/approve", headers=headers(tenant, "bob")).get_json()["status"] == "Approved"
        assert client.post(f"{base}/start", headers=headers(tenant)).get_json()["status"] == "In Progress"
        done = client.post(f"{base}/complete", headers=headers(tenant)).get_json()
        assert done["status"] == "Completed"
        assert done["actual_end_date"] is not None

    def test_cross_tenant_access_is_not_found(self, client, tenant, other_tenant, headers):
        change_id = _create(client, headers, tenant).get_json()["id"]
        assert client.get(f"/api/v1/changes/{change_id}", headers=headers(other_tenant)).status_code == 404
        res = client.post(f"/api/v1/changes/{change_id}/approve", headers=headers(other_tenant, "eve"))
        assert res.status_code == 404

    def test_delete_draft(self, client, tenant, headers):
        change_id = _create(client, headers, tenant, save_as_draft=True).get_json()["id"]
        assert client.delete(f"/api/v1/changes/{change_id}", headers=headers(tenant)).status_code == 200
        assert client.get(f"/api/v1/changes/{change_id}", headers=headers(tenant)).status_code == 404

    def test_list_and_dashboards(self, client, tenant, headers):
        _create(client, headers, tenant)
        _create(client, headers, tenant, save_as_draft=True)

        listing = client.get("/api/v1/changes?status=Draft", headers=headers(tenant)).get_json()
        assert listing["total"] == 1
        pending = client.get("/api/v1/changes/pending-approval", headers=headers(tenant)).get_json()
        assert pending["total"] == 1
        stats = client.get("/api/v1/changes/stats", headers=headers(tenant)).get_json()
        assert stats["total"] == 2
        assert client.get("/api/v1/changes/upcoming?days=-1", headers=headers(tenant)).status_code == 400

    def test_risk_preview(self, client, seeded_tenant, headers):
        res = client.post("/api/v1/changes/risk-preview", json={
            "impact_scores": {"business_impact": 80, "technical_complexity": 60,
                              "user_impact": 40, "regulatory_compliance": 20},
        }, headers=headers(seeded_tenant))
        assert res.status_code == 200
        body = res.get_json()
        # 0.4*80 + 0.3*60 + 0.2*40 + 0.1*20 = 60
        assert body["risk_score"] == pytest.approx(60.0)
        assert body["risk_level"] == "medium"
        assert body["approval_workflow"] == "Standard Approval Workflow"

    def test_risk_preview_ignores_non_finite_scores(self, client, seeded_tenant, headers):
        scores = {key: float("nan") for key in ("business_impact", "technical_complexity",
                                                "user_impact", "regulatory_compliance")}
        res = client.post("/api/v1/changes/risk-preview", json={"impact_scores": scores},
                          headers=headers(seeded_tenant))
        assert res.status_code == 200
        body = res.get_json()
        assert body["risk_score"] == 0.0
        assert body["risk_level"] == "low"


# ── Settings ─────────────────────────────────────────────────────────────


class TestSettingsApi:
    def test_initialize_then_conflict(self, client, tenant, headers):
        res = client.post("/api/v1/change-settings/initialize", headers=headers(tenant, "admin"))
        assert res.status_code == 201
        assert len(res.get_json()["categories"]) == 4

        again = client.post("/api/v1/change-settings/initialize", headers=headers(tenant, "admin"))
        assert again.status_code == 409

    def test_crud_round(self, client, tenant, headers):
        res = client.post("/api/v1/change-settings/change_category", json={"name": "Network"},
                          headers=headers(tenant, "admin"))
        assert res.status_code == 201
        setting_id = res.get_json()["id"]
        url = f"/api/v1/change-settings/change_category/{setting_id}"

        res = client.patch(url, json={"requires_testing": True}, headers=headers(tenant, "admin"))
        assert res.get_json()["requires_testing"] is True

        dup = client.post("/api/v1/change-settings/change_category", json={"name": "Network"},
                          headers=headers(tenant, "admin"))
        assert dup.status_code == 409
        assert dup.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

        assert client.delete(url, headers=headers(tenant, "admin")).status_code == 200
        assert client.get(url, headers=headers(tenant, "admin")).status_code == 404

    def test_unknown_kind(self, client, tenant, headers):
        res = client.post("/api/v1/change-settings/runbook", json={"name": "x"}, headers=headers(tenant))
        assert res.status_code == 400

    def test_for_change_creation(self, client, seeded_tenant, headers):
        categories = client.get("/api/v1/change-settings/for-change-creation/categories",
                                headers=headers(seeded_tenant)).get_json()
        assert len(categories["items"]) == 4
        matrix = client.get("/api/v1/change-settings/for-change-creation/risk-matrix",
                            headers=headers(seeded_tenant)).get_json()
        assert matrix["risk_matrix"]["name"] == "Standard Risk Matrix"


# ── Ops ──────────────────────────────────────────────────────────────────


class TestOpsApi:
    def test_notifications_outbox(self, client, seeded_tenant, headers, category_id):
        change_id = _create(client, headers, seeded_tenant,
                            category_id=category_id("Infrastructure")).get_json()["id"]
        res = client.get(f"/api/v1/notifications?change_request_id={change_id}", headers=headers(seeded_tenant))
        body = res.get_json()
        assert {n["recipient"] for n in body["items"]} == {"IT Team", "Operations", "alice"}

        notif_id = body["items"][0]["id"]
        sent = client.post(f"/api/v1/notifications/{notif_id}/sent", headers=headers(seeded_tenant))
        assert sent.get_json()["status"] == "sent"
        assert db.session.get(Notification, notif_id).sent_at is not None

    def test_mark_sent_other_tenant(self, client, seeded_tenant, other_tenant, headers, category_id):
        _create(client, headers, seeded_tenant, category_id=category_id("Infrastructure"))
        notif = Notification.query_for_tenant(seeded_tenant.id).first()
        res = client.post(f"/api/v1/notifications/{notif.id}/sent", headers=headers(other_tenant))
        assert res.status_code == 404

    def test_scheduler_jobs_listing(self, client):
        res = client.get("/api/v1/scheduler/jobs")
        assert res.status_code == 200
        assert "change_escalation_sweep" in [j["job_name"] for j in res.get_json()["items"]]

    def test_run_unknown_job(self, client):
        assert client.post("/api/v1/scheduler/jobs/nope/run").status_code == 404
