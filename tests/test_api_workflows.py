"""
Workflow API tests — definitions and the instance lifecycle over HTTP.

Tests cover:
  - Definition CRUD, structural validation and default conflicts
  - Submission gated by <document_type>:submit
  - Approver actions gated by <document_type>:approve / reject / recall
  - Viewing rules (submitter, path approvers, workflow:read:all)
  - Cancel, summary, pending approvals, statistics, by-document lookup
"""
import pytest


@pytest.fixture()
def people(make_user, make_role, make_permission):
    submit = make_permission("purchase_order", "submit", "own")
    recall = make_permission("purchase_order", "recall", "own")
    approve = make_permission("purchase_order", "approve", "all")
    reject = make_permission("purchase_order", "reject", "all")
    return {
        "admin": make_user("admin", roles=[make_role("system_administrator", grants_full_access=True)]),
        "buyer": make_user("buyer", roles=[make_role("purchaser", permissions=[submit, recall])]),
        "pm": make_user("pm", roles=[make_role("procurement_manager", permissions=[approve, reject])]),
        "fd": make_user("fd", roles=[make_role("finance_director", permissions=[approve, reject])]),
        "outsider": make_user("outsider", roles=[make_role("engineering")]),
    }


WORKFLOW = {
    "workflow_name": "po_standard",
    "document_type": "purchase_order",
    "is_default": True,
    "levels": [
        {"level_number": 1, "level_name": "Procurement", "approver_roles": ["procurement_manager"]},
        {"level_number": 2, "level_name": "Finance", "approver_roles": ["finance_director"],
         "is_mandatory": False},
    ],
    "routing_rules": [
        {"condition_type": "amount", "operator": "gte", "comparison_value": 50000, "target_levels": [2]},
    ],
}


@pytest.fixture()
def workflow(client, people, auth_headers):
    res = client.post("/api/v1/workflows", headers=auth_headers(people["admin"]), json=WORKFLOW)
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def submit(client, people, auth_headers, workflow):
    def _submit(document_id="PO-1", amount=10000):
        res = client.post("/api/v1/workflow-instances", headers=auth_headers(people["buyer"]), json={
            "document_type": "purchase_order", "document_id": document_id,
            "context": {"amount": amount},
        })
        assert res.status_code == 201, res.get_json()
        return res.get_json()
    return _submit


# ═════════════════════════════════════════════════════════════════════════
# DEFINITIONS
# ═════════════════════════════════════════════════════════════════════════

class TestDefinitions:
    def test_create(self, workflow):
        assert [l["level_number"] for l in workflow["levels"]] == [1, 2]
        assert workflow["routing_rules"][0]["field"] == "amount"
        assert workflow["levels"][0]["approver_roles"] == ["procurement_manager"]

    def test_gap_is_422(self, client, people, auth_headers):
        payload = {**WORKFLOW, "levels": [
            {"level_number": 1, "approver_roles": ["procurement_manager"]},
            {"level_number": 3, "approver_roles": ["finance_director"]},
        ], "routing_rules": []}
        res = client.post("/api/v1/workflows", headers=auth_headers(people["admin"]), json=payload)
        assert res.status_code == 422
        assert client.get("/api/v1/workflows", headers=auth_headers(people["admin"])).get_json()["total"] == 0

    def test_second_default_is_409(self, client, people, auth_headers, workflow):
        res = client.post("/api/v1/workflows", headers=auth_headers(people["admin"]),
                          json={**WORKFLOW, "workflow_name": "po_other"})
        assert res.status_code == 409

    def test_non_admin_cannot_create(self, client, people, auth_headers):
        res = client.post("/api/v1/workflows", headers=auth_headers(people["buyer"]), json=WORKFLOW)
        assert res.status_code == 403

    def test_update_and_delete(self, client, people, auth_headers, workflow):
        h = auth_headers(people["admin"])
        res = client.put(f"/api/v1/workflows/{workflow['id']}", headers=h, json={"allow_recall": False})
        assert res.status_code == 200
        assert res.get_json()["allow_recall"] is False
        assert client.delete(f"/api/v1/workflows/{workflow['id']}", headers=h).get_json() == {"deleted": True}
        assert client.get(f"/api/v1/workflows/{workflow['id']}", headers=h).status_code == 404

    def test_preview(self, client, people, auth_headers, workflow):
        res = client.post(f"/api/v1/workflows/{workflow['id']}/preview",
                          headers=auth_headers(people["admin"]), json={"context": {"amount": 60000}})
        body = res.get_json()
        assert body["required_levels"] == [1, 2]
        assert [e["approvers"] for e in body["approval_path"]] == [[people["pm"].id], [people["fd"].id]]
        assert body["unstaffed_levels"] == []


# ═════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_submit(self, submit, people):
        inst = submit()
        assert inst["status"] == "pending"
        assert inst["submitted_by_id"] == people["buyer"].id
        assert inst["required_levels"] == [1]
        assert inst["version"] == 1

    def test_submit_needs_permission(self, client, people, auth_headers, workflow):
        res = client.post("/api/v1/workflow-instances", headers=auth_headers(people["pm"]),
                          json={"document_type": "purchase_order", "document_id": "PO-9"})
        assert res.status_code == 403
        assert res.get_json()["details"]["reason_code"] == "PermissionNotFound"

    def test_submit_anonymous(self, client, workflow):
        res = client.post("/api/v1/workflow-instances",
                          json={"document_type": "purchase_order", "document_id": "PO-9"})
        assert res.status_code == 401

    def test_duplicate_submission_is_409(self, client, submit, people, auth_headers):
        submit()
        res = client.post("/api/v1/workflow-instances", headers=auth_headers(people["buyer"]),
                          json={"document_type": "purchase_order", "document_id": "PO-1"})
        assert res.status_code == 409

    def test_missing_document_type(self, client, people, auth_headers):
        res = client.post("/api/v1/workflow-instances", headers=auth_headers(people["buyer"]), json={})
        assert res.status_code == 400


class TestActions:
    def _act(self, client, headers, instance_id, **body):
        return client.post(f"/api/v1/workflow-instances/{instance_id}/actions", headers=headers, json=body)

    def test_two_level_approval(self, client, submit, people, auth_headers):
        inst = submit(amount=80000)
        res = self._act(client, auth_headers(people["pm"]), inst["id"], action="approve", level=1)
        assert res.status_code == 200
        assert res.get_json()["current_level"] == 2

        res = self._act(client, auth_headers(people["fd"]), inst["id"], action="approve", level=2,
                        comments="within budget", expected_version=2)
        body = res.get_json()
        assert body["status"] == "approved"
        assert [h["action"] for h in body["history"]] == ["approve", "approve"]
        assert body["history"][1]["comments"] == "within budget"

    def test_wrong_level_is_409(self, client, submit, people, auth_headers):
        inst = submit(amount=80000)
        res = self._act(client, auth_headers(people["fd"]), inst["id"], action="approve", level=2)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_not_on_path_is_403(self, client, submit, people, auth_headers):
        inst = submit()
        res = self._act(client, auth_headers(people["fd"]), inst["id"], action="approve", level=1)
        assert res.status_code == 403

    def test_without_document_permission_is_403(self, client, submit, people, auth_headers):
        inst = submit()
        res = self._act(client, auth_headers(people["outsider"]), inst["id"], action="approve", level=1)
        assert res.status_code == 403
        assert res.get_json()["details"]["reason_code"] == "NoPermissionsAssigned"

    def test_stale_version_is_409(self, client, submit, people, auth_headers):
        inst = submit()
        res = self._act(client, auth_headers(people["pm"]), inst["id"], action="approve", level=1,
                        expected_version=7)
        assert res.status_code == 409
        assert res.get_json()["details"]["field"] == "version"

    def test_unknown_action_is_400(self, client, submit, people, auth_headers):
        inst = submit()
        res = self._act(client, auth_headers(people["pm"]), inst["id"], action="escalate", level=1)
        assert res.status_code == 400

    def test_reject_then_closed(self, client, submit, people, auth_headers):
        inst = submit()
        h = auth_headers(people["pm"])
        assert self._act(client, h, inst["id"], action="reject", level=1).get_json()["status"] == "rejected"
        assert self._act(client, h, inst["id"], action="approve", level=1).status_code == 409

    def test_recall_by_submitter(self, client, submit, people, auth_headers):
        inst = submit()
        res = self._act(client, auth_headers(people["buyer"]), inst["id"], action="recall")
        assert res.status_code == 200
        assert res.get_json()["history"][0]["action"] == "recall"

    def test_missing_instance_is_404(self, client, people, auth_headers, workflow):
        res = self._act(client, auth_headers(people["pm"]), 999, action="approve", level=1)
        assert res.status_code == 404


class TestViewAndCancel:
    def test_visibility(self, client, submit, people, auth_headers):
        inst = submit()
        url = f"/api/v1/workflow-instances/{inst['id']}"
        assert client.get(url, headers=auth_headers(people["buyer"])).status_code == 200
        assert client.get(url, headers=auth_headers(people["pm"])).status_code == 200
        assert client.get(url, headers=auth_headers(people["admin"])).status_code == 200
        assert client.get(url, headers=auth_headers(people["outsider"])).status_code == 403
        assert client.get(url).status_code == 401

    def test_summary_and_pending_approvers(self, client, submit, people, auth_headers):
        inst = submit(amount=80000)
        h = auth_headers(people["buyer"])
        summary = client.get(f"/api/v1/workflow-instances/{inst['id']}/summary", headers=h).get_json()
        assert [l["level"] for l in summary["levels"]] == [1, 2]
        pending = client.get(f"/api/v1/workflow-instances/{inst['id']}/pending-approvers", headers=h).get_json()
        assert pending["pending_approvers"] == [people["pm"].id]

    def test_cancel(self, client, submit, people, auth_headers):
        inst = submit()
        url = f"/api/v1/workflow-instances/{inst['id']}/cancel"
        assert client.post(url, headers=auth_headers(people["pm"]), json={}).status_code == 403
        res = client.post(url, headers=auth_headers(people["buyer"]), json={"reason": "not needed"})
        assert res.status_code == 200
        assert res.get_json()["status"] == "cancelled"
        assert client.post(url, headers=auth_headers(people["buyer"]), json={}).status_code == 409

    def test_cancel_anonymous(self, client, submit):
        inst = submit()
        assert client.post(f"/api/v1/workflow-instances/{inst['id']}/cancel", json={}).status_code == 401


class TestInstanceQueries:
    def test_my_pending(self, client, submit, people, auth_headers):
        inst = submit()
        res = client.get("/api/v1/workflow-instances/pending/me", headers=auth_headers(people["pm"]))
        assert [i["id"] for i in res.get_json()["instances"]] == [inst["id"]]
        res = client.get("/api/v1/workflow-instances/pending/me", headers=auth_headers(people["fd"]))
        assert res.get_json()["total"] == 0

    def test_list_and_statistics_need_read_all(self, client, submit, people, auth_headers):
        submit()
        assert client.get("/api/v1/workflow-instances", headers=auth_headers(people["buyer"])).status_code == 403
        h = auth_headers(people["admin"])
        listed = client.get("/api/v1/workflow-instances?status=pending", headers=h).get_json()
        assert listed["total"] == 1
        stats = client.get("/api/v1/workflow-instances/statistics", headers=h).get_json()
        assert stats["by_status"]["pending"]["count"] == 1

    def test_recent(self, client, submit, people, auth_headers):
        inst = submit()
        client.post(f"/api/v1/workflow-instances/{inst['id']}/cancel", headers=auth_headers(people["buyer"]), json={})
        res = client.get("/api/v1/workflow-instances/recent?days=1", headers=auth_headers(people["admin"]))
        assert [i["id"] for i in res.get_json()["instances"]] == [inst["id"]]

    def test_by_document(self, client, submit, people, auth_headers):
        inst = submit(document_id="PO-77")
        h = auth_headers(people["buyer"])
        res = client.get("/api/v1/workflow-instances/by-document/purchase_order/PO-77", headers=h)
        assert res.get_json()["id"] == inst["id"]
        res = client.get("/api/v1/workflow-instances/by-document/purchase_order/PO-78", headers=h)
        assert res.status_code == 404
