"""
API tests through the FastAPI app: auth, role guards and the error envelope.
Uses the in-memory store; tokens are minted directly.
"""
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from pymongo.errors import OperationFailure

from auth import create_access_token, hash_password
from services.registration_service import IMPORT_CSV_HEADERS

PASSWORD = "Harbour2025"

REGISTRATION = {
    "owners": [{"role": "Primary", "surname": "Kila", "first_name": "Mary"}],
    "craft_make": "Yamaha",
    "craft_model": "F40",
    "hull_id_number": "HULL-9",
}


def _user(user_id, role, is_active=True):
    return {
        "user_id": user_id,
        "email": f"{user_id}@sca.gov.pg",
        "display_name": user_id.title(),
        "role": role,
        "is_active": is_active,
        "password_hash": hash_password(PASSWORD),
    }


def _headers(user_id, role="Admin"):
    token = create_access_token({"user_id": user_id, "email": f"{user_id}@sca.gov.pg", "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def staff(fake_db):
    fake_db.users.docs.extend([
        _user("admin", "Admin"),
        _user("registrar", "Registrar"),
        _user("viewer", "ReadOnly"),
        _user("gone", "Registrar", is_active=False),
    ])
    return fake_db


class TestHealthAndAuth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_unauthenticated_request_rejected(self, client, staff):
        response = client.get("/api/registrations")
        assert response.status_code == 401

    def test_login_then_me(self, client, staff):
        response = client.post("/api/auth/login", json={"email": "Registrar@sca.gov.pg", "password": PASSWORD})
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["role"] == "Registrar"

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})
        assert me.json()["user_id"] == "registrar"
        assert staff.users.docs[1]["last_login_at"] is not None

    def test_wrong_password_and_inactive_user(self, client, staff):
        assert client.post("/api/auth/login", json={"email": "admin@sca.gov.pg", "password": "Nope12345"}).status_code == 401
        assert client.post("/api/auth/login", json={"email": "gone@sca.gov.pg", "password": PASSWORD}).status_code == 403

    def test_deactivated_user_token_stops_working(self, client, staff):
        response = client.get("/api/registrations", headers=_headers("gone", "Registrar"))
        assert response.status_code == 403

    def test_role_comes_from_stored_user_not_token(self, client, staff):
        # Token claims Admin, stored user is ReadOnly
        response = client.get("/api/users", headers=_headers("viewer", "Admin"))
        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient permissions"


class TestRegistrationRoutes:

    def test_create_and_list(self, client, staff):
        created = client.post("/api/registrations", json=REGISTRATION, headers=_headers("registrar"))
        assert created.status_code == 201, created.text
        body = created.json()
        assert body["status"] == "Draft"
        assert body["allowed_actions"] == ["Edit", "Submit"]
        assert body["created_by_ref"] == "registrar"

        listed = client.get("/api/registrations", headers=_headers("viewer")).json()
        assert listed["total"] == 1
        assert listed["registrations"][0]["allowed_actions"] == []

    def test_read_only_cannot_create(self, client, staff):
        response = client.post("/api/registrations", json=REGISTRATION, headers=_headers("viewer"))
        assert response.status_code == 403
        assert staff.registrations.docs == []

    def test_denied_transition_returns_envelope_with_retry(self, client, staff):
        rid = client.post("/api/registrations", json=REGISTRATION, headers=_headers("registrar")).json()["registration_id"]

        response = client.post(f"/api/registrations/{rid}/reject", json={"reason": "dup"}, headers=_headers("registrar"))

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "TransitionNotAllowedError"
        assert body["details"] == {"allowed_actions": ["Edit", "Submit"], "current_status": "Draft"}
        assert body["retry"] == {"method": "POST", "path": f"/api/registrations/{rid}/reject"}

    def test_missing_record_is_404(self, client, staff):
        response = client.get("/api/registrations/nope", headers=_headers("admin"))
        assert response.status_code == 404
        assert response.json()["detail"] == "Registration not found: nope"

    def test_validation_error_carries_request_id(self, client, staff):
        bad = dict(REGISTRATION, owners=[])
        response = client.post("/api/registrations", json=bad, headers=_headers("registrar"))
        assert response.status_code == 422
        body = response.json()
        assert body["request_id"]
        assert isinstance(body["detail"], list)

    def test_store_permission_denied_surfaces_hint(self, client, staff):
        failure = OperationFailure("not authorized on regocraft to execute command { find: \"registrations\" }", code=13)
        with patch("services.registration_service.list_registrations", new_callable=AsyncMock, side_effect=failure):
            response = client.get("/api/registrations", headers=_headers("admin"))
        assert response.status_code == 403
        body = response.json()
        assert "not authorized on regocraft" in body["detail"]
        assert "readWrite" in body["details"]["hint"]
        assert body["retry"]["method"] == "GET"

    def test_csv_import_upload(self, client, staff):
        header = ",".join(IMPORT_CSV_HEADERS)
        row = {h: "" for h in IMPORT_CSV_HEADERS}
        row.update({
            "craftMake": "Yamaha", "craftModel": "F40", "hullIdNumber": "H-77",
            "owner1_role": "Primary", "owner1_surname": "Kila", "owner1_firstName": "Mary",
        })
        content = header + "\n" + ",".join(row[h] for h in IMPORT_CSV_HEADERS) + "\n"

        response = client.post(
            "/api/registrations/import",
            files={"file": ("craft.csv", content.encode("utf-8-sig"), "text/csv")},
            headers=_headers("registrar"),
        )
        assert response.status_code == 200, response.text
        assert response.json()["successful"] == 1
        assert staff.registrations.docs[0]["hull_id_number"] == "H-77"


class TestReportRoutes:

    def test_no_data_is_a_json_notice(self, client, staff):
        response = client.get("/api/reports/current_registrations/export", headers=_headers("registrar"))
        assert response.status_code == 200
        assert response.json()["no_data"] is True

    def test_csv_download_with_selected_columns(self, client, staff):
        staff.registrations.docs.append({
            "registration_id": "r-1", "status": "Approved", "sca_rego_no": "SCA-1", "hull_id_number": "H-1",
            "owners": [{"role": "Primary", "first_name": "Mary", "surname": "Kila"}],
        })
        response = client.get(
            "/api/reports/current_registrations/export?columns=primary_owner,sca_rego_no",
            headers=_headers("admin"),
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment; filename=current_registrations_" in response.headers["content-disposition"]
        assert response.text == "primary_owner,sca_rego_no\nMary Kila,SCA-1\n"

    def test_unknown_column_is_422(self, client, staff):
        response = client.get(
            "/api/reports/current_registrations/export?columns=password_hash", headers=_headers("admin")
        )
        assert response.status_code == 422
        assert response.json()["details"] == {"field": "columns"}

    def test_reports_need_registry_role(self, client, staff):
        response = client.get("/api/reports/available", headers=_headers("viewer"))
        assert response.status_code == 403


class TestAdminRoutes:

    def test_run_expiry_sweep_now(self, client, staff):
        response = client.post("/api/admin/jobs/run", json={"job": "expiry_sweep"}, headers=_headers("admin"))
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert any(a["action"] == "JOB_RUN_MANUAL" for a in staff.audit_logs.docs)

    def test_unknown_job_is_rejected(self, client, staff):
        response = client.post("/api/admin/jobs/run", json={"job": "nightly_backup"}, headers=_headers("admin"))
        assert response.status_code == 400

    def test_jobs_status_and_audit_logs(self, client, staff):
        client.post("/api/registrations", json=REGISTRATION, headers=_headers("admin"))
        status = client.get("/api/admin/jobs/status", headers=_headers("admin")).json()
        assert status["expiry_sweep"]["last_run"] is None

        logs = client.get("/api/admin/audit-logs?action=RECORD_CREATED", headers=_headers("admin")).json()
        assert logs["total"] == 1
        assert logs["logs"][0]["resource_type"] == "registration"

    def test_admin_routes_are_admin_only(self, client, staff):
        response = client.get("/api/admin/audit-logs", headers=_headers("registrar"))
        assert response.status_code == 403
