"""
API endpoint tests for the Minutebook API

Uses FastAPI's TestClient against an in-memory SQLite database.
Tests cover actor identity, the error envelope, the ledger endpoints,
templates and documents, audit paging, health and metrics.
"""

import uuid

import pytest

import api.server

API = "/api/v1"


def _create_org(client, headers, name="Acme Inc", **extra):
    response = client.post(f"{API}/orgs", json={"name": name, "jurisdiction": "CBCA", **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _add_person(client, headers, org_id, first_name, last_name, roles=("Shareholder",)):
    response = client.post(
        f"{API}/orgs/{org_id}/people",
        json={"first_name": first_name, "last_name": last_name,
              "roles": [{"role": role} for role in roles]},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _create_class(client, headers, org_id, short_code="A"):
    response = client.post(
        f"{API}/orgs/{org_id}/share-classes",
        json={"name": f"Class {short_code} Common", "short_code": short_code},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _issue(client, headers, org_id, holder_id, class_id, quantity, cert):
    return client.post(
        f"{API}/orgs/{org_id}/issuances",
        json={"shareholder_id": holder_id, "share_class_id": class_id,
              "quantity": quantity, "cert_number": cert},
        headers=headers,
    )


# ============================================
# IDENTITY AND AUTHENTICATION
# ============================================

class TestIdentity:
    """Actor identity and API key handling."""

    def test_missing_actor_rejected(self, client):
        response = client.get(f"{API}/orgs")

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "HTTP_401"
        assert "X-Actor-ID" in error["message"]

    def test_blank_actor_rejected(self, client):
        response = client.get(f"{API}/orgs", headers={"X-Actor-ID": "   "})
        assert response.status_code == 401

    def test_api_key_required_when_configured(self, client, headers, monkeypatch):
        monkeypatch.setattr(api.server, "API_KEY", "s3cret")

        assert client.get(f"{API}/orgs", headers=headers).status_code == 401
        wrong = client.get(f"{API}/orgs", headers={**headers, "X-API-Key": "nope"})
        assert wrong.status_code == 403
        assert wrong.json()["error"]["code"] == "HTTP_403"
        ok = client.get(f"{API}/orgs", headers={**headers, "X-API-Key": "s3cret"})
        assert ok.status_code == 200

    def test_rejection_is_security_logged(self, client, caplog):
        with caplog.at_level("WARNING", logger="security"):
            client.get(f"{API}/orgs")
        assert any("AUTHENTICATION_FAILED" in record.getMessage() for record in caplog.records)


# ============================================
# ORGANIZATIONS
# ============================================

class TestOrganizations:
    """Organization endpoints."""

    def test_create_and_get(self, client, headers, actor_id):
        office = {"line1": "100 King St W", "city": "Toronto", "region": "ON",
                  "country": "CA", "postal": "M5X 1A9"}
        created = _create_org(client, headers, registered_office=office)

        assert created["created_by_id"] == actor_id
        assert created["registered_office"]["city"] == "Toronto"
        assert created["records_office"] is None

        fetched = client.get(f"{API}/orgs/{created['id']}", headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["registered_office"]["postal"] == "M5X 1A9"

    def test_list_only_own(self, client, headers):
        _create_org(client, headers, name="Mine")
        _create_org(client, {"X-Actor-ID": "someone-else"}, name="Theirs")

        listed = client.get(f"{API}/orgs", headers=headers).json()
        assert [org["name"] for org in listed] == ["Mine"]

    def test_patch(self, client, headers):
        org = _create_org(client, headers)

        response = client.patch(f"{API}/orgs/{org['id']}", json={"registration_number": "123"}, headers=headers)

        assert response.status_code == 200
        assert response.json()["registration_number"] == "123"
        assert response.json()["name"] == "Acme Inc"

    def test_delete_then_not_found(self, client, headers):
        org = _create_org(client, headers)

        assert client.delete(f"{API}/orgs/{org['id']}", headers=headers).status_code == 204
        response = client.get(f"{API}/orgs/{org['id']}", headers=headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_missing_name_is_validation_error(self, client, headers):
        response = client.post(f"{API}/orgs", json={"jurisdiction": "DE"}, headers=headers)

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "name"

    def test_malformed_id(self, client, headers):
        response = client.get(f"{API}/orgs/not-a-uuid", headers=headers)
        assert response.status_code == 422


# ============================================
# PEOPLE AND ROLES
# ============================================

class TestPeople:
    """People and role endpoints."""

    def test_add_person_with_two_roles(self, client, headers):
        org = _create_org(client, headers)

        person = _add_person(client, headers, org["id"], "Ada", "Lovelace", roles=("director", "Shareholder"))

        assert {row["role"] for row in person["roles"]} == {"Director", "Shareholder"}
        listed = client.get(f"{API}/orgs/{org['id']}/people", headers=headers).json()
        assert len(listed) == 1
        assert len(listed[0]["roles"]) == 2

    def test_unknown_role_rejected(self, client, headers):
        org = _create_org(client, headers)
        response = client.post(
            f"{API}/orgs/{org['id']}/people",
            json={"first_name": "Ada", "last_name": "Lovelace", "roles": [{"role": "Chairman"}]},
            headers=headers,
        )
        assert response.status_code == 422

    def test_person_without_roles_rejected(self, client, headers):
        org = _create_org(client, headers)
        response = client.post(
            f"{API}/orgs/{org['id']}/people",
            json={"first_name": "Ada", "last_name": "Lovelace"},
            headers=headers,
        )
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "roles"

    def test_self_shareholding_refused(self, client, headers):
        org = _create_org(client, headers)
        response = client.post(
            f"{API}/orgs/{org['id']}/roles",
            json={"role": "Shareholder", "entity_shareholder_id": org["id"]},
            headers=headers,
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "SELF_REFERENCE"

    def test_assign_and_remove_role(self, client, headers):
        org = _create_org(client, headers)
        person = _add_person(client, headers, org["id"], "Ada", "Lovelace", roles=("Director",))

        assigned = client.post(
            f"{API}/orgs/{org['id']}/roles",
            json={"role": "Officer", "title": "Secretary", "person_id": person["id"]},
            headers=headers,
        )
        assert assigned.status_code == 201
        assert assigned.json()["title"] == "Secretary"

        removed = client.delete(f"{API}/orgs/{org['id']}/roles/{assigned.json()['id']}", headers=headers)
        assert removed.status_code == 204

    def test_update_person(self, client, headers):
        org = _create_org(client, headers)
        person = _add_person(client, headers, org["id"], "Ada", "Lovelace")

        response = client.patch(
            f"{API}/orgs/{org['id']}/people/{person['id']}",
            json={"email": "ada@example.com"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["email"] == "ada@example.com"


# ============================================
# LEDGER AND CAP TABLE
# ============================================

class TestLedger:
    """Share classes, issuances, transfers and the cap table."""

    def test_issue_transfer_and_cap_table(self, client, headers):
        org = _create_org(client, headers)
        sender = _add_person(client, headers, org["id"], "Pat", "Sender")
        receiver = _add_person(client, headers, org["id"], "Quinn", "Receiver")
        share_class = _create_class(client, headers, org["id"])

        issued = _issue(client, headers, org["id"], sender["id"], share_class["id"], 100, "A-1")
        assert issued.status_code == 201
        assert issued.json()["quantity"] == 100

        transfer = client.post(
            f"{API}/orgs/{org['id']}/transfers",
            json={"from_person_id": sender["id"], "to_person_id": receiver["id"],
                  "share_class_id": share_class["id"], "quantity": 40},
            headers=headers,
        )
        assert transfer.status_code == 201

        cap_table = client.get(f"{API}/orgs/{org['id']}/cap-table", headers=headers).json()
        assert cap_table["total_outstanding"] == 100
        percentages = {holder["holder_name"]: holder["percentage"] for holder in cap_table["overall"]}
        assert percentages == {"Pat Sender": "60.00", "Quinn Receiver": "40.00"}

        people = client.get(f"{API}/orgs/{org['id']}/people", headers=headers).json()
        holdings = {person["last_name"]: person["holdings"] for person in people}
        assert holdings["Sender"] == {share_class["id"]: 60}

    def test_overdrawn_transfer_conflict(self, client, headers):
        org = _create_org(client, headers)
        sender = _add_person(client, headers, org["id"], "Pat", "Sender")
        receiver = _add_person(client, headers, org["id"], "Quinn", "Receiver")
        share_class = _create_class(client, headers, org["id"])
        _issue(client, headers, org["id"], sender["id"], share_class["id"], 10, "A-1")

        response = client.post(
            f"{API}/orgs/{org['id']}/transfers",
            json={"from_person_id": sender["id"], "to_person_id": receiver["id"],
                  "share_class_id": share_class["id"], "quantity": 11},
            headers=headers,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INSUFFICIENT_SHARES"
        assert client.get(f"{API}/orgs/{org['id']}/transfers", headers=headers).json() == []

    def test_zero_quantity_rejected(self, client, headers):
        org = _create_org(client, headers)
        holder = _add_person(client, headers, org["id"], "Pat", "Holder")
        share_class = _create_class(client, headers, org["id"])

        response = _issue(client, headers, org["id"], holder["id"], share_class["id"], 0, "A-1")
        assert response.status_code == 422
        assert response.json()["error"]["field"] == "quantity"

    def test_duplicate_short_code(self, client, headers):
        org = _create_org(client, headers)
        _create_class(client, headers, org["id"])

        response = client.post(
            f"{API}/orgs/{org['id']}/share-classes",
            json={"name": "Another", "short_code": "A"},
            headers=headers,
        )
        assert response.status_code == 409

    def test_registers(self, client, headers):
        org = _create_org(client, headers)
        _add_person(client, headers, org["id"], "Dana", "Director", roles=("Director",))

        registers = client.get(f"{API}/orgs/{org['id']}/registers", headers=headers).json()
        assert registers["director_register"][0]["person"]["last_name"] == "Director"
        assert registers["transfer_register"] == []


# ============================================
# AUDIT
# ============================================

class TestAuditLogs:
    """Audit trail reads."""

    def test_org_audit_paging(self, client, headers):
        org = _create_org(client, headers)
        _add_person(client, headers, org["id"], "Ada", "Lovelace")
        _add_person(client, headers, org["id"], "Grace", "Hopper")

        page = client.get(f"{API}/orgs/{org['id']}/audit-logs?limit=2", headers=headers).json()
        assert page["total"] == 3
        assert page["limit"] == 2
        assert len(page["items"]) == 2

        filtered = client.get(
            f"{API}/orgs/{org['id']}/audit-logs?action=ADD_PERSON", headers=headers
        ).json()
        assert filtered["total"] == 2
        assert all(item["action"] == "ADD_PERSON" for item in filtered["items"])

    def test_unknown_org(self, client, headers):
        response = client.get(f"{API}/orgs/{uuid.uuid4()}/audit-logs", headers=headers)
        assert response.status_code == 404

    def test_search_by_actor(self, client, headers):
        _create_org(client, headers, name="Mine")
        _create_org(client, {"X-Actor-ID": "someone-else"}, name="Theirs")

        page = client.get(f"{API}/audit-logs?actor=someone-else", headers=headers).json()
        assert page["total"] == 1
        assert page["items"][0]["payload"]["name"] == "Theirs"


# ============================================
# TEMPLATES AND DOCUMENTS
# ============================================

class TestDocuments:
    """Templates, generated documents and the minute book."""

    @pytest.fixture
    def template(self, client, headers):
        response = client.post(
            f"{API}/templates",
            json={"name": "Director Consent", "code": "CONSENT_1", "scope": "resolution",
                  "file_key": "templates/consent.docx", "schema": {"required": ["meeting_date"]}},
            headers=headers,
        )
        assert response.status_code == 201, response.text
        return response.json()

    def test_template_round_trip(self, client, headers, template):
        assert template["schema"] == {"required": ["meeting_date"]}

        listed = client.get(f"{API}/templates?scope=resolution", headers=headers).json()
        assert [item["code"] for item in listed] == ["CONSENT_1"]

    def test_generate_document(self, client, headers, template):
        org = _create_org(client, headers)

        missing = client.post(
            f"{API}/orgs/{org['id']}/documents", json={"template_id": template["id"]}, headers=headers
        )
        assert missing.status_code == 422
        assert missing.json()["error"]["field"] == "overrides"

        created = client.post(
            f"{API}/orgs/{org['id']}/documents",
            json={"template_id": template["id"], "overrides": {"meeting_date": "2024-03-01"}},
            headers=headers,
        )
        assert created.status_code == 201
        assert created.json()["file_key"].startswith(f"generated/{org['id']}/")

        in_use = client.delete(f"{API}/templates/{template['id']}", headers=headers)
        assert in_use.status_code == 409

    def test_minute_book(self, client, headers):
        org = _create_org(client, headers)

        response = client.post(
            f"{API}/orgs/{org['id']}/minute-book", json={"bundle": ["registers"]}, headers=headers
        )

        assert response.status_code == 201
        assert response.json()["file_key"].endswith(".zip")


# ============================================
# SERVICE ENDPOINTS
# ============================================

class TestServiceEndpoints:
    """Health, metrics and response headers."""

    def test_health(self, client):
        response = client.get(f"{API}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"]["healthy"] is True
        assert body["version"] == api.server.API_VERSION

    def test_metrics(self, client, headers):
        _create_org(client, headers)

        response = client.get("/metrics")
        assert response.status_code == 200
        assert "minutebook_audit_events_total" in response.text

    def test_request_id_echoed(self, client, headers):
        response = client.get(f"{API}/orgs", headers={**headers, "X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Processing-Time-MS" in response.headers

    def test_openapi_available(self, client):
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/orgs" in response.json()["paths"]
