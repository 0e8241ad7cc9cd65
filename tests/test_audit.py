"""
Tests for the audit trail: payload typing, JSON conversion, completeness
across services and paged search.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from database.audit_service import (
    AuditService,
    CreateOrgPayload,
    IssueSharesPayload,
    PAYLOAD_TYPES,
    to_jsonable,
)
from database.errors import ValidationError
from database.models import AuditAction, AuditLog, Person, RoleAssignment, RoleType, ShareIssuance
from database.repositories import AuditRepository


class TestPayloads:
    """Test the payload registry and JSON conversion."""

    def test_every_action_has_a_payload(self):
        assert set(PAYLOAD_TYPES) == set(AuditAction)

    def test_to_jsonable(self):
        ident = uuid.uuid4()
        converted = to_jsonable({
            "id": ident,
            "price": Decimal("1.50"),
            "when": date(2024, 1, 2),
            "role": RoleType.DIRECTOR,
            "nested": [ident, {"n": 1}],
        })
        assert converted == {
            "id": str(ident),
            "price": "1.50",
            "when": "2024-01-02",
            "role": "Director",
            "nested": [str(ident), {"n": 1}],
        }


class TestRecord:
    """Test AuditService.record guards."""

    def test_wrong_payload_type_rejected(self, session, org):
        service = AuditService(session)
        with pytest.raises(ValidationError) as exc_info:
            service.record(
                org.id, "user-123", AuditAction.ISSUE_SHARES,
                CreateOrgPayload(org_id=org.id, name="Acme Inc")
            )
        assert exc_info.value.field == "payload"

    def test_actor_required(self, session, org):
        service = AuditService(session)
        with pytest.raises(ValidationError) as exc_info:
            service.record(
                org.id, "", AuditAction.ISSUE_SHARES,
                IssueSharesPayload(issuance_id=uuid.uuid4(), quantity=1, cert_number="A-1")
            )
        assert exc_info.value.field == "actor_id"

    def test_record_stores_json_payload(self, session, org):
        service = AuditService(session)
        issuance_id = uuid.uuid4()
        entry = service.record(
            org.id, "user-123", AuditAction.ISSUE_SHARES,
            IssueSharesPayload(issuance_id=issuance_id, quantity=5, cert_number="A-9")
        )
        session.commit()

        stored = session.get(AuditLog, entry.id)
        assert stored.payload == {"issuance_id": str(issuance_id), "quantity": 5, "cert_number": "A-9"}


class TestCompleteness:
    """Every successful mutation leaves exactly one matching entry."""

    def test_one_entry_per_mutation(self, session, org_service, people_service, cap_service,
                                    doc_service, actor_id):
        org = org_service.create_organization({"name": "Acme Inc", "jurisdiction": "DE"}, actor_id)
        org_service.update_organization(org.id, {"registration_number": "42"}, actor_id)
        entry = people_service.add_person(
            org.id, {"first_name": "Pat", "last_name": "Holder"}, [{"role": "Shareholder"}], actor_id
        )
        receiver = people_service.add_person(
            org.id, {"first_name": "Quinn", "last_name": "Receiver"}, [{"role": "Shareholder"}], actor_id
        ).person
        share_class = cap_service.create_share_class(org.id, {"name": "Class A", "short_code": "A"}, actor_id)
        cap_service.issue_shares(org.id, {
            "shareholder_id": entry.person.id,
            "share_class_id": share_class.id,
            "quantity": 100,
            "cert_number": "A-1",
        }, actor_id)
        cap_service.transfer_shares(org.id, {
            "from_person_id": entry.person.id,
            "to_person_id": receiver.id,
            "share_class_id": share_class.id,
            "quantity": 10,
        }, actor_id)

        logs = AuditService(session).list_for_org(org.id)
        counts = {}
        for log in logs:
            counts[log.action] = counts.get(log.action, 0) + 1
        assert counts == {
            AuditAction.CREATE_ORG: 1,
            AuditAction.UPDATE_ORG: 1,
            AuditAction.ADD_PERSON: 2,
            AuditAction.CREATE_SHARE_CLASS: 1,
            AuditAction.ISSUE_SHARES: 1,
            AuditAction.TRANSFER_SHARES: 1,
        }
        assert all(log.org_id == org.id and log.actor_id == actor_id for log in logs)

    def test_failed_mutation_leaves_no_entry(self, session, cap_service, share_class, org, actor_id):
        before = session.query(AuditLog).count()
        with pytest.raises(ValidationError):
            cap_service.issue_shares(org.id, {
                "shareholder_id": uuid.uuid4(),
                "share_class_id": share_class.id,
                "quantity": 0,
                "cert_number": "A-1",
            }, actor_id)
        assert session.query(AuditLog).count() == before

    def test_audit_failure_rolls_back_issuance(self, session, monkeypatch, cap_service,
                                               make_person, share_class, org, actor_id):
        holder = make_person("Pat", "Holder")

        def failing_log(self, *args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(AuditRepository, "log", failing_log)
        with pytest.raises(RuntimeError):
            cap_service.issue_shares(org.id, {
                "shareholder_id": holder.id,
                "share_class_id": share_class.id,
                "quantity": 100,
                "cert_number": "A-1",
            }, actor_id)

        assert session.query(ShareIssuance).count() == 0

    def test_audit_failure_rolls_back_person_and_roles(self, session, monkeypatch,
                                                       people_service, org, actor_id):
        people_before = session.query(Person).count()
        roles_before = session.query(RoleAssignment).count()

        def failing_log(self, *args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(AuditRepository, "log", failing_log)
        with pytest.raises(RuntimeError):
            people_service.add_person(
                org.id, {"first_name": "Ada", "last_name": "Lovelace"},
                [{"role": "Director"}, {"role": "Shareholder"}], actor_id
            )

        assert session.query(Person).count() == people_before
        assert session.query(RoleAssignment).count() == roles_before


class TestSearch:
    """Test filtered, paged reads."""

    def test_filter_by_action_and_page(self, session, org_service, actor_id):
        for index in range(5):
            org_service.create_organization({"name": f"Org {index}", "jurisdiction": "DE"}, actor_id)

        service = AuditService(session)
        logs, total = service.search(action=AuditAction.CREATE_ORG, offset=0, limit=2)
        assert total == 5
        assert len(logs) == 2

        logs, total = service.search(action=AuditAction.CREATE_ORG, offset=4, limit=2)
        assert total == 5
        assert len(logs) == 1

    def test_filter_by_actor(self, session, org_service, actor_id):
        org_service.create_organization({"name": "Mine", "jurisdiction": "DE"}, actor_id)
        org_service.create_organization({"name": "Theirs", "jurisdiction": "DE"}, "someone-else")

        logs, total = AuditService(session).search(actor_id="someone-else")
        assert total == 1
        assert logs[0].payload["name"] == "Theirs"

    def test_list_all_includes_system_entries(self, session, doc_service, org, actor_id):
        doc_service.create_template({
            "name": "Bylaw No. 1", "code": "BYLAW_1", "scope": "organization", "file_key": "t/bylaw.docx"
        }, actor_id)

        actions = {log.action for log in AuditService(session).list_all()}
        assert actions == {AuditAction.CREATE_ORG, AuditAction.CREATE_TEMPLATE}
        template_entry = [log for log in AuditService(session).list_all()
                          if log.action == AuditAction.CREATE_TEMPLATE][0]
        assert template_entry.org_id is None
