"""
Tests for OrganizationService: creation with embedded addresses, partial
updates, address immutability, soft delete and listing.
"""

import uuid

import pytest

from database.errors import NotFoundError, ValidationError
from database.models import Address, AuditAction, AuditLog
from database.organization_service import OrganizationService

TORONTO = {
    "line1": "100 King St W",
    "city": "Toronto",
    "region": "ON",
    "country": "CA",
    "postal": "M5X 1A9",
}
OTTAWA = {
    "line1": "50 O'Connor St",
    "line2": "Suite 300",
    "city": "Ottawa",
    "region": "ON",
    "country": "CA",
    "postal": "K1P 6L2",
}


def _audit_actions(session, org_id):
    return [entry.action for entry in session.query(AuditLog).filter_by(org_id=org_id).all()]


class TestCreateOrganization:
    """Test organization creation."""

    def test_create_returns_generated_id_and_audits(self, session, org_service, actor_id):
        org = org_service.create_organization({"name": "Acme Inc", "jurisdiction": "DE"}, actor_id)

        assert isinstance(org.id, uuid.UUID)
        assert org.created_by_id == actor_id
        entries = session.query(AuditLog).filter_by(org_id=org.id).all()
        assert len(entries) == 1
        assert entries[0].action == AuditAction.CREATE_ORG
        assert entries[0].actor_id == actor_id
        assert entries[0].payload == {"org_id": str(org.id), "name": "Acme Inc"}

    def test_registered_office_round_trip(self, org_service, actor_id):
        org = org_service.create_organization(
            {"name": "Acme Inc", "jurisdiction": "CBCA", "registered_office": TORONTO},
            actor_id
        )

        fetched = org_service.get_organization(org.id)
        address = org_service.resolve_addresses([fetched])[org.id]["registered_office"]
        for key in ("line1", "city", "region", "country", "postal"):
            assert getattr(address, key) == TORONTO[key]

    def test_missing_name_rejected(self, session, org_service, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            org_service.create_organization({"jurisdiction": "DE"}, actor_id)
        assert exc_info.value.field == "name"
        assert session.query(AuditLog).count() == 0

    def test_incomplete_address_rejected(self, org_service, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            org_service.create_organization(
                {"name": "Acme", "jurisdiction": "DE", "mailing_address": {"line1": "1 Main"}},
                actor_id
            )
        assert exc_info.value.field == "mailing_address.city"

    def test_unknown_field_rejected(self, org_service, actor_id):
        with pytest.raises(ValidationError):
            org_service.create_organization(
                {"name": "Acme", "jurisdiction": "DE", "share_count": 10},
                actor_id
            )


class TestUpdateOrganization:
    """Test partial updates and address replacement."""

    def test_update_merges_scalars(self, session, org_service, org, actor_id):
        updated = org_service.update_organization(
            org.id, {"registration_number": "123456789"}, actor_id
        )

        assert updated.registration_number == "123456789"
        assert updated.name == "Acme Inc"
        assert _audit_actions(session, org.id).count(AuditAction.UPDATE_ORG) == 1

    def test_new_address_creates_new_row(self, session, org_service, actor_id):
        org = org_service.create_organization(
            {"name": "Acme Inc", "jurisdiction": "CBCA", "registered_office": TORONTO},
            actor_id
        )
        old_address_id = org.registered_office_id

        org_service.update_organization(org.id, {"registered_office": OTTAWA}, actor_id)

        assert org.registered_office_id != old_address_id
        assert session.query(Address).count() == 2
        old_address = session.get(Address, old_address_id)
        assert old_address.city == "Toronto"
        new_address = session.get(Address, org.registered_office_id)
        assert new_address.line2 == "Suite 300"

    def test_address_slot_cannot_be_cleared(self, org_service, org, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            org_service.update_organization(org.id, {"records_office": None}, actor_id)
        assert exc_info.value.field == "records_office"

    def test_update_unknown_org(self, org_service, actor_id):
        with pytest.raises(NotFoundError):
            org_service.update_organization(uuid.uuid4(), {"name": "Ghost"}, actor_id)


class TestDeleteAndList:
    """Test soft delete and listing by owner."""

    def test_soft_delete_hides_org(self, session, org_service, org, actor_id):
        org_service.delete_organization(org.id, actor_id)

        with pytest.raises(NotFoundError):
            org_service.get_organization(org.id)
        assert org_service.list_organizations(actor_id) == []
        assert org.is_deleted is True
        assert AuditAction.DELETE_ORG in _audit_actions(session, org.id)

    def test_list_only_returns_own_orgs(self, org_service, org, actor_id):
        org_service.create_organization({"name": "Other Co", "jurisdiction": "DE"}, "someone-else")

        orgs = org_service.list_organizations(actor_id)
        assert [o.id for o in orgs] == [org.id]

    def test_resolve_addresses_for_many_orgs(self, org_service, actor_id):
        first = org_service.create_organization(
            {"name": "First", "jurisdiction": "DE", "registered_office": TORONTO}, actor_id
        )
        second = org_service.create_organization(
            {"name": "Second", "jurisdiction": "DE", "mailing_address": OTTAWA}, actor_id
        )

        resolved = org_service.resolve_addresses([first, second])
        assert resolved[first.id]["registered_office"].city == "Toronto"
        assert resolved[first.id]["mailing_address"] is None
        assert resolved[second.id]["mailing_address"].city == "Ottawa"
        assert resolved[second.id]["registered_office"] is None

    def test_sub_resource_mutation_moves_org_to_top(self, org_service, people_service, actor_id):
        first = org_service.create_organization({"name": "First", "jurisdiction": "DE"}, actor_id)
        second = org_service.create_organization({"name": "Second", "jurisdiction": "DE"}, actor_id)

        people_service.add_person(
            first.id, {"first_name": "Ada", "last_name": "Lovelace"}, [{"role": "Director"}], actor_id
        )

        listed = OrganizationService(org_service.session).list_organizations(actor_id)
        assert [o.id for o in listed] == [first.id, second.id]
