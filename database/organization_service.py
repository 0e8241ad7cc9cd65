"""
Organization Service

Create, read, update and soft-delete organizations together with their
four address slots. Addresses are never edited in place: any address
object in a create or update request becomes a new Address row and the
matching foreign key is repointed.

Usage:
    with db_provider.session_scope() as session:
        service = OrganizationService(session)
        org = service.create_organization({"name": "Acme Inc", "jurisdiction": "DE"}, actor_id)
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from database.audit_service import (
    AuditService,
    CreateOrgPayload,
    UpdateOrgPayload,
    DeleteOrgPayload,
)
from database.connection import transaction
from database.errors import NotFoundError, ValidationError
from database.models import Address, AuditAction, Organization
from database.repositories import AddressRepository, OrganizationRepository
from database.validation import (
    address_fields,
    optional_date,
    optional_text,
    reject_unknown,
    require_text,
)

logger = logging.getLogger(__name__)

# Request key -> foreign key column
ADDRESS_SLOTS = {
    'registered_office': 'registered_office_id',
    'records_office': 'records_office_id',
    'mailing_address': 'mailing_address_id',
    'auth_rep_address': 'auth_rep_address_id',
}

SCALAR_TEXT_FIELDS = (
    'registration_number',
    'auth_rep_name',
    'auth_rep_company',
    'auth_rep_email',
    'auth_rep_phone',
)

ALLOWED_FIELDS = (
    ('name', 'jurisdiction', 'formation_date')
    + SCALAR_TEXT_FIELDS
    + tuple(ADDRESS_SLOTS)
)


class OrganizationService:
    """Organization aggregate root operations."""

    def __init__(self, session: Session):
        self.session = session
        self._orgs = OrganizationRepository(session)
        self._addresses = AddressRepository(session)
        self._audit = AuditService(session)

    def require_org(self, org_id: UUID) -> Organization:
        org = self._orgs.get_by_id(org_id)
        if org is None:
            raise NotFoundError("Organization", org_id)
        return org

    def _materialize_addresses(self, data: Dict[str, Any]) -> Dict[str, UUID]:
        """Insert a new Address for every address object present."""
        linked = {}
        for slot, column in ADDRESS_SLOTS.items():
            if data.get(slot) is not None:
                address = self._addresses.create(address_fields(data[slot], slot))
                linked[column] = address.id
        return linked

    def create_organization(self, data: Dict[str, Any], actor_id: str) -> Organization:
        """
        Create an organization and its embedded addresses.

        Args:
            data: name, jurisdiction (required); registration_number,
                formation_date, auth_rep_* fields and up to four address
                objects (optional)
            actor_id: Verified creator identity

        Raises:
            ValidationError: name or jurisdiction missing, malformed fields
        """
        reject_unknown(data, ALLOWED_FIELDS)
        values = {
            'name': require_text(data, 'name', 'Organization name'),
            'jurisdiction': require_text(data, 'jurisdiction', 'Jurisdiction'),
            'formation_date': optional_date(data, 'formation_date'),
            'created_by_id': actor_id,
        }
        for text_field in SCALAR_TEXT_FIELDS:
            values[text_field] = optional_text(data, text_field)

        with transaction(self.session):
            values.update(self._materialize_addresses(data))
            org = self._orgs.create(values)
            self._audit.record(
                org.id, actor_id, AuditAction.CREATE_ORG,
                CreateOrgPayload(org_id=org.id, name=org.name)
            )

        logger.info(f"Created organization {org.id} ({org.jurisdiction})")
        return org

    def update_organization(
        self,
        org_id: UUID,
        data: Dict[str, Any],
        actor_id: str
    ) -> Organization:
        """
        Merge scalar fields and repoint address slots.

        Only keys present in data are touched. The audit payload records
        the new values (address slots as the new address ids).
        """
        reject_unknown(data, ALLOWED_FIELDS)
        org = self.require_org(org_id)

        changes: Dict[str, Any] = {}
        if 'name' in data:
            changes['name'] = require_text(data, 'name', 'Organization name')
        if 'jurisdiction' in data:
            changes['jurisdiction'] = require_text(data, 'jurisdiction', 'Jurisdiction')
        if 'formation_date' in data:
            changes['formation_date'] = optional_date(data, 'formation_date')
        for text_field in SCALAR_TEXT_FIELDS:
            if text_field in data:
                changes[text_field] = optional_text(data, text_field)
        for slot in ADDRESS_SLOTS:
            if slot in data and data[slot] is None:
                raise ValidationError(
                    f"{slot} cannot be cleared; supply a replacement address",
                    field=slot
                )

        with transaction(self.session):
            changes.update(self._materialize_addresses(data))
            self._orgs.update(org, changes)
            self._audit.record(
                org.id, actor_id, AuditAction.UPDATE_ORG,
                UpdateOrgPayload(org_id=org.id, changes=changes)
            )

        return org

    def get_organization(self, org_id: UUID) -> Organization:
        """Raises NotFoundError for unknown or soft-deleted organizations."""
        return self.require_org(org_id)

    def list_organizations(self, owner_id: str) -> List[Organization]:
        return self._orgs.list_by_owner(owner_id)

    def delete_organization(self, org_id: UUID, actor_id: str) -> None:
        """Soft delete. People, addresses and the audit trail are kept."""
        org = self.require_org(org_id)
        with transaction(self.session):
            self._orgs.soft_delete(org)
            self._audit.record(
                org.id, actor_id, AuditAction.DELETE_ORG,
                DeleteOrgPayload(org_id=org.id, name=org.name)
            )
        logger.info(f"Soft-deleted organization {org.id}")

    def resolve_addresses(
        self,
        orgs: List[Organization]
    ) -> Dict[UUID, Dict[str, Optional[Address]]]:
        """
        Resolve every address slot of many organizations in one query.

        Returns:
            {org_id: {slot: Address or None}}
        """
        wanted = [
            getattr(org, column)
            for org in orgs
            for column in ADDRESS_SLOTS.values()
        ]
        found = self._addresses.get_many(wanted)
        return {
            org.id: {
                slot: found.get(getattr(org, column))
                for slot, column in ADDRESS_SLOTS.items()
            }
            for org in orgs
        }
