"""
Person & Role Service

People are shared across organizations; role assignments bind them to
one organization. Adding a person and their initial roles is a single
transaction: either every row is written or none is.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from database.audit_service import (
    AuditService,
    AddPersonPayload,
    UpdatePersonPayload,
    AddRolePayload,
    RemoveRolePayload,
)
from database.cap_table_service import CapTableService
from database.connection import transaction
from database.errors import NotFoundError, SelfReferenceError, ValidationError
from database.models import AuditAction, Person, RoleAssignment, RoleType
from database.repositories import (
    AddressRepository,
    OrganizationRepository,
    PersonRepository,
    RoleAssignmentRepository,
)
from database.validation import (
    address_fields,
    optional_date,
    optional_text,
    optional_uuid,
    reject_unknown,
    require_text,
)

logger = logging.getLogger(__name__)

PERSON_FIELDS = ('first_name', 'last_name', 'email', 'date_of_birth', 'address', 'kyc_id')
ROLE_FIELDS = ('role', 'title', 'start_date', 'end_date')
ASSIGN_FIELDS = ROLE_FIELDS + ('person_id', 'entity_shareholder_id')


def parse_role(value: Any) -> RoleType:
    """Map 'Director' / 'director' / RoleType.DIRECTOR onto RoleType."""
    if isinstance(value, RoleType):
        return value
    if isinstance(value, str):
        for role in RoleType:
            if role.value.lower() == value.strip().lower():
                return role
    allowed = ", ".join(role.value for role in RoleType)
    raise ValidationError(
        f"Invalid role: {value!r}",
        field="role",
        suggestion=f"Use one of: {allowed}"
    )


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class PersonWithRoles:
    """A person decorated with their role rows in one organization.

    holdings is derived from the share ledger ({share_class_id: quantity})
    and is only populated for people holding a Shareholder role.
    """
    person: Person
    roles: List[RoleAssignment] = field(default_factory=list)
    holdings: Dict[UUID, int] = field(default_factory=dict)


class PeopleService:
    """Manages people and their per-organization role assignments."""

    def __init__(self, session: Session):
        self.session = session
        self._orgs = OrganizationRepository(session)
        self._people = PersonRepository(session)
        self._roles = RoleAssignmentRepository(session)
        self._addresses = AddressRepository(session)
        self._audit = AuditService(session)

    def _require_org(self, org_id: UUID):
        org = self._orgs.get_by_id(org_id)
        if org is None:
            raise NotFoundError("Organization", org_id)
        return org

    def _role_values(self, org_id: UUID, data: Dict[str, Any]) -> Dict[str, Any]:
        start = optional_date(data, 'start_date') or today_utc()
        end = optional_date(data, 'end_date')
        if end is not None and end < start:
            raise ValidationError("end_date must not precede start_date", field="end_date")
        return {
            'org_id': org_id,
            'role': parse_role(data.get('role')),
            'title': optional_text(data, 'title'),
            'start_date': start,
            'end_date': end,
        }

    def add_person(
        self,
        org_id: UUID,
        person_data: Dict[str, Any],
        roles: List[Dict[str, Any]],
        actor_id: str
    ) -> PersonWithRoles:
        """
        Create a person, their optional address and their initial roles.

        Args:
            org_id: Organization the roles belong to
            person_data: first_name, last_name (required); email,
                date_of_birth, kyc_id, address (optional)
            roles: at least one {role, title?, start_date?, end_date?};
                start_date defaults to today
            actor_id: Verified actor identity

        Raises:
            ValidationError: missing names, empty or invalid roles
            NotFoundError: unknown organization
        """
        reject_unknown(person_data, PERSON_FIELDS)
        self._require_org(org_id)

        if not roles:
            raise ValidationError(
                "A person must be added with at least one role",
                field="roles"
            )

        values = {
            'first_name': require_text(person_data, 'first_name', 'First name'),
            'last_name': require_text(person_data, 'last_name', 'Last name'),
            'email': optional_text(person_data, 'email'),
            'date_of_birth': optional_date(person_data, 'date_of_birth'),
            'kyc_id': optional_text(person_data, 'kyc_id'),
        }
        role_rows = []
        for role_data in roles:
            reject_unknown(role_data, ROLE_FIELDS)
            role_rows.append(self._role_values(org_id, role_data))

        with transaction(self.session):
            if person_data.get('address') is not None:
                address = self._addresses.create(address_fields(person_data['address'], 'address'))
                values['address_id'] = address.id
            person = self._people.create(values)
            created = [
                self._roles.create({**row, 'person_id': person.id})
                for row in role_rows
            ]
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.ADD_PERSON,
                AddPersonPayload(
                    person_id=person.id,
                    name=person.full_name,
                    roles=[row.role.value for row in created]
                )
            )

        logger.info(f"Added person {person.id} to org {org_id} with {len(created)} role(s)")
        return PersonWithRoles(person=person, roles=created)

    def list_people_with_roles(self, org_id: UUID) -> List[PersonWithRoles]:
        """
        People holding at least one role in org_id, each listed once with
        only that organization's role rows.
        """
        self._require_org(org_id)
        role_rows = [row for row in self._roles.list_for_org(org_id) if row.person_id is not None]
        people = self._people.get_many(row.person_id for row in role_rows)

        grouped: Dict[UUID, PersonWithRoles] = {}
        for row in role_rows:
            entry = grouped.get(row.person_id)
            if entry is None:
                entry = grouped[row.person_id] = PersonWithRoles(person=people[row.person_id])
            entry.roles.append(row)

        if any(row.role == RoleType.SHAREHOLDER for row in role_rows):
            holdings = CapTableService(self.session).net_holdings(org_id)
            for entry in grouped.values():
                if any(row.role == RoleType.SHAREHOLDER for row in entry.roles):
                    entry.holdings = {
                        class_id: quantity
                        for (class_id, holder_id), quantity in holdings.items()
                        if holder_id == entry.person.id and quantity != 0
                    }

        return sorted(
            grouped.values(),
            key=lambda entry: (entry.person.last_name.lower(), entry.person.first_name.lower())
        )

    def update_person(
        self,
        org_id: UUID,
        person_id: UUID,
        patch: Dict[str, Any],
        actor_id: str
    ) -> Person:
        """Patch scalar fields; an address object creates a new Address row."""
        reject_unknown(patch, PERSON_FIELDS)
        self._require_org(org_id)
        person = self._people.get_by_id(person_id)
        if person is None or not self._roles.person_has_role(org_id, person_id):
            raise NotFoundError("Person", person_id)

        changes: Dict[str, Any] = {}
        if 'first_name' in patch:
            changes['first_name'] = require_text(patch, 'first_name', 'First name')
        if 'last_name' in patch:
            changes['last_name'] = require_text(patch, 'last_name', 'Last name')
        if 'email' in patch:
            changes['email'] = optional_text(patch, 'email')
        if 'kyc_id' in patch:
            changes['kyc_id'] = optional_text(patch, 'kyc_id')
        if 'date_of_birth' in patch:
            changes['date_of_birth'] = optional_date(patch, 'date_of_birth')
        if 'address' in patch and patch['address'] is None:
            raise ValidationError(
                "address cannot be cleared; supply a replacement address",
                field="address"
            )

        with transaction(self.session):
            if 'address' in patch:
                address = self._addresses.create(address_fields(patch['address'], 'address'))
                changes['address_id'] = address.id
            self._people.update(person, changes)
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.UPDATE_PERSON,
                UpdatePersonPayload(person_id=person.id, changes=changes)
            )
        return person

    def assign_role(self, org_id: UUID, data: Dict[str, Any], actor_id: str) -> RoleAssignment:
        """
        Add one role row for an existing person, or (Shareholder only) for
        another organization acting as corporate shareholder.
        """
        reject_unknown(data, ASSIGN_FIELDS)
        self._require_org(org_id)
        values = self._role_values(org_id, data)
        person_id = optional_uuid(data, 'person_id')
        entity_id = optional_uuid(data, 'entity_shareholder_id')

        if (person_id is None) == (entity_id is None):
            raise ValidationError(
                "Exactly one of person_id or entity_shareholder_id is required",
                field="person_id"
            )
        if person_id is not None:
            if self._people.get_by_id(person_id) is None:
                raise NotFoundError("Person", person_id, field="person_id")
        else:
            if values['role'] != RoleType.SHAREHOLDER:
                raise ValidationError(
                    "Only the Shareholder role can be held by an organization",
                    field="entity_shareholder_id"
                )
            if entity_id == org_id:
                raise SelfReferenceError(
                    "An organization cannot be its own shareholder",
                    field="entity_shareholder_id"
                )
            if self._orgs.get_by_id(entity_id) is None:
                raise NotFoundError("Organization", entity_id, field="entity_shareholder_id")

        values['person_id'] = person_id
        values['entity_shareholder_id'] = entity_id

        with transaction(self.session):
            role = self._roles.create(values)
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.ADD_ROLE,
                AddRolePayload(
                    role_id=role.id,
                    role=role.role.value,
                    person_id=person_id,
                    entity_shareholder_id=entity_id
                )
            )
        return role

    def remove_role_assignment(self, org_id: UUID, role_id: UUID, actor_id: str) -> None:
        """Delete one role row. The person is kept."""
        self._require_org(org_id)
        role = self._roles.get_in_org(org_id, role_id)
        if role is None:
            raise NotFoundError("Role assignment", role_id)

        with transaction(self.session):
            payload = RemoveRolePayload(role_id=role.id, role=role.role.value)
            self._roles.delete(role)
            self._orgs.touch(org_id)
            self._audit.record(org_id, actor_id, AuditAction.REMOVE_ROLE, payload)
