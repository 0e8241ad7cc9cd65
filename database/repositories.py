"""
Repository Pattern for Minutebook Database Operations

Provides clean data access layer with proper typing and error handling.
Implements the Repository pattern for separation of concerns.

Repositories flush but never commit: the calling service owns the
transaction so that a mutation and its audit entry share one commit.
"""

import logging
from typing import List, Optional, Dict, Any, Tuple, Iterable
from uuid import UUID
from datetime import datetime

from sqlalchemy import select, func, update, and_, or_, exists
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from database.errors import ConflictError
from database.models import (
    Address,
    Organization,
    Person,
    RoleAssignment,
    ShareClass,
    ShareIssuance,
    ShareTransfer,
    Template,
    GeneratedDocument,
    AuditLog,
    AuditAction,
    RoleType,
    TemplateScope,
    utcnow,
)

logger = logging.getLogger(__name__)


def _flush_or_conflict(session: Session, what: str) -> None:
    """Flush pending changes, translating constraint violations."""
    try:
        session.flush()
    except IntegrityError as e:
        raise ConflictError(f"{what} violates a uniqueness or integrity constraint: {e.orig}")


# ============================================
# ADDRESS REPOSITORY
# ============================================

class AddressRepository:
    """Repository for immutable address rows."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, address_data: Dict[str, Any]) -> Address:
        address = Address(**address_data)
        self.session.add(address)
        self.session.flush()
        logger.debug(f"Created address: {address.id}")
        return address

    def get_by_id(self, address_id: UUID) -> Optional[Address]:
        return self.session.get(Address, address_id)

    def get_many(self, address_ids: Iterable[UUID]) -> Dict[UUID, Address]:
        """
        Resolve many addresses with a single IN query.

        Returns:
            Mapping of address id to Address (missing ids are absent)
        """
        ids = {address_id for address_id in address_ids if address_id is not None}
        if not ids:
            return {}
        result = self.session.execute(select(Address).where(Address.id.in_(ids)))
        return {address.id: address for address in result.scalars().all()}


# ============================================
# ORGANIZATION REPOSITORY
# ============================================

class OrganizationRepository:
    """Repository for organization operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, org_data: Dict[str, Any]) -> Organization:
        org = Organization(**org_data)
        self.session.add(org)
        _flush_or_conflict(self.session, "Organization")
        logger.debug(f"Created organization: {org.id} ({org.name})")
        return org

    def get_by_id(self, org_id: UUID, include_deleted: bool = False) -> Optional[Organization]:
        """
        Get organization by ID.

        Args:
            org_id: UUID of the organization
            include_deleted: If True, include soft-deleted organizations
        """
        query = select(Organization).where(Organization.id == org_id)
        if not include_deleted:
            query = query.where(Organization.is_deleted == False)
        return self.session.execute(query).scalar_one_or_none()

    def get_many(
        self,
        org_ids: Iterable[UUID],
        include_deleted: bool = False
    ) -> Dict[UUID, Organization]:
        ids = {org_id for org_id in org_ids if org_id is not None}
        if not ids:
            return {}
        query = select(Organization).where(Organization.id.in_(ids))
        if not include_deleted:
            query = query.where(Organization.is_deleted == False)
        return {org.id: org for org in self.session.execute(query).scalars().all()}

    def list_by_owner(self, owner_id: str) -> List[Organization]:
        """Organizations created by owner_id, most recently updated first."""
        query = select(Organization).where(
            and_(
                Organization.created_by_id == owner_id,
                Organization.is_deleted == False
            )
        ).order_by(Organization.updated_at.desc())
        return list(self.session.execute(query).scalars().all())

    def update(self, org: Organization, updates: Dict[str, Any]) -> Organization:
        for key, value in updates.items():
            if hasattr(org, key):
                setattr(org, key, value)
        org.updated_at = utcnow()
        _flush_or_conflict(self.session, "Organization")
        return org

    def touch(self, org_id: UUID) -> None:
        """Refresh updated_at after a sub-resource mutation."""
        self.session.execute(
            update(Organization)
            .where(Organization.id == org_id)
            .values(updated_at=utcnow())
        )

    def soft_delete(self, org: Organization) -> None:
        now = utcnow()
        org.is_deleted = True
        org.deleted_at = now
        org.updated_at = now
        self.session.flush()


# ============================================
# PERSON REPOSITORY
# ============================================

class PersonRepository:
    """Repository for people."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, person_data: Dict[str, Any]) -> Person:
        person = Person(**person_data)
        self.session.add(person)
        self.session.flush()
        logger.debug(f"Created person: {person.id}")
        return person

    def get_by_id(self, person_id: UUID) -> Optional[Person]:
        return self.session.get(Person, person_id)

    def get_many(self, person_ids: Iterable[UUID]) -> Dict[UUID, Person]:
        ids = {person_id for person_id in person_ids if person_id is not None}
        if not ids:
            return {}
        result = self.session.execute(select(Person).where(Person.id.in_(ids)))
        return {person.id: person for person in result.scalars().all()}

    def update(self, person: Person, updates: Dict[str, Any]) -> Person:
        for key, value in updates.items():
            if hasattr(person, key):
                setattr(person, key, value)
        person.updated_at = utcnow()
        self.session.flush()
        return person


# ============================================
# ROLE ASSIGNMENT REPOSITORY
# ============================================

class RoleAssignmentRepository:
    """Repository for per-organization role assignments."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, role_data: Dict[str, Any]) -> RoleAssignment:
        role = RoleAssignment(**role_data)
        self.session.add(role)
        _flush_or_conflict(self.session, "Role assignment")
        return role

    def get_in_org(self, org_id: UUID, role_id: UUID) -> Optional[RoleAssignment]:
        query = select(RoleAssignment).where(
            and_(RoleAssignment.id == role_id, RoleAssignment.org_id == org_id)
        )
        return self.session.execute(query).scalar_one_or_none()

    def list_for_org(
        self,
        org_id: UUID,
        role: Optional[RoleType] = None
    ) -> List[RoleAssignment]:
        """Role rows for an organization ordered by start date."""
        query = select(RoleAssignment).where(RoleAssignment.org_id == org_id)
        if role is not None:
            query = query.where(RoleAssignment.role == role)
        query = query.order_by(RoleAssignment.start_date, RoleAssignment.id)
        return list(self.session.execute(query).scalars().all())

    def person_has_role(self, org_id: UUID, person_id: UUID) -> bool:
        query = select(exists().where(
            and_(RoleAssignment.org_id == org_id, RoleAssignment.person_id == person_id)
        ))
        return bool(self.session.execute(query).scalar())

    def delete(self, role: RoleAssignment) -> None:
        self.session.delete(role)
        self.session.flush()


# ============================================
# SHARE CLASS REPOSITORY
# ============================================

class ShareClassRepository:
    """Repository for share classes."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, class_data: Dict[str, Any]) -> ShareClass:
        share_class = ShareClass(**class_data)
        self.session.add(share_class)
        _flush_or_conflict(self.session, "Share class")
        return share_class

    def get_in_org(
        self,
        org_id: UUID,
        share_class_id: UUID,
        for_update: bool = False
    ) -> Optional[ShareClass]:
        """
        Get a share class only if it belongs to org_id.

        Args:
            for_update: Take a row lock (SELECT ... FOR UPDATE) so that
                concurrent ledger writes on this class serialize
        """
        query = select(ShareClass).where(
            and_(ShareClass.id == share_class_id, ShareClass.org_id == org_id)
        )
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    def get_by_short_code(self, org_id: UUID, short_code: str) -> Optional[ShareClass]:
        query = select(ShareClass).where(
            and_(ShareClass.org_id == org_id, ShareClass.short_code == short_code)
        )
        return self.session.execute(query).scalar_one_or_none()

    def list_for_org(self, org_id: UUID) -> List[ShareClass]:
        query = select(ShareClass).where(
            ShareClass.org_id == org_id
        ).order_by(ShareClass.short_code)
        return list(self.session.execute(query).scalars().all())

    def update(self, share_class: ShareClass, updates: Dict[str, Any]) -> ShareClass:
        for key, value in updates.items():
            if hasattr(share_class, key):
                setattr(share_class, key, value)
        _flush_or_conflict(self.session, "Share class")
        return share_class

    def is_referenced(self, share_class_id: UUID) -> bool:
        """True when any issuance or transfer points at the class."""
        issued = select(exists().where(ShareIssuance.share_class_id == share_class_id))
        moved = select(exists().where(ShareTransfer.share_class_id == share_class_id))
        return bool(self.session.execute(issued).scalar()) or bool(self.session.execute(moved).scalar())

    def delete(self, share_class: ShareClass) -> None:
        self.session.delete(share_class)
        self.session.flush()


# ============================================
# LEDGER REPOSITORIES
# ============================================

class ShareIssuanceRepository:
    """Repository for share issuances (append-only)."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, issuance_data: Dict[str, Any]) -> ShareIssuance:
        issuance = ShareIssuance(**issuance_data)
        self.session.add(issuance)
        _flush_or_conflict(self.session, "Share issuance")
        logger.debug(f"Created issuance: {issuance.id} (cert {issuance.cert_number})")
        return issuance

    def cert_number_exists(self, org_id: UUID, share_class_id: UUID, cert_number: str) -> bool:
        query = select(exists().where(
            and_(
                ShareIssuance.org_id == org_id,
                ShareIssuance.share_class_id == share_class_id,
                ShareIssuance.cert_number == cert_number
            )
        ))
        return bool(self.session.execute(query).scalar())

    def list_for_org(self, org_id: UUID) -> List[ShareIssuance]:
        """Issuances for an organization, most recent issue date first."""
        query = select(ShareIssuance).where(
            ShareIssuance.org_id == org_id
        ).order_by(ShareIssuance.issue_date.desc(), ShareIssuance.created_at.desc())
        return list(self.session.execute(query).unique().scalars().all())

    def list_for_person_in_class(
        self,
        org_id: UUID,
        share_class_id: UUID,
        person_id: UUID
    ) -> List[ShareIssuance]:
        query = select(ShareIssuance).where(
            and_(
                ShareIssuance.org_id == org_id,
                ShareIssuance.share_class_id == share_class_id,
                ShareIssuance.shareholder_id == person_id
            )
        )
        return list(self.session.execute(query).unique().scalars().all())


class ShareTransferRepository:
    """Repository for share transfers (append-only)."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, transfer_data: Dict[str, Any]) -> ShareTransfer:
        transfer = ShareTransfer(**transfer_data)
        self.session.add(transfer)
        _flush_or_conflict(self.session, "Share transfer")
        return transfer

    def list_for_org(self, org_id: UUID) -> List[ShareTransfer]:
        """Transfers for an organization, most recent transfer date first."""
        query = select(ShareTransfer).where(
            ShareTransfer.org_id == org_id
        ).order_by(ShareTransfer.transfer_date.desc(), ShareTransfer.created_at.desc())
        return list(self.session.execute(query).scalars().all())

    def list_involving_person_in_class(
        self,
        org_id: UUID,
        share_class_id: UUID,
        person_id: UUID
    ) -> List[ShareTransfer]:
        """Transfers in or out of person_id for one class."""
        query = select(ShareTransfer).where(
            and_(
                ShareTransfer.org_id == org_id,
                ShareTransfer.share_class_id == share_class_id,
                or_(
                    ShareTransfer.from_person_id == person_id,
                    ShareTransfer.to_person_id == person_id
                )
            )
        )
        return list(self.session.execute(query).scalars().all())


# ============================================
# TEMPLATE / DOCUMENT REPOSITORIES
# ============================================

class TemplateRepository:
    """Repository for document templates."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, template_data: Dict[str, Any]) -> Template:
        template = Template(**template_data)
        self.session.add(template)
        _flush_or_conflict(self.session, "Template")
        return template

    def get_by_id(self, template_id: UUID) -> Optional[Template]:
        return self.session.get(Template, template_id)

    def get_by_code(self, code: str) -> Optional[Template]:
        return self.session.execute(
            select(Template).where(Template.code == code)
        ).scalar_one_or_none()

    def list_all(self, scope: Optional[TemplateScope] = None) -> List[Template]:
        query = select(Template)
        if scope is not None:
            query = query.where(Template.scope == scope)
        query = query.order_by(Template.created_at.desc())
        return list(self.session.execute(query).scalars().all())

    def update(self, template: Template, updates: Dict[str, Any]) -> Template:
        for key, value in updates.items():
            if hasattr(template, key):
                setattr(template, key, value)
        _flush_or_conflict(self.session, "Template")
        return template

    def is_referenced(self, template_id: UUID) -> bool:
        query = select(exists().where(GeneratedDocument.template_id == template_id))
        return bool(self.session.execute(query).scalar())

    def delete(self, template: Template) -> None:
        self.session.delete(template)
        self.session.flush()


class GeneratedDocumentRepository:
    """Repository for generated document pointers."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, document_data: Dict[str, Any]) -> GeneratedDocument:
        document = GeneratedDocument(**document_data)
        self.session.add(document)
        self.session.flush()
        return document

    def list_for_org(self, org_id: UUID) -> List[GeneratedDocument]:
        query = select(GeneratedDocument).where(
            GeneratedDocument.org_id == org_id
        ).order_by(GeneratedDocument.created_at.desc())
        return list(self.session.execute(query).scalars().all())


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log operations. Insert and read only."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        org_id: Optional[UUID],
        actor_id: str,
        action: AuditAction,
        payload: Dict[str, Any]
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            org_id: Organization affected (None for system-level actions)
            actor_id: Verified actor identity
            action: Type of action
            payload: Essential facts of the action (JSON-serializable)

        Returns:
            Created AuditLog
        """
        log = AuditLog(
            org_id=org_id,
            actor_id=actor_id,
            action=action,
            payload=payload
        )
        self.session.add(log)
        self.session.flush()
        return log

    def search(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        org_id: Optional[UUID] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: Optional[int] = 100
    ) -> Tuple[List[AuditLog], int]:
        """
        Search audit logs with filters, newest first.

        Args:
            action: Filter by action type
            actor_id: Filter by actor
            org_id: Filter by organization
            start_date: Start of date range
            end_date: End of date range
            offset: Pagination offset
            limit: Maximum results (None for all)

        Returns:
            Tuple of (logs list, total count)
        """
        conditions = []

        if action:
            conditions.append(AuditLog.action == action)
        if actor_id:
            conditions.append(AuditLog.actor_id == actor_id)
        if org_id:
            conditions.append(AuditLog.org_id == org_id)
        if start_date:
            conditions.append(AuditLog.created_at >= start_date)
        if end_date:
            conditions.append(AuditLog.created_at <= end_date)

        # Count query
        count_query = select(func.count()).select_from(AuditLog)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        # Data query
        query = select(AuditLog)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(AuditLog.created_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)

        logs = list(self.session.execute(query).scalars().all())
        return logs, total
