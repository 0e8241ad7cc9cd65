"""
SQLAlchemy ORM Models for the Minutebook Entity Management System

This module defines the schema for legal corporate entities and their cap tables:
- UUID primary keys (portable between PostgreSQL and SQLite)
- Proper foreign key constraints, cascading per organization
- CHECK constraints mirroring the share-ledger invariants
- Immutable addresses and an append-only audit trail
- Timestamps for mutable records (created_at, updated_at)

Tables:
1. addresses - Postal addresses (immutable, never updated in place)
2. orgs - Organizations (root aggregate)
3. people - Individuals who may hold roles across organizations
4. role_assignments - Person (or corporate shareholder) on an organization
5. share_classes - Classes of equity scoped to one organization
6. share_issuances - Original grants of shares to a holder
7. share_transfers - Movements of issued shares between people
8. templates - Document templates (stored externally, referenced by key)
9. generated_documents - Pointers to documents rendered from a snapshot
10. audit_logs - Append-only compliance trail
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Boolean, Date, DateTime, Text, Integer, Numeric,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, Enum,
    JSON, Uuid, event
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column

# Base class for all models
Base = declarative_base()

# Native JSONB on PostgreSQL, JSON text elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


# ============================================
# ENUMS
# ============================================

class RoleType(str, PyEnum):
    """Governance/ownership role within an organization"""
    DIRECTOR = "Director"
    OFFICER = "Officer"
    SHAREHOLDER = "Shareholder"


class ShareholderType(str, PyEnum):
    """Kind of holder an issuance is made to"""
    PERSON = "person"
    ENTITY = "entity"  # Another organization (corporate shareholder)


class TemplateScope(str, PyEnum):
    """Where a document template is used"""
    ORGANIZATION = "organization"
    ANNUAL = "annual"
    RESOLUTION = "resolution"
    REGISTER = "register"


class AuditAction(str, PyEnum):
    """Closed vocabulary of state-changing actions"""
    CREATE_ORG = "CREATE_ORG"
    UPDATE_ORG = "UPDATE_ORG"
    DELETE_ORG = "DELETE_ORG"
    ADD_PERSON = "ADD_PERSON"
    UPDATE_PERSON = "UPDATE_PERSON"
    ADD_ROLE = "ADD_ROLE"
    REMOVE_ROLE = "REMOVE_ROLE"
    CREATE_SHARE_CLASS = "CREATE_SHARE_CLASS"
    UPDATE_SHARE_CLASS = "UPDATE_SHARE_CLASS"
    DELETE_SHARE_CLASS = "DELETE_SHARE_CLASS"
    ISSUE_SHARES = "ISSUE_SHARES"
    TRANSFER_SHARES = "TRANSFER_SHARES"
    CREATE_TEMPLATE = "CREATE_TEMPLATE"
    UPDATE_TEMPLATE = "UPDATE_TEMPLATE"
    DELETE_TEMPLATE = "DELETE_TEMPLATE"
    GENERATE_DOCUMENT = "GENERATE_DOCUMENT"
    GENERATE_MINUTE_BOOK = "GENERATE_MINUTE_BOOK"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin for soft delete support"""
    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )


# ============================================
# REFERENCE DATA
# ============================================

class Address(Base):
    """
    Postal address value object.

    Immutable once created: a change of address inserts a new row and
    repoints the owner's foreign key. The old row is left untouched.
    """
    __tablename__ = "addresses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    line1: Mapped[str] = mapped_column(String(500), nullable=False)
    line2: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    city: Mapped[str] = mapped_column(String(200), nullable=False)
    region: Mapped[str] = mapped_column(String(200), nullable=False)  # province/state
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    postal: Mapped[str] = mapped_column(String(50), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Address(id={self.id}, city='{self.city}', country='{self.country}')>"


# ============================================
# ORGANIZATIONS AND PEOPLE
# ============================================

class Organization(Base, TimestampMixin, SoftDeleteMixin):
    """
    Legal entity; root aggregate for roles, share classes, issuances,
    transfers, generated documents and audit entries.

    Address references are plain foreign keys. They are resolved in bulk by
    the organization service rather than through lazy relationships so that
    listing many organizations costs one extra query, not one per row.
    """
    __tablename__ = "orgs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    # e.g. "CBCA", "OBCA", "DE"
    jurisdiction: Mapped[str] = mapped_column(String(50), nullable=False)
    registration_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    formation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    registered_office_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=True
    )
    records_office_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=True
    )
    mailing_address_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=True
    )

    # Authorized representative
    auth_rep_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    auth_rep_company: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    auth_rep_address_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=True
    )
    auth_rep_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    auth_rep_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Verified actor id from the auth layer
    created_by_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    roles: Mapped[List["RoleAssignment"]] = relationship(
        "RoleAssignment",
        back_populates="org",
        foreign_keys="RoleAssignment.org_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select"
    )
    share_classes: Mapped[List["ShareClass"]] = relationship(
        "ShareClass",
        back_populates="org",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select"
    )

    __table_args__ = (
        Index('ix_org_owner_updated', 'created_by_id', 'updated_at'),
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name='{self.name}', jurisdiction='{self.jurisdiction}')>"


class Person(Base, TimestampMixin):
    """
    An individual who may hold roles in any number of organizations.

    Not owned by an organization: removing a role or deleting an
    organization never deletes the person.
    """
    __tablename__ = "people"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    first_name: Mapped[str] = mapped_column(String(200), nullable=False)
    last_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    address_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("addresses.id"), nullable=True
    )
    # External KYC reference
    kyc_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Person(id={self.id}, name='{self.full_name}')>"


class RoleAssignment(Base):
    """
    Binds a person (or, for shareholders, another organization) to an
    organization with a role and temporal bounds.

    A person holding two roles in the same organization has two rows.
    """
    __tablename__ = "role_assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    person_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("people.id"),
        nullable=True,
        index=True
    )
    entity_shareholder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("orgs.id"),
        nullable=True
    )

    role: Mapped[RoleType] = mapped_column(
        Enum(RoleType, name="role_type", values_callable=_enum_values),
        nullable=False
    )
    title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)  # e.g. "President"
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    org: Mapped["Organization"] = relationship(
        "Organization",
        back_populates="roles",
        foreign_keys=[org_id]
    )

    __table_args__ = (
        CheckConstraint(
            '(person_id IS NOT NULL AND entity_shareholder_id IS NULL) OR '
            '(person_id IS NULL AND entity_shareholder_id IS NOT NULL)',
            name='ck_role_single_holder'
        ),
        CheckConstraint(
            'entity_shareholder_id IS NULL OR entity_shareholder_id <> org_id',
            name='ck_role_not_self'
        ),
        CheckConstraint(
            'end_date IS NULL OR end_date >= start_date',
            name='ck_role_dates'
        ),
        Index('ix_role_org_person', 'org_id', 'person_id'),
    )

    def __repr__(self) -> str:
        return f"<RoleAssignment(org_id={self.org_id}, person_id={self.person_id}, role={self.role})>"


# ============================================
# CAP TABLE
# ============================================

class ShareClass(Base):
    """
    A class of equity (voting, participation, redemption terms) scoped to
    one organization.
    """
    __tablename__ = "share_classes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)  # "Class A Common"
    short_code: Mapped[str] = mapped_column(String(20), nullable=False)  # "A"
    voting: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    participating: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    redemption: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    special_rights: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    org: Mapped["Organization"] = relationship(
        "Organization",
        back_populates="share_classes"
    )

    __table_args__ = (
        UniqueConstraint('org_id', 'short_code', name='uq_share_class_org_code'),
    )

    def __repr__(self) -> str:
        return f"<ShareClass(org_id={self.org_id}, code='{self.short_code}')>"


class ShareIssuance(Base):
    """
    Shares of a class issued to a holder at a point in time.

    Exactly one of shareholder_id / entity_shareholder_id is populated,
    matching shareholder_type. Ledger rows are never updated.
    """
    __tablename__ = "share_issuances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    shareholder_type: Mapped[ShareholderType] = mapped_column(
        Enum(ShareholderType, name="shareholder_type", values_callable=_enum_values),
        nullable=False,
        default=ShareholderType.PERSON
    )
    shareholder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("people.id"),
        nullable=True,
        index=True
    )
    entity_shareholder_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("orgs.id"),
        nullable=True,
        index=True
    )
    share_class_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("share_classes.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    cert_number: Mapped[str] = mapped_column(String(50), nullable=False)
    issue_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    share_class: Mapped["ShareClass"] = relationship("ShareClass", lazy="joined")

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_issuance_quantity_positive'),
        CheckConstraint(
            'issue_price IS NULL OR issue_price >= 0',
            name='ck_issuance_price_non_negative'
        ),
        CheckConstraint(
            "(shareholder_type = 'person' AND shareholder_id IS NOT NULL "
            "AND entity_shareholder_id IS NULL) OR "
            "(shareholder_type = 'entity' AND entity_shareholder_id IS NOT NULL "
            "AND shareholder_id IS NULL)",
            name='ck_issuance_holder_exclusive'
        ),
        CheckConstraint(
            'entity_shareholder_id IS NULL OR entity_shareholder_id <> org_id',
            name='ck_issuance_not_self'
        ),
        UniqueConstraint('org_id', 'share_class_id', 'cert_number', name='uq_issuance_certificate'),
        Index('ix_issuance_org_class_holder', 'org_id', 'share_class_id', 'shareholder_id'),
    )

    @property
    def holder_id(self) -> uuid.UUID:
        if self.shareholder_type == ShareholderType.ENTITY:
            return self.entity_shareholder_id
        return self.shareholder_id

    def __repr__(self) -> str:
        return f"<ShareIssuance(id={self.id}, cert='{self.cert_number}', quantity={self.quantity})>"


class ShareTransfer(Base):
    """
    Movement of previously issued shares between people.

    A null from_person_id records shares coming out of treasury.
    """
    __tablename__ = "share_transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_person_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("people.id"),
        nullable=True,
        index=True
    )
    to_person_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("people.id"),
        nullable=False,
        index=True
    )
    share_class_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("share_classes.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    transfer_date: Mapped[date] = mapped_column(Date, nullable=False)
    consideration: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    cert_from: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    cert_to: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_transfer_quantity_positive'),
        CheckConstraint(
            'from_person_id IS NULL OR from_person_id <> to_person_id',
            name='ck_transfer_distinct_parties'
        ),
        Index('ix_transfer_org_class', 'org_id', 'share_class_id'),
    )

    def __repr__(self) -> str:
        return f"<ShareTransfer(id={self.id}, from={self.from_person_id}, to={self.to_person_id}, quantity={self.quantity})>"


# ============================================
# DOCUMENTS
# ============================================

class Template(Base):
    """
    Document template uploaded to object storage.

    Only the finalized storage key is kept here; the bytes never pass
    through this service.
    """
    __tablename__ = "templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(200), nullable=False)  # "Bylaw No.1 (CBCA)"
    code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)  # "BYLAW_CBCA_1"
    scope: Mapped[TemplateScope] = mapped_column(
        Enum(TemplateScope, name="template_scope", values_callable=_enum_values),
        nullable=False
    )
    file_key: Mapped[str] = mapped_column(String(1000), nullable=False)
    # Required fields map
    schema: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    owner_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<Template(code='{self.code}', name='{self.name}')>"


class GeneratedDocument(Base):
    """Pointer to a document rendered from an organization snapshot."""
    __tablename__ = "generated_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orgs.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("templates.id"),
        nullable=False,
        index=True
    )

    file_key: Mapped[str] = mapped_column(String(1000), nullable=False)
    pdf_key: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    # Snapshot handed to the renderer
    data_used: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<GeneratedDocument(id={self.id}, file_key='{self.file_key}')>"


# ============================================
# AUDIT
# ============================================

class AuditLog(Base):
    """
    Compliance audit trail.

    Immutable - no updates or deletes allowed. Written in the same
    transaction as the mutation it documents.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Null for system-level actions (templates)
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("orgs.id"),
        nullable=True,
        index=True
    )
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action", values_callable=_enum_values),
        nullable=False,
        index=True
    )
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # No updated_at - audit logs are immutable
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )

    __table_args__ = (
        Index('ix_audit_org_created', 'org_id', 'created_at'),
        Index('ix_audit_actor', 'actor_id', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, org_id={self.org_id})>"


class ImmutableRecordError(Exception):
    """Raised when code attempts to modify an append-only record."""
    pass


@event.listens_for(AuditLog, 'before_update')
def _reject_audit_update(mapper, connection, target):
    raise ImmutableRecordError("Audit log entries are append-only")


@event.listens_for(AuditLog, 'before_delete')
def _reject_audit_delete(mapper, connection, target):
    raise ImmutableRecordError("Audit log entries are append-only")


@event.listens_for(Address, 'before_update')
def _reject_address_update(mapper, connection, target):
    raise ImmutableRecordError("Addresses are immutable; create a new address instead")
