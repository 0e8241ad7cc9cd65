"""
Pydantic request/response schemas for the Minutebook API

Request models do the first pass of shape validation; the domain services
re-check every business rule, so the same errors surface whether a service
is called over HTTP or directly.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from database.models import AuditAction, RoleType, ShareholderType, TemplateScope


# ============================================
# ADDRESSES
# ============================================

class AddressIn(BaseModel):
    """Embedded address. Always stored as a new row."""
    line1: str = Field(..., min_length=1, max_length=500)
    line2: Optional[str] = Field(default=None, max_length=500)
    city: str = Field(..., min_length=1, max_length=200)
    region: str = Field(..., min_length=1, max_length=200, description="Province or state")
    country: str = Field(..., min_length=1, max_length=100)
    postal: str = Field(..., min_length=1, max_length=50)


class AddressResponse(BaseModel):
    id: UUID
    line1: str
    line2: Optional[str] = None
    city: str
    region: str
    country: str
    postal: str

    model_config = {"from_attributes": True}


# ============================================
# ORGANIZATIONS
# ============================================

class OrganizationCreate(BaseModel):
    """Request schema for creating an organization."""
    name: str = Field(..., min_length=1, max_length=500)
    jurisdiction: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Incorporating jurisdiction (e.g. 'CBCA', 'DE')"
    )
    registration_number: Optional[str] = Field(default=None, max_length=100)
    formation_date: Optional[date] = None
    auth_rep_name: Optional[str] = Field(default=None, max_length=200)
    auth_rep_company: Optional[str] = Field(default=None, max_length=200)
    auth_rep_email: Optional[str] = Field(default=None, max_length=200)
    auth_rep_phone: Optional[str] = Field(default=None, max_length=50)
    registered_office: Optional[AddressIn] = None
    records_office: Optional[AddressIn] = None
    mailing_address: Optional[AddressIn] = None
    auth_rep_address: Optional[AddressIn] = None


class OrganizationUpdate(BaseModel):
    """Partial update; only fields present in the body are applied."""
    name: Optional[str] = Field(default=None, max_length=500)
    jurisdiction: Optional[str] = Field(default=None, max_length=50)
    registration_number: Optional[str] = Field(default=None, max_length=100)
    formation_date: Optional[date] = None
    auth_rep_name: Optional[str] = Field(default=None, max_length=200)
    auth_rep_company: Optional[str] = Field(default=None, max_length=200)
    auth_rep_email: Optional[str] = Field(default=None, max_length=200)
    auth_rep_phone: Optional[str] = Field(default=None, max_length=50)
    registered_office: Optional[AddressIn] = None
    records_office: Optional[AddressIn] = None
    mailing_address: Optional[AddressIn] = None
    auth_rep_address: Optional[AddressIn] = None


class OrganizationResponse(BaseModel):
    """Organization with its address slots resolved."""
    id: UUID
    name: str
    jurisdiction: str
    registration_number: Optional[str] = None
    formation_date: Optional[date] = None
    auth_rep_name: Optional[str] = None
    auth_rep_company: Optional[str] = None
    auth_rep_email: Optional[str] = None
    auth_rep_phone: Optional[str] = None
    registered_office: Optional[AddressResponse] = None
    records_office: Optional[AddressResponse] = None
    mailing_address: Optional[AddressResponse] = None
    auth_rep_address: Optional[AddressResponse] = None
    created_by_id: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ============================================
# PEOPLE AND ROLES
# ============================================

class RoleIn(BaseModel):
    role: str = Field(..., description="Director, Officer or Shareholder")
    title: Optional[str] = Field(default=None, max_length=200, description="e.g. 'President'")
    start_date: Optional[date] = Field(default=None, description="Defaults to today")
    end_date: Optional[date] = None

    @field_validator('role')
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Case-insensitive match against the role vocabulary."""
        allowed = {role.value.lower() for role in RoleType}
        if v.strip().lower() not in allowed:
            raise ValueError(
                "role must be one of: " + ", ".join(role.value for role in RoleType)
            )
        return v


class RoleAssign(RoleIn):
    """Role for an existing person, or a corporate shareholder."""
    person_id: Optional[UUID] = None
    entity_shareholder_id: Optional[UUID] = Field(
        default=None,
        description="Another organization holding shares (Shareholder role only)"
    )


class PersonCreate(BaseModel):
    """A new person together with their initial roles."""
    first_name: str = Field(..., min_length=1, max_length=200)
    last_name: str = Field(..., min_length=1, max_length=200)
    email: Optional[str] = Field(default=None, max_length=200)
    date_of_birth: Optional[date] = None
    kyc_id: Optional[str] = Field(default=None, max_length=100)
    address: Optional[AddressIn] = None
    roles: List[RoleIn] = Field(default_factory=list)


class PersonUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=200)
    last_name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=200)
    date_of_birth: Optional[date] = None
    kyc_id: Optional[str] = Field(default=None, max_length=100)
    address: Optional[AddressIn] = None


class PersonResponse(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    date_of_birth: Optional[date] = None
    kyc_id: Optional[str] = None
    address_id: Optional[UUID] = None

    model_config = {"from_attributes": True}


class RoleResponse(BaseModel):
    id: UUID
    org_id: UUID
    person_id: Optional[UUID] = None
    entity_shareholder_id: Optional[UUID] = None
    role: RoleType
    title: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None

    model_config = {"from_attributes": True}


class PersonWithRolesResponse(PersonResponse):
    """A person listed once with every role they hold in the organization.

    holdings maps share class id to the net quantity derived from the
    ledger; it is read-only.
    """
    roles: List[RoleResponse] = Field(default_factory=list)
    holdings: Dict[str, int] = Field(default_factory=dict)


# ============================================
# SHARE CLASSES AND LEDGER
# ============================================

class ShareClassCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="e.g. 'Class A Common'")
    short_code: str = Field(..., min_length=1, max_length=20, description="Unique per organization")
    voting: bool = True
    participating: bool = True
    redemption: bool = False
    special_rights: Optional[str] = None


class ShareClassUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    short_code: Optional[str] = Field(default=None, max_length=20)
    voting: Optional[bool] = None
    participating: Optional[bool] = None
    redemption: Optional[bool] = None
    special_rights: Optional[str] = None


class ShareClassResponse(BaseModel):
    id: UUID
    org_id: UUID
    name: str
    short_code: str
    voting: bool
    participating: bool
    redemption: bool
    special_rights: Optional[str] = None

    model_config = {"from_attributes": True}


class IssuanceCreate(BaseModel):
    """Original grant of shares.

    Exactly one of shareholder_id / entity_shareholder_id, matching
    shareholder_type.
    """
    shareholder_type: ShareholderType = ShareholderType.PERSON
    shareholder_id: Optional[UUID] = None
    entity_shareholder_id: Optional[UUID] = None
    share_class_id: UUID
    quantity: int = Field(..., gt=0, description="Number of shares (whole, positive)")
    cert_number: str = Field(..., min_length=1, max_length=50)
    issue_price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    issue_date: Optional[date] = Field(default=None, description="Defaults to today")


class IssuanceResponse(BaseModel):
    id: UUID
    org_id: UUID
    shareholder_type: ShareholderType
    shareholder_id: Optional[UUID] = None
    entity_shareholder_id: Optional[UUID] = None
    share_class_id: UUID
    quantity: int
    cert_number: str
    issue_price: Optional[Decimal] = None
    issue_date: date
    created_at: datetime

    model_config = {"from_attributes": True}


class TransferCreate(BaseModel):
    """Movement of issued shares. Omit from_person_id for treasury."""
    from_person_id: Optional[UUID] = None
    to_person_id: UUID
    share_class_id: UUID
    quantity: int = Field(..., gt=0)
    transfer_date: Optional[date] = Field(default=None, description="Defaults to today")
    consideration: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    cert_from: Optional[str] = Field(default=None, max_length=50)
    cert_to: Optional[str] = Field(default=None, max_length=50)


class TransferResponse(BaseModel):
    id: UUID
    org_id: UUID
    from_person_id: Optional[UUID] = None
    to_person_id: UUID
    share_class_id: UUID
    quantity: int
    transfer_date: date
    consideration: Optional[Decimal] = None
    cert_from: Optional[str] = None
    cert_to: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class HolderPositionResponse(BaseModel):
    holder_id: str
    holder_type: str = Field(..., description="person or entity")
    holder_name: str
    quantity: int
    percentage: str = Field(..., description="Ownership percentage as a decimal string")


class ClassBreakdownResponse(BaseModel):
    share_class_id: str
    name: str
    short_code: str
    total: int
    holders: List[HolderPositionResponse] = Field(default_factory=list)


class CapTableResponse(BaseModel):
    """Ownership per class and across all classes."""
    org_id: str
    total_outstanding: int
    by_class: List[ClassBreakdownResponse] = Field(default_factory=list)
    overall: List[HolderPositionResponse] = Field(default_factory=list)


class RegistersResponse(BaseModel):
    director_register: List[Dict[str, Any]] = Field(default_factory=list)
    officer_register: List[Dict[str, Any]] = Field(default_factory=list)
    shareholder_register: List[Dict[str, Any]] = Field(default_factory=list)
    share_issuance_register: List[Dict[str, Any]] = Field(default_factory=list)
    transfer_register: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================
# AUDIT
# ============================================

class AuditLogResponse(BaseModel):
    id: UUID
    org_id: Optional[UUID] = None
    actor_id: str
    action: AuditAction
    payload: Dict[str, Any]
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditLogPage(BaseModel):
    """One page of audit entries, newest first."""
    items: List[AuditLogResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Entries matching the filters")
    offset: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)


# ============================================
# TEMPLATES AND DOCUMENTS
# ============================================

class TemplateCreate(BaseModel):
    """Register an uploaded template by its finalized storage key."""
    name: str = Field(..., min_length=1, max_length=200)
    code: str = Field(..., min_length=1, max_length=100, description="Globally unique code")
    scope: TemplateScope
    file_key: str = Field(..., min_length=1, max_length=1000)
    template_schema: Optional[Dict[str, Any]] = Field(
        default=None,
        alias="schema",
        description="Required-fields map, e.g. {'required': ['org.name']}"
    )

    model_config = {"populate_by_name": True}


class TemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    code: Optional[str] = Field(default=None, max_length=100)
    scope: Optional[TemplateScope] = None
    file_key: Optional[str] = Field(default=None, max_length=1000)
    template_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")

    model_config = {"populate_by_name": True}


class TemplateResponse(BaseModel):
    id: UUID
    name: str
    code: str
    scope: TemplateScope
    file_key: str
    template_schema: Dict[str, Any] = Field(default_factory=dict, alias="schema")
    owner_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}


class GenerateDocumentRequest(BaseModel):
    template_id: UUID
    overrides: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Values merged over the organization snapshot"
    )


class GeneratedDocumentResponse(BaseModel):
    id: UUID
    org_id: UUID
    template_id: UUID
    file_key: str
    pdf_key: Optional[str] = None
    data_used: Dict[str, Any]
    created_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class MinuteBookRequest(BaseModel):
    bundle: List[str] = Field(
        default_factory=list,
        description="Sections to include (e.g. 'registers', 'resolutions')"
    )


class MinuteBookResponse(BaseModel):
    file_key: str
    bundle: List[str]


# ============================================
# SERVICE
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: Dict[str, Any] = Field(
        default_factory=dict,
        description="Database connectivity, latency and pool usage"
    )
    version: str = Field(..., description="API version")
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
