"""
Audit Log Service

Append-only compliance trail. Each AuditAction has exactly one payload
dataclass; record() refuses a payload of the wrong type so the stored
JSON always has the documented shape for its action.

record() must be called inside the caller's transaction() block: if the
audit insert fails the primary mutation rolls back with it.
"""

import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type
from uuid import UUID

from sqlalchemy import event
from sqlalchemy.orm import Session

from database.errors import ValidationError
from database.models import AuditAction, AuditLog
from database.monitoring import record_audit_event
from database.repositories import AuditRepository

logger = logging.getLogger(__name__)


# ============================================
# PAYLOADS
# ============================================

@dataclass
class CreateOrgPayload:
    org_id: UUID
    name: str


@dataclass
class UpdateOrgPayload:
    org_id: UUID
    changes: Dict[str, Any]


@dataclass
class DeleteOrgPayload:
    org_id: UUID
    name: str


@dataclass
class AddPersonPayload:
    person_id: UUID
    name: str
    roles: List[str] = field(default_factory=list)


@dataclass
class UpdatePersonPayload:
    person_id: UUID
    changes: Dict[str, Any]


@dataclass
class AddRolePayload:
    role_id: UUID
    role: str
    person_id: Optional[UUID] = None
    entity_shareholder_id: Optional[UUID] = None


@dataclass
class RemoveRolePayload:
    role_id: UUID
    role: str


@dataclass
class CreateShareClassPayload:
    share_class_id: UUID
    name: str
    short_code: str


@dataclass
class UpdateShareClassPayload:
    share_class_id: UUID
    changes: Dict[str, Any]


@dataclass
class DeleteShareClassPayload:
    share_class_id: UUID
    short_code: str


@dataclass
class IssueSharesPayload:
    issuance_id: UUID
    quantity: int
    cert_number: str


@dataclass
class TransferSharesPayload:
    transfer_id: UUID
    quantity: int
    to_person_id: UUID
    from_person_id: Optional[UUID] = None


@dataclass
class CreateTemplatePayload:
    template_id: UUID
    name: str


@dataclass
class UpdateTemplatePayload:
    template_id: UUID
    changes: Dict[str, Any]


@dataclass
class DeleteTemplatePayload:
    template_id: UUID
    name: str


@dataclass
class GenerateDocumentPayload:
    doc_id: UUID
    template_name: str


@dataclass
class GenerateMinuteBookPayload:
    bundle: List[str]
    file_key: str


PAYLOAD_TYPES: Dict[AuditAction, Type] = {
    AuditAction.CREATE_ORG: CreateOrgPayload,
    AuditAction.UPDATE_ORG: UpdateOrgPayload,
    AuditAction.DELETE_ORG: DeleteOrgPayload,
    AuditAction.ADD_PERSON: AddPersonPayload,
    AuditAction.UPDATE_PERSON: UpdatePersonPayload,
    AuditAction.ADD_ROLE: AddRolePayload,
    AuditAction.REMOVE_ROLE: RemoveRolePayload,
    AuditAction.CREATE_SHARE_CLASS: CreateShareClassPayload,
    AuditAction.UPDATE_SHARE_CLASS: UpdateShareClassPayload,
    AuditAction.DELETE_SHARE_CLASS: DeleteShareClassPayload,
    AuditAction.ISSUE_SHARES: IssueSharesPayload,
    AuditAction.TRANSFER_SHARES: TransferSharesPayload,
    AuditAction.CREATE_TEMPLATE: CreateTemplatePayload,
    AuditAction.UPDATE_TEMPLATE: UpdateTemplatePayload,
    AuditAction.DELETE_TEMPLATE: DeleteTemplatePayload,
    AuditAction.GENERATE_DOCUMENT: GenerateDocumentPayload,
    AuditAction.GENERATE_MINUTE_BOOK: GenerateMinuteBookPayload,
}


def to_jsonable(value: Any) -> Any:
    """Convert UUIDs, dates and decimals for storage in a JSON column."""
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


# ============================================
# METRICS
# ============================================

# Session.info key holding actions recorded in the open transaction
PENDING_AUDIT_EVENTS = 'pending_audit_events'


@event.listens_for(Session, 'after_commit')
def _count_committed_audit_events(session):
    """Audit metrics only count entries that actually committed."""
    for action in session.info.pop(PENDING_AUDIT_EVENTS, []):
        record_audit_event(action)


@event.listens_for(Session, 'after_rollback')
def _discard_rolled_back_audit_events(session):
    session.info.pop(PENDING_AUDIT_EVENTS, None)


# ============================================
# SERVICE
# ============================================

class AuditService:
    """Writes and reads the audit trail."""

    def __init__(self, session: Session):
        self.session = session
        self._repo = AuditRepository(session)

    def record(
        self,
        org_id: Optional[UUID],
        actor_id: str,
        action: AuditAction,
        payload: Any
    ) -> AuditLog:
        """
        Append one audit entry.

        Args:
            org_id: Organization the action concerns, None for system-level
            actor_id: Verified actor identity (required)
            action: Action from the closed vocabulary
            payload: Instance of the payload dataclass registered for action

        Raises:
            ValidationError: missing actor or payload of the wrong type
        """
        if not actor_id:
            raise ValidationError("Audit entries require an actor", field="actor_id")

        expected = PAYLOAD_TYPES.get(action)
        if expected is None or not isinstance(payload, expected):
            raise ValidationError(
                f"Payload for {action} must be {expected.__name__ if expected else 'a registered type'}, "
                f"got {type(payload).__name__}",
                field="payload"
            )

        entry = self._repo.log(org_id, actor_id, action, to_jsonable(asdict(payload)))
        self.session.info.setdefault(PENDING_AUDIT_EVENTS, []).append(action.value)
        logger.info(f"Audit {action.value} org={org_id} actor={actor_id}")
        return entry

    def list_for_org(self, org_id: UUID) -> List[AuditLog]:
        """All entries for one organization, newest first."""
        logs, _ = self._repo.search(org_id=org_id, limit=None)
        return logs

    def list_all(self) -> List[AuditLog]:
        """Every entry in the system, newest first."""
        logs, _ = self._repo.search(limit=None)
        return logs

    def search(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        org_id: Optional[UUID] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[AuditLog], int]:
        return self._repo.search(
            action=action,
            actor_id=actor_id,
            org_id=org_id,
            offset=offset,
            limit=limit
        )
