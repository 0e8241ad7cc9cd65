"""
Cap Table Service (Share Classes, Issuances, Transfers)

The conservation-of-shares ledger. Issuances and transfers are
append-only; holdings are always derived from them, never stored.

Balance rule: replaying a holder's issuances and transfers for one class
in date order, the running balance never drops below zero. Credits on a
given date are applied before debits on the same date. A transfer that
would break this (including a back-dated one that would overdraw an
earlier point in history) is refused with InsufficientSharesError.

Concurrent transfers on the same class serialize on a row lock taken on
the ShareClass (SELECT ... FOR UPDATE) before the balance is read.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from database.audit_service import (
    AuditService,
    CreateShareClassPayload,
    UpdateShareClassPayload,
    DeleteShareClassPayload,
    IssueSharesPayload,
    TransferSharesPayload,
)
from database.connection import transaction
from database.errors import (
    ConflictError,
    InsufficientSharesError,
    NotFoundError,
    SelfReferenceError,
    ValidationError,
)
from database.models import (
    AuditAction,
    ShareClass,
    ShareIssuance,
    ShareTransfer,
    ShareholderType,
    utcnow,
)
from database.monitoring import timed_query
from database.repositories import (
    OrganizationRepository,
    PersonRepository,
    ShareClassRepository,
    ShareIssuanceRepository,
    ShareTransferRepository,
)
from database.validation import (
    coerce_uuid,
    optional_date,
    optional_money,
    optional_text,
    optional_uuid,
    positive_int,
    reject_unknown,
    require_text,
)

logger = logging.getLogger(__name__)

SHARE_CLASS_FIELDS = ('name', 'short_code', 'voting', 'participating', 'redemption', 'special_rights')
ISSUANCE_FIELDS = (
    'shareholder_type', 'shareholder_id', 'entity_shareholder_id', 'share_class_id',
    'quantity', 'cert_number', 'issue_price', 'issue_date',
)
TRANSFER_FIELDS = (
    'from_person_id', 'to_person_id', 'share_class_id', 'quantity',
    'transfer_date', 'consideration', 'cert_from', 'cert_to',
)

# (share_class_id, holder_id) -> net quantity
Holdings = Dict[Tuple[UUID, UUID], int]


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class HolderPosition:
    """One holder's net position and ownership percentage"""
    holder_id: UUID
    holder_type: ShareholderType
    holder_name: str
    quantity: int
    percentage: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder_id": str(self.holder_id),
            "holder_type": self.holder_type.value,
            "holder_name": self.holder_name,
            "quantity": self.quantity,
            "percentage": str(self.percentage),
        }


@dataclass
class ClassBreakdown:
    """Holders of a single share class; percentages are of the class"""
    share_class_id: UUID
    name: str
    short_code: str
    total: int
    holders: List[HolderPosition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "share_class_id": str(self.share_class_id),
            "name": self.name,
            "short_code": self.short_code,
            "total": self.total,
            "holders": [holder.to_dict() for holder in self.holders],
        }


@dataclass
class CapTable:
    """
    Two separate views of ownership:
    - by_class: percentage of each class outstanding
    - overall: percentage of all shares outstanding across every class
    """
    org_id: UUID
    total_outstanding: int
    by_class: List[ClassBreakdown] = field(default_factory=list)
    overall: List[HolderPosition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": str(self.org_id),
            "total_outstanding": self.total_outstanding,
            "by_class": [breakdown.to_dict() for breakdown in self.by_class],
            "overall": [holder.to_dict() for holder in self.overall],
        }


def ownership_percentage(quantity: int, total: int, places: int = 2) -> Decimal:
    """quantity / total * 100, rounded half-up to `places` decimals."""
    exponent = Decimal(10) ** -places
    if total <= 0:
        return Decimal(0).quantize(exponent)
    return (Decimal(quantity) * 100 / Decimal(total)).quantize(exponent, rounding=ROUND_HALF_UP)


def _as_bool(data: Dict[str, Any], name: str, default: bool) -> bool:
    value = data.get(name, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false", field=name)
    return value


# ============================================
# SERVICE
# ============================================

class CapTableService:
    """Share classes and the issuance/transfer ledger for an organization."""

    def __init__(self, session: Session, config: Optional[Any] = None):
        """
        Args:
            session: SQLAlchemy database session
            config: Optional ConfigManager (cap_table.percentage_places)
        """
        self.session = session
        self._percentage_places = config.cap_table.percentage_places if config else 2
        self._orgs = OrganizationRepository(session)
        self._people = PersonRepository(session)
        self._classes = ShareClassRepository(session)
        self._issuances = ShareIssuanceRepository(session)
        self._transfers = ShareTransferRepository(session)
        self._audit = AuditService(session)

    def _require_org(self, org_id: UUID):
        org = self._orgs.get_by_id(org_id)
        if org is None:
            raise NotFoundError("Organization", org_id)
        return org

    def _require_class(self, org_id: UUID, share_class_id: UUID, for_update: bool = False) -> ShareClass:
        share_class = self._classes.get_in_org(org_id, share_class_id, for_update=for_update)
        if share_class is None:
            # Also covers a class that exists but belongs to another org
            raise NotFoundError("Share class", share_class_id, field="share_class_id")
        return share_class

    # ----------------------------------------
    # Share classes
    # ----------------------------------------

    def create_share_class(self, org_id: UUID, data: Dict[str, Any], actor_id: str) -> ShareClass:
        """
        Raises:
            ValidationError: name or short_code missing
            ConflictError: short_code already used in this organization
        """
        reject_unknown(data, SHARE_CLASS_FIELDS)
        self._require_org(org_id)
        values = {
            'org_id': org_id,
            'name': require_text(data, 'name', 'Share class name'),
            'short_code': require_text(data, 'short_code', 'Short code'),
            'voting': _as_bool(data, 'voting', True),
            'participating': _as_bool(data, 'participating', True),
            'redemption': _as_bool(data, 'redemption', False),
            'special_rights': optional_text(data, 'special_rights'),
        }
        if self._classes.get_by_short_code(org_id, values['short_code']) is not None:
            raise ConflictError(
                f"Short code '{values['short_code']}' is already used in this organization",
                field="short_code"
            )

        with transaction(self.session):
            share_class = self._classes.create(values)
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.CREATE_SHARE_CLASS,
                CreateShareClassPayload(
                    share_class_id=share_class.id,
                    name=share_class.name,
                    short_code=share_class.short_code
                )
            )
        return share_class

    def list_share_classes(self, org_id: UUID) -> List[ShareClass]:
        self._require_org(org_id)
        return self._classes.list_for_org(org_id)

    def update_share_class(
        self,
        org_id: UUID,
        share_class_id: UUID,
        data: Dict[str, Any],
        actor_id: str
    ) -> ShareClass:
        reject_unknown(data, SHARE_CLASS_FIELDS)
        self._require_org(org_id)
        share_class = self._require_class(org_id, share_class_id)

        changes: Dict[str, Any] = {}
        if 'name' in data:
            changes['name'] = require_text(data, 'name', 'Share class name')
        if 'short_code' in data:
            short_code = require_text(data, 'short_code', 'Short code')
            existing = self._classes.get_by_short_code(org_id, short_code)
            if existing is not None and existing.id != share_class.id:
                raise ConflictError(
                    f"Short code '{short_code}' is already used in this organization",
                    field="short_code"
                )
            changes['short_code'] = short_code
        for flag, default in (('voting', True), ('participating', True), ('redemption', False)):
            if flag in data:
                changes[flag] = _as_bool(data, flag, default)
        if 'special_rights' in data:
            changes['special_rights'] = optional_text(data, 'special_rights')

        with transaction(self.session):
            self._classes.update(share_class, changes)
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.UPDATE_SHARE_CLASS,
                UpdateShareClassPayload(share_class_id=share_class.id, changes=changes)
            )
        return share_class

    def delete_share_class(self, org_id: UUID, share_class_id: UUID, actor_id: str) -> None:
        """Refused while any issuance or transfer references the class."""
        self._require_org(org_id)
        share_class = self._require_class(org_id, share_class_id)
        if self._classes.is_referenced(share_class.id):
            raise ConflictError(
                f"Share class '{share_class.short_code}' has ledger entries and cannot be deleted",
                field="share_class_id"
            )

        with transaction(self.session):
            payload = DeleteShareClassPayload(
                share_class_id=share_class.id,
                short_code=share_class.short_code
            )
            self._classes.delete(share_class)
            self._orgs.touch(org_id)
            self._audit.record(org_id, actor_id, AuditAction.DELETE_SHARE_CLASS, payload)

    # ----------------------------------------
    # Issuances
    # ----------------------------------------

    def issue_shares(self, org_id: UUID, data: Dict[str, Any], actor_id: str) -> ShareIssuance:
        """
        Record an original grant of shares.

        Checks, in order: holder exclusivity, no self-shareholding, class
        belongs to the organization, positive quantity, non-negative
        price, certificate number unused within (org, class). Nothing is
        written and nothing audited when a check fails.
        """
        reject_unknown(data, ISSUANCE_FIELDS)
        self._require_org(org_id)

        raw_type = data.get('shareholder_type') or ShareholderType.PERSON.value
        try:
            shareholder_type = ShareholderType(raw_type)
        except ValueError:
            raise ValidationError(
                f"Invalid shareholder_type: {raw_type!r}",
                field="shareholder_type",
                suggestion="Use 'person' or 'entity'"
            )
        person_id = optional_uuid(data, 'shareholder_id')
        entity_id = optional_uuid(data, 'entity_shareholder_id')

        if shareholder_type == ShareholderType.PERSON:
            if person_id is None or entity_id is not None:
                raise ValidationError(
                    "Person issuances require shareholder_id and no entity_shareholder_id",
                    field="shareholder_id"
                )
        else:
            if entity_id is None or person_id is not None:
                raise ValidationError(
                    "Entity issuances require entity_shareholder_id and no shareholder_id",
                    field="entity_shareholder_id"
                )
            if entity_id == org_id:
                raise SelfReferenceError(
                    "An organization cannot be its own shareholder",
                    field="entity_shareholder_id"
                )

        if data.get('share_class_id') is None:
            raise ValidationError("share_class_id is required", field="share_class_id")
        share_class_id = coerce_uuid(data['share_class_id'], 'share_class_id')
        self._require_class(org_id, share_class_id)

        quantity = positive_int(data, 'quantity')
        issue_price = optional_money(data, 'issue_price')
        cert_number = require_text(data, 'cert_number', 'Certificate number')
        issue_date = optional_date(data, 'issue_date') or utcnow().date()

        if person_id is not None and self._people.get_by_id(person_id) is None:
            raise NotFoundError("Person", person_id, field="shareholder_id")
        if entity_id is not None and self._orgs.get_by_id(entity_id) is None:
            raise NotFoundError("Organization", entity_id, field="entity_shareholder_id")
        if self._issuances.cert_number_exists(org_id, share_class_id, cert_number):
            raise ConflictError(
                f"Certificate {cert_number} already exists for this share class",
                field="cert_number"
            )

        with transaction(self.session):
            issuance = self._issuances.create({
                'org_id': org_id,
                'shareholder_type': shareholder_type,
                'shareholder_id': person_id,
                'entity_shareholder_id': entity_id,
                'share_class_id': share_class_id,
                'quantity': quantity,
                'cert_number': cert_number,
                'issue_price': issue_price,
                'issue_date': issue_date,
            })
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.ISSUE_SHARES,
                IssueSharesPayload(
                    issuance_id=issuance.id,
                    quantity=issuance.quantity,
                    cert_number=issuance.cert_number
                )
            )

        logger.info(f"Issued {quantity} shares (cert {cert_number}) in org {org_id}")
        return issuance

    def list_issuances(self, org_id: UUID) -> List[ShareIssuance]:
        self._require_org(org_id)
        return self._issuances.list_for_org(org_id)

    # ----------------------------------------
    # Transfers
    # ----------------------------------------

    @timed_query("available_balance")
    def available_balance(
        self,
        org_id: UUID,
        share_class_id: UUID,
        person_id: UUID,
        as_of: Optional[date] = None
    ) -> int:
        """
        Largest quantity person_id could transfer out on as_of without
        the running balance going negative at any later point.
        """
        events = self._ledger_events(org_id, share_class_id, person_id)
        return self._available_at(events, as_of)

    def _ledger_events(self, org_id: UUID, share_class_id: UUID, person_id: UUID) -> List[Tuple[date, int, int]]:
        """(date, order, signed quantity) sorted; credits (order 0) first."""
        events = [
            (issuance.issue_date, 0, issuance.quantity)
            for issuance in self._issuances.list_for_person_in_class(org_id, share_class_id, person_id)
        ]
        for transfer in self._transfers.list_involving_person_in_class(org_id, share_class_id, person_id):
            if transfer.to_person_id == person_id:
                events.append((transfer.transfer_date, 0, transfer.quantity))
            if transfer.from_person_id == person_id:
                events.append((transfer.transfer_date, 1, -transfer.quantity))
        events.sort(key=lambda event: (event[0], event[1]))
        return events

    @staticmethod
    def _available_at(events: List[Tuple[date, int, int]], as_of: Optional[date]) -> int:
        # A new debit on as_of sorts after every existing event on that date
        balance = 0
        index = 0
        while index < len(events) and (as_of is None or events[index][0] <= as_of):
            balance += events[index][2]
            index += 1
        available = balance
        for _, _, delta in events[index:]:
            balance += delta
            available = min(available, balance)
        return max(available, 0)

    def transfer_shares(self, org_id: UUID, data: Dict[str, Any], actor_id: str) -> ShareTransfer:
        """
        Move issued shares between people.

        A missing from_person_id records shares leaving treasury and is
        not balance-checked.

        Raises:
            InsufficientSharesError: from_person_id holds fewer than quantity
            NotFoundError: unknown class (or class of another org) / person
            ValidationError: malformed input, from == to
        """
        reject_unknown(data, TRANSFER_FIELDS)
        self._require_org(org_id)

        if data.get('share_class_id') is None:
            raise ValidationError("share_class_id is required", field="share_class_id")
        share_class_id = coerce_uuid(data['share_class_id'], 'share_class_id')
        if data.get('to_person_id') is None:
            raise ValidationError("to_person_id is required", field="to_person_id")
        to_person_id = coerce_uuid(data['to_person_id'], 'to_person_id')
        from_person_id = optional_uuid(data, 'from_person_id')
        if from_person_id is not None and from_person_id == to_person_id:
            raise ValidationError(
                "A transfer needs two different people",
                field="to_person_id"
            )

        quantity = positive_int(data, 'quantity')
        consideration = optional_money(data, 'consideration')
        transfer_date = optional_date(data, 'transfer_date') or utcnow().date()

        for person_field, person_id in (('to_person_id', to_person_id), ('from_person_id', from_person_id)):
            if person_id is not None and self._people.get_by_id(person_id) is None:
                raise NotFoundError("Person", person_id, field=person_field)

        with transaction(self.session):
            self._require_class(org_id, share_class_id, for_update=True)

            if from_person_id is not None:
                available = self.available_balance(org_id, share_class_id, from_person_id, transfer_date)
                if quantity > available:
                    raise InsufficientSharesError(from_person_id, share_class_id, quantity, available)

            transfer = self._transfers.create({
                'org_id': org_id,
                'from_person_id': from_person_id,
                'to_person_id': to_person_id,
                'share_class_id': share_class_id,
                'quantity': quantity,
                'transfer_date': transfer_date,
                'consideration': consideration,
                'cert_from': optional_text(data, 'cert_from'),
                'cert_to': optional_text(data, 'cert_to'),
            })
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.TRANSFER_SHARES,
                TransferSharesPayload(
                    transfer_id=transfer.id,
                    quantity=transfer.quantity,
                    to_person_id=to_person_id,
                    from_person_id=from_person_id
                )
            )

        logger.info(f"Transferred {quantity} shares of class {share_class_id} in org {org_id}")
        return transfer

    def list_transfers(self, org_id: UUID) -> List[ShareTransfer]:
        self._require_org(org_id)
        return self._transfers.list_for_org(org_id)

    # ----------------------------------------
    # Aggregation
    # ----------------------------------------

    def net_holdings(self, org_id: UUID) -> Holdings:
        """Issuances adjusted by transfers, per (class, holder)."""
        holdings: Holdings = {}
        for issuance in self._issuances.list_for_org(org_id):
            key = (issuance.share_class_id, issuance.holder_id)
            holdings[key] = holdings.get(key, 0) + issuance.quantity
        for transfer in self._transfers.list_for_org(org_id):
            to_key = (transfer.share_class_id, transfer.to_person_id)
            holdings[to_key] = holdings.get(to_key, 0) + transfer.quantity
            if transfer.from_person_id is not None:
                from_key = (transfer.share_class_id, transfer.from_person_id)
                holdings[from_key] = holdings.get(from_key, 0) - transfer.quantity
        return holdings

    def _holder_types(self, org_id: UUID) -> Dict[UUID, ShareholderType]:
        types = {}
        for issuance in self._issuances.list_for_org(org_id):
            types[issuance.holder_id] = issuance.shareholder_type
        return types

    @timed_query("compute_cap_table")
    def compute_cap_table(self, org_id: UUID) -> CapTable:
        """
        Ownership by class and overall. Holders whose net position is
        zero are omitted. Holder names are resolved in one query per
        holder kind.
        """
        self._require_org(org_id)
        places = self._percentage_places
        holdings = {key: qty for key, qty in self.net_holdings(org_id).items() if qty != 0}
        holder_types = self._holder_types(org_id)

        person_ids = [holder for (_, holder) in holdings
                      if holder_types.get(holder, ShareholderType.PERSON) == ShareholderType.PERSON]
        people = self._people.get_many(person_ids)
        entity_ids = {holder for (_, holder) in holdings
                      if holder_types.get(holder) == ShareholderType.ENTITY}
        entity_orgs = self._orgs.get_many(entity_ids, include_deleted=True)
        entity_names = {
            holder: entity_orgs[holder].name if holder in entity_orgs else str(holder)
            for holder in entity_ids
        }

        def describe(holder_id: UUID) -> Tuple[ShareholderType, str]:
            if holder_id in entity_names:
                return ShareholderType.ENTITY, entity_names[holder_id]
            person = people.get(holder_id)
            return ShareholderType.PERSON, person.full_name if person else str(holder_id)

        grand_total = sum(holdings.values())
        table = CapTable(org_id=org_id, total_outstanding=grand_total)

        per_holder: Dict[UUID, int] = {}
        for share_class in self._classes.list_for_org(org_id):
            class_positions = {
                holder: qty for (class_id, holder), qty in holdings.items()
                if class_id == share_class.id
            }
            class_total = sum(class_positions.values())
            breakdown = ClassBreakdown(
                share_class_id=share_class.id,
                name=share_class.name,
                short_code=share_class.short_code,
                total=class_total,
            )
            for holder, qty in sorted(class_positions.items(), key=lambda item: (-item[1], str(item[0]))):
                holder_type, holder_name = describe(holder)
                breakdown.holders.append(HolderPosition(
                    holder_id=holder,
                    holder_type=holder_type,
                    holder_name=holder_name,
                    quantity=qty,
                    percentage=ownership_percentage(qty, class_total, places),
                ))
                per_holder[holder] = per_holder.get(holder, 0) + qty
            table.by_class.append(breakdown)

        for holder, qty in sorted(per_holder.items(), key=lambda item: (-item[1], str(item[0]))):
            holder_type, holder_name = describe(holder)
            table.overall.append(HolderPosition(
                holder_id=holder,
                holder_type=holder_type,
                holder_name=holder_name,
                quantity=qty,
                percentage=ownership_percentage(qty, grand_total, places),
            ))

        return table
