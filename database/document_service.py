"""
Templates, Generated Documents, Minute Books and Registers

Rendering itself belongs to an external templating service. This module
assembles the read-only snapshot an organization's documents are built
from, hands it to a DocumentRenderer, and persists the resulting pointer
record together with its audit entry.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from database.audit_service import (
    AuditService,
    CreateTemplatePayload,
    UpdateTemplatePayload,
    DeleteTemplatePayload,
    GenerateDocumentPayload,
    GenerateMinuteBookPayload,
    to_jsonable,
)
from database.cap_table_service import CapTableService
from database.connection import transaction
from database.errors import ConflictError, NotFoundError, ValidationError
from database.models import (
    AuditAction,
    GeneratedDocument,
    Organization,
    RoleType,
    Template,
    TemplateScope,
)
from database.organization_service import OrganizationService
from database.people_service import PeopleService
from database.repositories import (
    GeneratedDocumentRepository,
    OrganizationRepository,
    PersonRepository,
    RoleAssignmentRepository,
    ShareClassRepository,
    ShareIssuanceRepository,
    ShareTransferRepository,
    TemplateRepository,
)
from database.validation import reject_unknown, require_text

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = ('name', 'code', 'scope', 'file_key', 'schema')


# ============================================
# RENDERER COLLABORATOR
# ============================================

@dataclass
class RenderResult:
    file_key: str
    pdf_key: Optional[str] = None


class DocumentRenderer:
    """
    Boundary to the document templating service.

    This default implementation only allocates storage keys; a real
    deployment subclasses it and performs the rendering and upload.
    """

    def __init__(self, documents_config: Optional[Any] = None):
        self.generated_prefix = getattr(documents_config, 'generated_prefix', 'generated')
        self.minute_book_prefix = getattr(documents_config, 'minute_book_prefix', 'minute-books')
        self.document_extension = getattr(documents_config, 'document_extension', 'docx')
        self.bundle_extension = getattr(documents_config, 'bundle_extension', 'zip')

    @staticmethod
    def _timestamp() -> int:
        return int(time.time() * 1000)

    def render(self, template: Template, org_id: UUID, snapshot: Dict[str, Any]) -> RenderResult:
        key = (
            f"{self.generated_prefix}/{org_id}/{template.id}/"
            f"{self._timestamp()}.{self.document_extension}"
        )
        return RenderResult(file_key=key)

    def render_minute_book(self, org_id: UUID, bundle: List[str], snapshot: Dict[str, Any]) -> str:
        return f"{self.minute_book_prefix}/{org_id}/{self._timestamp()}.{self.bundle_extension}"


# ============================================
# RESULT TYPES
# ============================================

@dataclass
class Registers:
    """Statutory registers of one organization (plain JSON-ready dicts)"""
    directors: List[Dict[str, Any]] = field(default_factory=list)
    officers: List[Dict[str, Any]] = field(default_factory=list)
    shareholders: List[Dict[str, Any]] = field(default_factory=list)
    issuances: List[Dict[str, Any]] = field(default_factory=list)
    transfers: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "director_register": self.directors,
            "officer_register": self.officers,
            "shareholder_register": self.shareholders,
            "share_issuance_register": self.issuances,
            "transfer_register": self.transfers,
        }


@dataclass
class MinuteBookResult:
    file_key: str
    bundle: List[str]


def _person_dict(person) -> Optional[Dict[str, Any]]:
    if person is None:
        return None
    return {
        "id": str(person.id),
        "first_name": person.first_name,
        "last_name": person.last_name,
        "email": person.email,
    }


def _lookup(snapshot: Dict[str, Any], dotted: str) -> Any:
    value: Any = snapshot
    for part in dotted.split('.'):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def org_snapshot(org: Organization, addresses: Dict[str, Any]) -> Dict[str, Any]:
    return to_jsonable({
        "id": org.id,
        "name": org.name,
        "jurisdiction": org.jurisdiction,
        "registration_number": org.registration_number,
        "formation_date": org.formation_date,
        "auth_rep_name": org.auth_rep_name,
        "auth_rep_company": org.auth_rep_company,
        "auth_rep_email": org.auth_rep_email,
        "auth_rep_phone": org.auth_rep_phone,
        "addresses": {
            slot: None if address is None else {
                "line1": address.line1,
                "line2": address.line2,
                "city": address.city,
                "region": address.region,
                "country": address.country,
                "postal": address.postal,
            }
            for slot, address in addresses.items()
        },
    })


# ============================================
# SERVICE
# ============================================

class DocumentService:
    """Templates, document generation, minute books and registers."""

    def __init__(
        self,
        session: Session,
        renderer: Optional[DocumentRenderer] = None,
        config: Optional[Any] = None
    ):
        self.session = session
        self.config = config
        self.renderer = renderer or DocumentRenderer(config.documents if config else None)
        self._templates = TemplateRepository(session)
        self._documents = GeneratedDocumentRepository(session)
        self._orgs = OrganizationRepository(session)
        self._audit = AuditService(session)

    def _require_org(self, org_id: UUID) -> Organization:
        org = self._orgs.get_by_id(org_id)
        if org is None:
            raise NotFoundError("Organization", org_id)
        return org

    def _require_template(self, template_id: UUID) -> Template:
        template = self._templates.get_by_id(template_id)
        if template is None:
            raise NotFoundError("Template", template_id, field="template_id")
        return template

    # ----------------------------------------
    # Templates
    # ----------------------------------------

    @staticmethod
    def _parse_scope(value: Any) -> TemplateScope:
        try:
            return TemplateScope(value)
        except ValueError:
            allowed = ", ".join(scope.value for scope in TemplateScope)
            raise ValidationError(
                f"Invalid template scope: {value!r}",
                field="scope",
                suggestion=f"Use one of: {allowed}"
            )

    @staticmethod
    def _parse_schema(value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValidationError("schema must be an object", field="schema")
        required = value.get('required', [])
        if not isinstance(required, list) or not all(isinstance(item, str) for item in required):
            raise ValidationError("schema.required must be a list of field paths", field="schema")
        return value

    def create_template(self, data: Dict[str, Any], actor_id: str) -> Template:
        """Register an uploaded template by its finalized storage key."""
        reject_unknown(data, TEMPLATE_FIELDS)
        values = {
            'name': require_text(data, 'name', 'Template name'),
            'code': require_text(data, 'code', 'Template code'),
            'scope': self._parse_scope(data.get('scope')),
            'file_key': require_text(data, 'file_key', 'File key'),
            'schema': self._parse_schema(data.get('schema')),
            'owner_id': actor_id,
        }
        if self._templates.get_by_code(values['code']) is not None:
            raise ConflictError(f"Template code '{values['code']}' already exists", field="code")

        with transaction(self.session):
            template = self._templates.create(values)
            self._audit.record(
                None, actor_id, AuditAction.CREATE_TEMPLATE,
                CreateTemplatePayload(template_id=template.id, name=template.name)
            )
        return template

    def list_templates(self, scope: Optional[str] = None) -> List[Template]:
        return self._templates.list_all(self._parse_scope(scope) if scope else None)

    def get_template(self, template_id: UUID) -> Template:
        return self._require_template(template_id)

    def update_template(self, template_id: UUID, data: Dict[str, Any], actor_id: str) -> Template:
        reject_unknown(data, TEMPLATE_FIELDS)
        template = self._require_template(template_id)

        changes: Dict[str, Any] = {}
        for text_field, label in (('name', 'Template name'), ('code', 'Template code'), ('file_key', 'File key')):
            if text_field in data:
                changes[text_field] = require_text(data, text_field, label)
        if 'scope' in data:
            changes['scope'] = self._parse_scope(data['scope'])
        if 'schema' in data:
            changes['schema'] = self._parse_schema(data['schema'])
        if 'code' in changes:
            existing = self._templates.get_by_code(changes['code'])
            if existing is not None and existing.id != template.id:
                raise ConflictError(f"Template code '{changes['code']}' already exists", field="code")

        with transaction(self.session):
            self._templates.update(template, changes)
            self._audit.record(
                None, actor_id, AuditAction.UPDATE_TEMPLATE,
                UpdateTemplatePayload(template_id=template.id, changes=changes)
            )
        return template

    def delete_template(self, template_id: UUID, actor_id: str) -> None:
        """Refused while generated documents reference the template."""
        template = self._require_template(template_id)
        if self._templates.is_referenced(template.id):
            raise ConflictError(
                f"Template '{template.code}' has generated documents and cannot be deleted",
                field="template_id"
            )
        with transaction(self.session):
            payload = DeleteTemplatePayload(template_id=template.id, name=template.name)
            self._templates.delete(template)
            self._audit.record(None, actor_id, AuditAction.DELETE_TEMPLATE, payload)

    # ----------------------------------------
    # Snapshots and generation
    # ----------------------------------------

    def build_snapshot(self, org_id: UUID) -> Dict[str, Any]:
        """Read-only {org, cap_table, people} view handed to renderers."""
        org_service = OrganizationService(self.session)
        org = org_service.require_org(org_id)
        addresses = org_service.resolve_addresses([org])[org.id]
        cap_table = CapTableService(self.session, self.config).compute_cap_table(org_id)
        people = PeopleService(self.session).list_people_with_roles(org_id)
        return {
            "org": org_snapshot(org, addresses),
            "cap_table": cap_table.to_dict(),
            "people": [
                {
                    **_person_dict(entry.person),
                    "roles": [
                        to_jsonable({"role": row.role, "title": row.title,
                                     "start_date": row.start_date, "end_date": row.end_date})
                        for row in entry.roles
                    ],
                }
                for entry in people
            ],
        }

    def generate_document(
        self,
        org_id: UUID,
        template_id: UUID,
        overrides: Optional[Dict[str, Any]],
        actor_id: str
    ) -> GeneratedDocument:
        """
        Render a template against the organization snapshot and persist
        the pointer record plus a GENERATE_DOCUMENT audit entry.

        Raises:
            NotFoundError: unknown organization or template
            ValidationError: a field listed in schema.required is missing
        """
        self._require_org(org_id)
        template = self._require_template(template_id)
        if overrides is not None and not isinstance(overrides, dict):
            raise ValidationError("overrides must be an object", field="overrides")

        snapshot = self.build_snapshot(org_id)
        snapshot["overrides"] = to_jsonable(overrides or {})

        missing = [
            path for path in (template.schema or {}).get('required', [])
            if _lookup(snapshot["overrides"], path) in (None, "")
            and _lookup(snapshot, path) in (None, "")
        ]
        if missing:
            raise ValidationError(
                f"Template '{template.code}' requires: {', '.join(missing)}",
                field="overrides",
                suggestion="Supply the missing values as overrides"
            )

        rendered = self.renderer.render(template, org_id, snapshot)

        with transaction(self.session):
            document = self._documents.create({
                'org_id': org_id,
                'template_id': template.id,
                'file_key': rendered.file_key,
                'pdf_key': rendered.pdf_key,
                'data_used': snapshot,
                'created_by': actor_id,
            })
            self._orgs.touch(org_id)
            self._audit.record(
                org_id, actor_id, AuditAction.GENERATE_DOCUMENT,
                GenerateDocumentPayload(doc_id=document.id, template_name=template.name)
            )

        logger.info(f"Generated document {document.id} from template {template.code}")
        return document

    def list_documents(self, org_id: UUID) -> List[GeneratedDocument]:
        self._require_org(org_id)
        return self._documents.list_for_org(org_id)

    def generate_minute_book(self, org_id: UUID, bundle: List[str], actor_id: str) -> MinuteBookResult:
        """Allocate a minute-book archive for the requested sections."""
        self._require_org(org_id)
        if not bundle or not all(isinstance(item, str) and item.strip() for item in bundle):
            raise ValidationError(
                "bundle must list at least one section",
                field="bundle"
            )
        sections = [item.strip() for item in bundle]
        file_key = self.renderer.render_minute_book(org_id, sections, self.build_snapshot(org_id))

        with transaction(self.session):
            self._audit.record(
                org_id, actor_id, AuditAction.GENERATE_MINUTE_BOOK,
                GenerateMinuteBookPayload(bundle=sections, file_key=file_key)
            )
        return MinuteBookResult(file_key=file_key, bundle=sections)

    # ----------------------------------------
    # Registers
    # ----------------------------------------

    def build_registers(self, org_id: UUID) -> Registers:
        """
        Director, officer, shareholder, issuance and transfer registers.
        The shareholder register lists current net positions per class,
        so holders who only received shares by transfer appear in it.
        """
        self._require_org(org_id)
        roles = RoleAssignmentRepository(self.session).list_for_org(org_id)
        issuances = ShareIssuanceRepository(self.session).list_for_org(org_id)
        transfers = ShareTransferRepository(self.session).list_for_org(org_id)
        classes = {
            share_class.id: share_class
            for share_class in ShareClassRepository(self.session).list_for_org(org_id)
        }

        person_ids = [row.person_id for row in roles]
        person_ids += [transfer.from_person_id for transfer in transfers]
        person_ids += [transfer.to_person_id for transfer in transfers]
        people = PersonRepository(self.session).get_many(person_ids)
        cap_table = CapTableService(self.session, self.config).compute_cap_table(org_id)

        def class_dict(class_id: UUID) -> Optional[Dict[str, Any]]:
            share_class = classes.get(class_id)
            if share_class is None:
                return None
            return {"id": str(share_class.id), "name": share_class.name,
                    "short_code": share_class.short_code}

        def role_entry(row) -> Dict[str, Any]:
            entry = to_jsonable({
                "id": row.id,
                "role": row.role,
                "title": row.title,
                "start_date": row.start_date,
                "end_date": row.end_date,
            })
            entry["person"] = _person_dict(people.get(row.person_id))
            return entry

        registers = Registers()
        registers.directors = [role_entry(row) for row in roles if row.role == RoleType.DIRECTOR]
        registers.officers = [role_entry(row) for row in roles if row.role == RoleType.OFFICER]

        for issuance in issuances:
            entry = to_jsonable({
                "id": issuance.id,
                "shareholder_type": issuance.shareholder_type,
                "shareholder_id": issuance.shareholder_id,
                "entity_shareholder_id": issuance.entity_shareholder_id,
                "share_class_id": issuance.share_class_id,
                "quantity": issuance.quantity,
                "cert_number": issuance.cert_number,
                "issue_price": issuance.issue_price,
                "issue_date": issuance.issue_date,
            })
            entry["share_class"] = class_dict(issuance.share_class_id)
            registers.issuances.append(entry)

        # Current holders per class, net of transfers
        for breakdown in cap_table.by_class:
            for position in breakdown.holders:
                entry = position.to_dict()
                entry["share_class"] = class_dict(breakdown.share_class_id)
                registers.shareholders.append(entry)

        for transfer in transfers:
            entry = to_jsonable({
                "id": transfer.id,
                "quantity": transfer.quantity,
                "transfer_date": transfer.transfer_date,
                "consideration": transfer.consideration,
                "cert_from": transfer.cert_from,
                "cert_to": transfer.cert_to,
            })
            entry["share_class"] = class_dict(transfer.share_class_id)
            entry["from_person"] = _person_dict(people.get(transfer.from_person_id))
            entry["to_person"] = _person_dict(people.get(transfer.to_person_id))
            registers.transfers.append(entry)

        return registers
