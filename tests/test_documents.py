"""
Tests for templates, document generation, minute books and registers.
"""

import uuid

import pytest

from database.document_service import DocumentRenderer, DocumentService, RenderResult
from database.errors import ConflictError, NotFoundError, ValidationError
from database.models import AuditAction, AuditLog, TemplateScope


@pytest.fixture
def template(doc_service, actor_id):
    return doc_service.create_template({
        "name": "Bylaw No. 1",
        "code": "BYLAW_CBCA_1",
        "scope": "organization",
        "file_key": "templates/bylaw-1.docx",
        "schema": {"required": ["org.name", "org.jurisdiction"]},
    }, actor_id)


class RecordingRenderer(DocumentRenderer):
    """Renderer that remembers the snapshot it was handed."""

    def __init__(self):
        super().__init__()
        self.snapshots = []

    def render(self, template, org_id, snapshot):
        self.snapshots.append(snapshot)
        return RenderResult(file_key=f"custom/{template.code}.docx", pdf_key=f"custom/{template.code}.pdf")


class TestTemplates:
    """Test template registration and lifecycle."""

    def test_create_template(self, session, template, actor_id):
        assert template.scope == TemplateScope.ORGANIZATION
        assert template.owner_id == actor_id
        audit = session.query(AuditLog).filter_by(action=AuditAction.CREATE_TEMPLATE).one()
        assert audit.org_id is None
        assert audit.payload["name"] == "Bylaw No. 1"

    def test_duplicate_code(self, doc_service, template, actor_id):
        with pytest.raises(ConflictError):
            doc_service.create_template({
                "name": "Copy", "code": "BYLAW_CBCA_1", "scope": "organization", "file_key": "x"
            }, actor_id)

    def test_invalid_scope(self, doc_service, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            doc_service.create_template({
                "name": "Odd", "code": "ODD", "scope": "quarterly", "file_key": "x"
            }, actor_id)
        assert exc_info.value.field == "scope"

    def test_list_by_scope(self, doc_service, template, actor_id):
        doc_service.create_template({
            "name": "Annual Resolution", "code": "ANNUAL_1", "scope": "annual", "file_key": "y"
        }, actor_id)

        assert [t.code for t in doc_service.list_templates("annual")] == ["ANNUAL_1"]
        assert len(doc_service.list_templates()) == 2

    def test_update_template(self, session, doc_service, template, actor_id):
        updated = doc_service.update_template(template.id, {"name": "Bylaw No. 1 (2024)"}, actor_id)
        assert updated.name == "Bylaw No. 1 (2024)"
        assert session.query(AuditLog).filter_by(action=AuditAction.UPDATE_TEMPLATE).count() == 1

    def test_delete_unused_template(self, doc_service, template, actor_id):
        doc_service.delete_template(template.id, actor_id)
        with pytest.raises(NotFoundError):
            doc_service.get_template(template.id)

    def test_delete_referenced_template(self, doc_service, template, org, actor_id):
        doc_service.generate_document(org.id, template.id, None, actor_id)
        with pytest.raises(ConflictError):
            doc_service.delete_template(template.id, actor_id)


class TestGenerateDocument:
    """Test snapshot assembly and generated document records."""

    def test_generate_persists_pointer_and_audits(self, session, doc_service, template, org, actor_id):
        document = doc_service.generate_document(org.id, template.id, {"meeting_date": "2024-03-01"}, actor_id)

        assert document.file_key.startswith(f"generated/{org.id}/{template.id}/")
        assert document.file_key.endswith(".docx")
        assert document.created_by == actor_id
        assert document.data_used["org"]["name"] == "Acme Inc"
        assert document.data_used["overrides"] == {"meeting_date": "2024-03-01"}
        audit = session.query(AuditLog).filter_by(action=AuditAction.GENERATE_DOCUMENT).one()
        assert audit.payload == {"doc_id": str(document.id), "template_name": "Bylaw No. 1"}
        assert doc_service.list_documents(org.id)[0].id == document.id

    def test_snapshot_contains_cap_table_and_people(self, session, template, org, make_person,
                                                    cap_service, share_class, actor_id):
        holder = make_person("Pat", "Holder")
        cap_service.issue_shares(org.id, {
            "shareholder_id": holder.id, "share_class_id": share_class.id,
            "quantity": 10, "cert_number": "A-1",
        }, actor_id)
        renderer = RecordingRenderer()
        service = DocumentService(session, renderer=renderer)

        document = service.generate_document(org.id, template.id, None, actor_id)

        snapshot = renderer.snapshots[0]
        assert snapshot["cap_table"]["total_outstanding"] == 10
        assert snapshot["people"][0]["last_name"] == "Holder"
        assert snapshot["people"][0]["roles"][0]["role"] == "Shareholder"
        assert document.pdf_key == "custom/BYLAW_CBCA_1.pdf"

    def test_missing_required_field(self, doc_service, org, actor_id):
        template = doc_service.create_template({
            "name": "Director Consent", "code": "CONSENT", "scope": "resolution",
            "file_key": "z", "schema": {"required": ["meeting_date"]},
        }, actor_id)

        with pytest.raises(ValidationError) as exc_info:
            doc_service.generate_document(org.id, template.id, {}, actor_id)
        assert "meeting_date" in exc_info.value.message

        document = doc_service.generate_document(org.id, template.id, {"meeting_date": "2024-03-01"}, actor_id)
        assert document.template_id == template.id

    def test_unknown_template(self, doc_service, org, actor_id):
        with pytest.raises(NotFoundError):
            doc_service.generate_document(org.id, uuid.uuid4(), None, actor_id)


class TestMinuteBook:
    """Test minute book generation."""

    def test_generate_minute_book(self, session, doc_service, org, actor_id):
        result = doc_service.generate_minute_book(org.id, ["registers", " resolutions "], actor_id)

        assert result.file_key.startswith(f"minute-books/{org.id}/")
        assert result.file_key.endswith(".zip")
        assert result.bundle == ["registers", "resolutions"]
        audit = session.query(AuditLog).filter_by(action=AuditAction.GENERATE_MINUTE_BOOK).one()
        assert audit.payload == {"bundle": ["registers", "resolutions"], "file_key": result.file_key}

    def test_empty_bundle(self, doc_service, org, actor_id):
        with pytest.raises(ValidationError):
            doc_service.generate_minute_book(org.id, [], actor_id)


class TestRegisters:
    """Test statutory registers."""

    def test_registers(self, doc_service, people_service, cap_service, make_person,
                       share_class, org, actor_id):
        people_service.add_person(
            org.id, {"first_name": "Dana", "last_name": "Director"},
            [{"role": "Director"}, {"role": "Officer", "title": "President"}], actor_id
        )
        sender = make_person("Pat", "Sender")
        receiver = make_person("Quinn", "Receiver")
        cap_service.issue_shares(org.id, {
            "shareholder_id": sender.id, "share_class_id": share_class.id,
            "quantity": 100, "cert_number": "A-1", "issue_price": "0.01",
        }, actor_id)
        cap_service.transfer_shares(org.id, {
            "from_person_id": sender.id, "to_person_id": receiver.id,
            "share_class_id": share_class.id, "quantity": 40, "cert_to": "A-2",
        }, actor_id)

        registers = doc_service.build_registers(org.id).to_dict()

        assert len(registers["director_register"]) == 1
        assert registers["director_register"][0]["person"]["last_name"] == "Director"
        assert registers["officer_register"][0]["title"] == "President"
        holders = {
            entry["holder_name"]: entry for entry in registers["shareholder_register"]
        }
        assert set(holders) == {"Pat Sender", "Quinn Receiver"}
        assert holders["Pat Sender"]["quantity"] == 60
        assert holders["Quinn Receiver"]["quantity"] == 40
        assert holders["Quinn Receiver"]["share_class"]["short_code"] == "A"
        issuance = registers["share_issuance_register"][0]
        assert issuance["cert_number"] == "A-1"
        assert issuance["issue_price"] == "0.01"
        transfer = registers["transfer_register"][0]
        assert transfer["from_person"]["last_name"] == "Sender"
        assert transfer["to_person"]["last_name"] == "Receiver"
        assert transfer["quantity"] == 40
