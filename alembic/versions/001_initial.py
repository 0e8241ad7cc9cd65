"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2024-12-01 00:00:00.000000

This is the baseline migration that creates all tables for the Minutebook
system. It corresponds to the ORM models in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AUDIT_ACTIONS = (
    'CREATE_ORG', 'UPDATE_ORG', 'DELETE_ORG',
    'ADD_PERSON', 'UPDATE_PERSON', 'ADD_ROLE', 'REMOVE_ROLE',
    'CREATE_SHARE_CLASS', 'UPDATE_SHARE_CLASS', 'DELETE_SHARE_CLASS',
    'ISSUE_SHARES', 'TRANSFER_SHARES',
    'CREATE_TEMPLATE', 'UPDATE_TEMPLATE', 'DELETE_TEMPLATE',
    'GENERATE_DOCUMENT', 'GENERATE_MINUTE_BOOK',
)


def _id_column():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('uuid_generate_v4()'))


def _org_column(ondelete='CASCADE'):
    return sa.Column('org_id', postgresql.UUID(as_uuid=True),
                     sa.ForeignKey('orgs.id', ondelete=ondelete), nullable=False)


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('NOW()'))


def _address_fk(name):
    return sa.Column(name, postgresql.UUID(as_uuid=True), sa.ForeignKey('addresses.id'))


def upgrade() -> None:
    """Create initial database schema."""

    # Enable required extensions
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # Create enums
    role_type = postgresql.ENUM(
        'Director', 'Officer', 'Shareholder',
        name='role_type', create_type=True
    )
    role_type.create(op.get_bind(), checkfirst=True)

    shareholder_type = postgresql.ENUM(
        'person', 'entity',
        name='shareholder_type', create_type=True
    )
    shareholder_type.create(op.get_bind(), checkfirst=True)

    template_scope = postgresql.ENUM(
        'organization', 'annual', 'resolution', 'register',
        name='template_scope', create_type=True
    )
    template_scope.create(op.get_bind(), checkfirst=True)

    audit_action = postgresql.ENUM(*AUDIT_ACTIONS, name='audit_action', create_type=True)
    audit_action.create(op.get_bind(), checkfirst=True)

    # Create addresses table
    op.create_table(
        'addresses',
        _id_column(),
        sa.Column('line1', sa.String(500), nullable=False),
        sa.Column('line2', sa.String(500)),
        sa.Column('city', sa.String(200), nullable=False),
        sa.Column('region', sa.String(200), nullable=False),
        sa.Column('country', sa.String(100), nullable=False),
        sa.Column('postal', sa.String(50), nullable=False),
        _created_at()
    )

    # Create orgs table
    op.create_table(
        'orgs',
        _id_column(),
        sa.Column('name', sa.String(500), nullable=False),
        sa.Column('jurisdiction', sa.String(50), nullable=False),
        sa.Column('registration_number', sa.String(100)),
        sa.Column('formation_date', sa.Date),
        _address_fk('registered_office_id'),
        _address_fk('records_office_id'),
        _address_fk('mailing_address_id'),
        sa.Column('auth_rep_name', sa.String(200)),
        sa.Column('auth_rep_company', sa.String(200)),
        _address_fk('auth_rep_address_id'),
        sa.Column('auth_rep_email', sa.String(200)),
        sa.Column('auth_rep_phone', sa.String(50)),
        sa.Column('created_by_id', sa.String(100), nullable=False),
        sa.Column('is_deleted', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('deleted_at', sa.DateTime(timezone=True)),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()'))
    )

    # Create people table
    op.create_table(
        'people',
        _id_column(),
        sa.Column('first_name', sa.String(200), nullable=False),
        sa.Column('last_name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(200)),
        sa.Column('date_of_birth', sa.Date),
        _address_fk('address_id'),
        sa.Column('kyc_id', sa.String(100)),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()'))
    )

    # Create role_assignments table
    op.create_table(
        'role_assignments',
        _id_column(),
        _org_column(),
        sa.Column('person_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('people.id')),
        sa.Column('entity_shareholder_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orgs.id')),
        sa.Column('role', postgresql.ENUM(name='role_type', create_type=False), nullable=False),
        sa.Column('title', sa.String(200)),
        sa.Column('start_date', sa.Date, nullable=False),
        sa.Column('end_date', sa.Date),
        sa.CheckConstraint(
            '(person_id IS NOT NULL AND entity_shareholder_id IS NULL) OR '
            '(person_id IS NULL AND entity_shareholder_id IS NOT NULL)',
            name='ck_role_single_holder'
        ),
        sa.CheckConstraint(
            'entity_shareholder_id IS NULL OR entity_shareholder_id <> org_id',
            name='ck_role_not_self'
        ),
        sa.CheckConstraint('end_date IS NULL OR end_date >= start_date', name='ck_role_dates')
    )

    # Create share_classes table
    op.create_table(
        'share_classes',
        _id_column(),
        _org_column(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('short_code', sa.String(20), nullable=False),
        sa.Column('voting', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('participating', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('redemption', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('special_rights', sa.Text),
        sa.UniqueConstraint('org_id', 'short_code', name='uq_share_class_org_code')
    )

    # Create share_issuances table
    op.create_table(
        'share_issuances',
        _id_column(),
        _org_column(),
        sa.Column('shareholder_type', postgresql.ENUM(name='shareholder_type', create_type=False),
                  nullable=False, server_default='person'),
        sa.Column('shareholder_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('people.id')),
        sa.Column('entity_shareholder_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orgs.id')),
        sa.Column('share_class_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('share_classes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('cert_number', sa.String(50), nullable=False),
        sa.Column('issue_price', sa.Numeric(12, 2)),
        sa.Column('issue_date', sa.Date, nullable=False),
        _created_at(),
        sa.CheckConstraint('quantity > 0', name='ck_issuance_quantity_positive'),
        sa.CheckConstraint('issue_price IS NULL OR issue_price >= 0', name='ck_issuance_price_non_negative'),
        sa.CheckConstraint(
            "(shareholder_type = 'person' AND shareholder_id IS NOT NULL "
            "AND entity_shareholder_id IS NULL) OR "
            "(shareholder_type = 'entity' AND entity_shareholder_id IS NOT NULL "
            "AND shareholder_id IS NULL)",
            name='ck_issuance_holder_exclusive'
        ),
        sa.CheckConstraint(
            'entity_shareholder_id IS NULL OR entity_shareholder_id <> org_id',
            name='ck_issuance_not_self'
        ),
        sa.UniqueConstraint('org_id', 'share_class_id', 'cert_number', name='uq_issuance_certificate')
    )

    # Create share_transfers table
    op.create_table(
        'share_transfers',
        _id_column(),
        _org_column(),
        sa.Column('from_person_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('people.id')),
        sa.Column('to_person_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('people.id'),
                  nullable=False),
        sa.Column('share_class_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('share_classes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('transfer_date', sa.Date, nullable=False),
        sa.Column('consideration', sa.Numeric(12, 2)),
        sa.Column('cert_from', sa.String(50)),
        sa.Column('cert_to', sa.String(50)),
        _created_at(),
        sa.CheckConstraint('quantity > 0', name='ck_transfer_quantity_positive'),
        sa.CheckConstraint(
            'from_person_id IS NULL OR from_person_id <> to_person_id',
            name='ck_transfer_distinct_parties'
        )
    )

    # Create templates table
    op.create_table(
        'templates',
        _id_column(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('code', sa.String(100), nullable=False, unique=True),
        sa.Column('scope', postgresql.ENUM(name='template_scope', create_type=False), nullable=False),
        sa.Column('file_key', sa.String(1000), nullable=False),
        sa.Column('schema', postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('owner_id', sa.String(100)),
        _created_at()
    )

    # Create generated_documents table
    op.create_table(
        'generated_documents',
        _id_column(),
        _org_column(),
        sa.Column('template_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('templates.id'),
                  nullable=False),
        sa.Column('file_key', sa.String(1000), nullable=False),
        sa.Column('pdf_key', sa.String(1000)),
        sa.Column('data_used', postgresql.JSONB, nullable=False),
        sa.Column('created_by', sa.String(100), nullable=False),
        _created_at()
    )

    # Create audit_logs table (org_id is null for template actions)
    op.create_table(
        'audit_logs',
        _id_column(),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('orgs.id')),
        sa.Column('actor_id', sa.String(100), nullable=False),
        sa.Column('action', postgresql.ENUM(name='audit_action', create_type=False), nullable=False),
        sa.Column('payload', postgresql.JSONB, nullable=False),
        _created_at()
    )

    # Create indexes
    op.create_index('ix_orgs_name', 'orgs', ['name'])
    op.create_index('ix_orgs_created_by_id', 'orgs', ['created_by_id'])
    op.create_index('ix_orgs_is_deleted', 'orgs', ['is_deleted'])
    op.create_index('ix_org_owner_updated', 'orgs', ['created_by_id', 'updated_at'])

    op.create_index('ix_role_assignments_org_id', 'role_assignments', ['org_id'])
    op.create_index('ix_role_assignments_person_id', 'role_assignments', ['person_id'])
    op.create_index('ix_role_org_person', 'role_assignments', ['org_id', 'person_id'])

    op.create_index('ix_share_classes_org_id', 'share_classes', ['org_id'])

    op.create_index('ix_share_issuances_org_id', 'share_issuances', ['org_id'])
    op.create_index('ix_share_issuances_shareholder_id', 'share_issuances', ['shareholder_id'])
    op.create_index('ix_share_issuances_entity_shareholder_id', 'share_issuances', ['entity_shareholder_id'])
    op.create_index('ix_share_issuances_share_class_id', 'share_issuances', ['share_class_id'])
    op.create_index('ix_issuance_org_class_holder', 'share_issuances',
                    ['org_id', 'share_class_id', 'shareholder_id'])

    op.create_index('ix_share_transfers_org_id', 'share_transfers', ['org_id'])
    op.create_index('ix_share_transfers_from_person_id', 'share_transfers', ['from_person_id'])
    op.create_index('ix_share_transfers_to_person_id', 'share_transfers', ['to_person_id'])
    op.create_index('ix_share_transfers_share_class_id', 'share_transfers', ['share_class_id'])
    op.create_index('ix_transfer_org_class', 'share_transfers', ['org_id', 'share_class_id'])

    op.create_index('ix_templates_owner_id', 'templates', ['owner_id'])

    op.create_index('ix_generated_documents_org_id', 'generated_documents', ['org_id'])
    op.create_index('ix_generated_documents_template_id', 'generated_documents', ['template_id'])

    op.create_index('ix_audit_logs_org_id', 'audit_logs', ['org_id'])
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_org_created', 'audit_logs', ['org_id', 'created_at'])
    op.create_index('ix_audit_actor', 'audit_logs', ['actor_id', 'created_at'])

    # Audit entries and addresses are append-only at the database level too
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_modification() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% rows are immutable', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION reject_modification()
    """)
    op.execute("""
        CREATE TRIGGER addresses_immutable
        BEFORE UPDATE ON addresses
        FOR EACH ROW EXECUTE FUNCTION reject_modification()
    """)


def downgrade() -> None:
    """Drop all tables and types."""
    op.execute('DROP TRIGGER IF EXISTS addresses_immutable ON addresses')
    op.execute('DROP TRIGGER IF EXISTS audit_logs_append_only ON audit_logs')
    op.execute('DROP FUNCTION IF EXISTS reject_modification()')

    # Drop tables in reverse order
    op.drop_table('audit_logs')
    op.drop_table('generated_documents')
    op.drop_table('templates')
    op.drop_table('share_transfers')
    op.drop_table('share_issuances')
    op.drop_table('share_classes')
    op.drop_table('role_assignments')
    op.drop_table('people')
    op.drop_table('orgs')
    op.drop_table('addresses')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS audit_action')
    op.execute('DROP TYPE IF EXISTS template_scope')
    op.execute('DROP TYPE IF EXISTS shareholder_type')
    op.execute('DROP TYPE IF EXISTS role_type')
