"""
Database Package for the Minutebook Entity Management System

This package provides:
- SQLAlchemy ORM models for organizations, people and the share ledger
- FastAPI Dependency Injection for database sessions
- transaction() helper for transaction management
- Repository pattern for data access
- Domain services enforcing the cap-table and audit invariants
- Performance monitoring and query timing
"""

from database.models import (
    Base,
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
    RoleType,
    ShareholderType,
    TemplateScope,
    AuditAction,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    transaction,
    # FastAPI dependencies
    get_db,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)
from database.errors import (
    DomainError,
    ValidationError,
    NotFoundError,
    ConflictError,
    InsufficientSharesError,
    SelfReferenceError,
)
from database.audit_service import AuditService
from database.organization_service import OrganizationService
from database.people_service import PeopleService, PersonWithRoles
from database.cap_table_service import CapTableService, CapTable
from database.document_service import DocumentService, DocumentRenderer
from database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Models
    'Address',
    'Organization',
    'Person',
    'RoleAssignment',
    'ShareClass',
    'ShareIssuance',
    'ShareTransfer',
    'Template',
    'GeneratedDocument',
    'AuditLog',
    # Enums
    'RoleType',
    'ShareholderType',
    'TemplateScope',
    'AuditAction',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'transaction',
    'get_db',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Errors
    'DomainError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'InsufficientSharesError',
    'SelfReferenceError',
    # Services
    'AuditService',
    'OrganizationService',
    'PeopleService',
    'PersonWithRoles',
    'CapTableService',
    'CapTable',
    'DocumentService',
    'DocumentRenderer',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
    'check_health',
    'HealthStatus',
]
