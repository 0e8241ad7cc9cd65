"""
FastAPI Minutebook API Server

Provides REST API endpoints for organizations, their people and roles,
the share ledger (classes, issuances, transfers), cap tables, registers,
templates, generated documents and the audit trail.

Authentication happens upstream. Requests arrive with an X-API-Key shared
secret (disabled when API_KEY is unset) and the verified actor identity in
the X-Actor-ID header; the actor id is passed explicitly into every
service call.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, FastAPI, HTTPException, Depends, Query, Request, Response, Security
from fastapi.responses import RedirectResponse
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from api.models import (
    AddressResponse,
    AuditLogPage,
    AuditLogResponse,
    CapTableResponse,
    ErrorResponse,
    GenerateDocumentRequest,
    GeneratedDocumentResponse,
    HealthResponse,
    IssuanceCreate,
    IssuanceResponse,
    MinuteBookRequest,
    MinuteBookResponse,
    OrganizationCreate,
    OrganizationResponse,
    OrganizationUpdate,
    PersonCreate,
    PersonResponse,
    PersonUpdate,
    PersonWithRolesResponse,
    RegistersResponse,
    RoleAssign,
    RoleResponse,
    ShareClassCreate,
    ShareClassResponse,
    ShareClassUpdate,
    TemplateCreate,
    TemplateResponse,
    TemplateUpdate,
    TransferCreate,
    TransferResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from database import (
    AuditAction,
    AuditService,
    CapTableService,
    DocumentService,
    DatabaseSessionProvider,
    OrganizationService,
    PeopleService,
    PersonWithRoles,
    check_health,
    close_db,
    get_db,
    get_db_provider,
    init_db,
)
from database.models import Organization
from security_logger import get_security_logger, sanitize_for_logging

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "")
API_PORT = os.getenv("API_PORT", "")
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


async def verify_api_key(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        get_security_logger().log_authentication_failure(
            reason="MISSING_API_KEY",
            source=sanitize_for_logging(request.url.path),
            source_ip=_client_ip(request),
        )
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        get_security_logger().log_authentication_failure(
            reason="INVALID_API_KEY",
            source=sanitize_for_logging(request.url.path),
            source_ip=_client_ip(request),
        )
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_actor_id(
    request: Request,
    config: ConfigManager = Depends(get_config_instance),
) -> str:
    """Resolve the verified actor identity set by the auth proxy.

    A request without one is rejected with 401 and security-logged.
    """
    header = config.api.actor_header
    actor_id = (request.headers.get(header) or "").strip()

    if not actor_id or len(actor_id) > 100:
        get_security_logger().log_authentication_failure(
            reason="MISSING_ACTOR" if not actor_id else "INVALID_ACTOR",
            source=sanitize_for_logging(request.url.path),
            source_ip=_client_ip(request),
        )
        raise HTTPException(
            status_code=401, detail=f"Missing or invalid actor identity. Provide {header} header."
        )

    request.state.actor_id = actor_id
    get_security_logger().set_request_context(
        request_id=getattr(request.state, "request_id", ""),
        actor_id=actor_id,
        source_ip=_client_ip(request),
    )
    return actor_id


def get_page_size(
    limit: Optional[int] = Query(default=None, ge=1, description="Page size"),
    config: ConfigManager = Depends(get_config_instance),
) -> int:
    return min(limit or config.api.default_page_size, config.api.max_page_size)


# Service dependencies

def get_organization_service(db: Session = Depends(get_db)) -> OrganizationService:
    return OrganizationService(db)


def get_people_service(db: Session = Depends(get_db)) -> PeopleService:
    return PeopleService(db)


def get_cap_table_service(
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
) -> CapTableService:
    return CapTableService(db, config)


def get_document_service(
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
) -> DocumentService:
    return DocumentService(db, config=config)


def get_audit_service(db: Session = Depends(get_db)) -> AuditService:
    return AuditService(db)


# Create FastAPI application
app = FastAPI(
    title="Minutebook API",
    description="Corporate records: organizations, officers, shareholders and cap tables",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app, get_config_instance().api.cors_origins)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)

COMMON_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing API key or actor"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    404: {"model": ErrorResponse, "description": "Referenced record not found"},
    422: {"model": ErrorResponse, "description": "Validation error"},
}
LEDGER_ERRORS = {
    **COMMON_ERRORS,
    409: {"model": ErrorResponse, "description": "Conflict (duplicate or insufficient shares)"},
}

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)], responses=COMMON_ERRORS)


@app.on_event("startup")
async def startup():
    """Load configuration, configure logging and connect to the database."""
    global _config, _startup_time

    logger.info("Starting Minutebook API...")

    try:
        _config = get_config(CONFIG_PATH)
        logging.getLogger().setLevel(_config.logging.level)
        logger.info(f"Configuration loaded from {_config.config_path}")

        init_db()
        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready")

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Minutebook API...")
    close_db()


def _org_response(org: Organization, addresses: Dict[str, object]) -> OrganizationResponse:
    response = OrganizationResponse.model_validate(org)
    return response.model_copy(update={
        slot: AddressResponse.model_validate(address) if address is not None else None
        for slot, address in addresses.items()
    })


def _person_with_roles(entry: PersonWithRoles) -> PersonWithRolesResponse:
    base = PersonResponse.model_validate(entry.person).model_dump()
    return PersonWithRolesResponse(
        **base,
        roles=[RoleResponse.model_validate(row) for row in entry.roles],
        holdings={str(class_id): quantity for class_id, quantity in entry.holdings.items()},
    )


def _audit_page(logs, total: int, offset: int, limit: int) -> AuditLogPage:
    return AuditLogPage(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        offset=offset,
        limit=limit,
    )


# ============================================
# ORGANIZATIONS
# ============================================

@router.get(
    "/orgs",
    response_model=List[OrganizationResponse],
    summary="List organizations",
    description="Organizations created by the calling actor, most recently updated first",
)
def list_organizations(
    actor_id: str = Depends(get_actor_id),
    service: OrganizationService = Depends(get_organization_service),
):
    orgs = service.list_organizations(actor_id)
    addresses = service.resolve_addresses(orgs)
    return [_org_response(org, addresses[org.id]) for org in orgs]


@router.post(
    "/orgs",
    response_model=OrganizationResponse,
    status_code=201,
    summary="Create an organization",
)
def create_organization(
    request: OrganizationCreate,
    actor_id: str = Depends(get_actor_id),
    service: OrganizationService = Depends(get_organization_service),
):
    """Create an organization together with its embedded addresses.

    Writes a CREATE_ORG audit entry in the same transaction.
    """
    org = service.create_organization(request.model_dump(exclude_unset=True), actor_id)
    return _org_response(org, service.resolve_addresses([org])[org.id])


@router.get("/orgs/{org_id}", response_model=OrganizationResponse, summary="Get an organization")
def get_organization(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: OrganizationService = Depends(get_organization_service),
):
    org = service.get_organization(org_id)
    return _org_response(org, service.resolve_addresses([org])[org.id])


@router.patch(
    "/orgs/{org_id}",
    response_model=OrganizationResponse,
    summary="Update an organization",
    description="Only fields present in the body change; an address object replaces that slot",
)
def update_organization(
    org_id: UUID,
    request: OrganizationUpdate,
    actor_id: str = Depends(get_actor_id),
    service: OrganizationService = Depends(get_organization_service),
):
    org = service.update_organization(org_id, request.model_dump(exclude_unset=True), actor_id)
    return _org_response(org, service.resolve_addresses([org])[org.id])


@router.delete("/orgs/{org_id}", status_code=204, summary="Delete an organization (soft)")
def delete_organization(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: OrganizationService = Depends(get_organization_service),
):
    service.delete_organization(org_id, actor_id)
    return Response(status_code=204)


# ============================================
# PEOPLE AND ROLES
# ============================================

@router.get(
    "/orgs/{org_id}/people",
    response_model=List[PersonWithRolesResponse],
    summary="List people with their roles",
)
def list_people(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: PeopleService = Depends(get_people_service),
):
    return [_person_with_roles(entry) for entry in service.list_people_with_roles(org_id)]


@router.post(
    "/orgs/{org_id}/people",
    response_model=PersonWithRolesResponse,
    status_code=201,
    summary="Add a person with their roles",
    description="The person, their address and every role are written in one transaction",
)
def add_person(
    org_id: UUID,
    request: PersonCreate,
    actor_id: str = Depends(get_actor_id),
    service: PeopleService = Depends(get_people_service),
):
    person_data = request.model_dump(exclude_unset=True, exclude={"roles"})
    roles = [role.model_dump(exclude_unset=True) for role in request.roles]
    return _person_with_roles(service.add_person(org_id, person_data, roles, actor_id))


@router.patch(
    "/orgs/{org_id}/people/{person_id}",
    response_model=PersonResponse,
    summary="Update a person",
)
def update_person(
    org_id: UUID,
    person_id: UUID,
    request: PersonUpdate,
    actor_id: str = Depends(get_actor_id),
    service: PeopleService = Depends(get_people_service),
):
    return service.update_person(org_id, person_id, request.model_dump(exclude_unset=True), actor_id)


@router.post(
    "/orgs/{org_id}/roles",
    response_model=RoleResponse,
    status_code=201,
    summary="Assign a role",
    description="Role for an existing person, or Shareholder role for another organization",
)
def assign_role(
    org_id: UUID,
    request: RoleAssign,
    actor_id: str = Depends(get_actor_id),
    service: PeopleService = Depends(get_people_service),
):
    return service.assign_role(org_id, request.model_dump(exclude_unset=True), actor_id)


@router.delete("/orgs/{org_id}/roles/{role_id}", status_code=204, summary="Remove a role")
def remove_role(
    org_id: UUID,
    role_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: PeopleService = Depends(get_people_service),
):
    service.remove_role_assignment(org_id, role_id, actor_id)
    return Response(status_code=204)


# ============================================
# SHARE CLASSES AND LEDGER
# ============================================

@router.get(
    "/orgs/{org_id}/share-classes",
    response_model=List[ShareClassResponse],
    summary="List share classes",
)
def list_share_classes(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.list_share_classes(org_id)


@router.post(
    "/orgs/{org_id}/share-classes",
    response_model=ShareClassResponse,
    status_code=201,
    responses=LEDGER_ERRORS,
    summary="Create a share class",
)
def create_share_class(
    org_id: UUID,
    request: ShareClassCreate,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.create_share_class(org_id, request.model_dump(exclude_unset=True), actor_id)


@router.patch(
    "/orgs/{org_id}/share-classes/{share_class_id}",
    response_model=ShareClassResponse,
    responses=LEDGER_ERRORS,
    summary="Update a share class",
)
def update_share_class(
    org_id: UUID,
    share_class_id: UUID,
    request: ShareClassUpdate,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.update_share_class(
        org_id, share_class_id, request.model_dump(exclude_unset=True), actor_id
    )


@router.delete(
    "/orgs/{org_id}/share-classes/{share_class_id}",
    status_code=204,
    responses=LEDGER_ERRORS,
    summary="Delete an unused share class",
)
def delete_share_class(
    org_id: UUID,
    share_class_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    service.delete_share_class(org_id, share_class_id, actor_id)
    return Response(status_code=204)


@router.get(
    "/orgs/{org_id}/issuances",
    response_model=List[IssuanceResponse],
    summary="List share issuances",
)
def list_issuances(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.list_issuances(org_id)


@router.post(
    "/orgs/{org_id}/issuances",
    response_model=IssuanceResponse,
    status_code=201,
    responses=LEDGER_ERRORS,
    summary="Issue shares",
)
def issue_shares(
    org_id: UUID,
    request: IssuanceCreate,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.issue_shares(org_id, request.model_dump(exclude_unset=True), actor_id)


@router.get(
    "/orgs/{org_id}/transfers",
    response_model=List[TransferResponse],
    summary="List share transfers",
)
def list_transfers(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.list_transfers(org_id)


@router.post(
    "/orgs/{org_id}/transfers",
    response_model=TransferResponse,
    status_code=201,
    responses=LEDGER_ERRORS,
    summary="Transfer shares",
    description="Refused with 409 when the sender holds fewer shares than requested",
)
def transfer_shares(
    org_id: UUID,
    request: TransferCreate,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return service.transfer_shares(org_id, request.model_dump(exclude_unset=True), actor_id)


@router.get("/orgs/{org_id}/cap-table", response_model=CapTableResponse, summary="Compute the cap table")
def get_cap_table(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: CapTableService = Depends(get_cap_table_service),
):
    return CapTableResponse.model_validate(service.compute_cap_table(org_id).to_dict())


@router.get("/orgs/{org_id}/registers", response_model=RegistersResponse, summary="Statutory registers")
def get_registers(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return RegistersResponse.model_validate(service.build_registers(org_id).to_dict())


# ============================================
# AUDIT
# ============================================

@router.get(
    "/orgs/{org_id}/audit-logs",
    response_model=AuditLogPage,
    summary="Audit trail of one organization",
)
def list_org_audit_logs(
    org_id: UUID,
    action: Optional[AuditAction] = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Depends(get_page_size),
    actor_id: str = Depends(get_actor_id),
    orgs: OrganizationService = Depends(get_organization_service),
    audit: AuditService = Depends(get_audit_service),
):
    orgs.require_org(org_id)
    logs, total = audit.search(action=action, org_id=org_id, offset=offset, limit=limit)
    return _audit_page(logs, total, offset, limit)


@router.get(
    "/audit-logs",
    response_model=AuditLogPage,
    summary="Search the audit trail",
)
def search_audit_logs(
    action: Optional[AuditAction] = None,
    org_id: Optional[UUID] = None,
    actor: Optional[str] = Query(default=None, max_length=100, description="Filter by actor id"),
    offset: int = Query(default=0, ge=0),
    limit: int = Depends(get_page_size),
    actor_id: str = Depends(get_actor_id),
    audit: AuditService = Depends(get_audit_service),
):
    logs, total = audit.search(action=action, actor_id=actor, org_id=org_id, offset=offset, limit=limit)
    return _audit_page(logs, total, offset, limit)


# ============================================
# TEMPLATES AND DOCUMENTS
# ============================================

@router.get("/templates", response_model=List[TemplateResponse], summary="List templates")
def list_templates(
    scope: Optional[str] = None,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return service.list_templates(scope)


@router.post(
    "/templates",
    response_model=TemplateResponse,
    status_code=201,
    responses=LEDGER_ERRORS,
    summary="Register an uploaded template",
)
def create_template(
    request: TemplateCreate,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return service.create_template(request.model_dump(exclude_unset=True, by_alias=True), actor_id)


@router.get("/templates/{template_id}", response_model=TemplateResponse, summary="Get a template")
def get_template(
    template_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return service.get_template(template_id)


@router.patch(
    "/templates/{template_id}",
    response_model=TemplateResponse,
    responses=LEDGER_ERRORS,
    summary="Update a template",
)
def update_template(
    template_id: UUID,
    request: TemplateUpdate,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return service.update_template(
        template_id, request.model_dump(exclude_unset=True, by_alias=True), actor_id
    )


@router.delete(
    "/templates/{template_id}",
    status_code=204,
    responses=LEDGER_ERRORS,
    summary="Delete an unused template",
)
def delete_template(
    template_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    service.delete_template(template_id, actor_id)
    return Response(status_code=204)


@router.get(
    "/orgs/{org_id}/documents",
    response_model=List[GeneratedDocumentResponse],
    summary="List generated documents",
)
def list_documents(
    org_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return service.list_documents(org_id)


@router.post(
    "/orgs/{org_id}/documents",
    response_model=GeneratedDocumentResponse,
    status_code=201,
    summary="Generate a document from a template",
)
def generate_document(
    org_id: UUID,
    request: GenerateDocumentRequest,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    return service.generate_document(org_id, request.template_id, request.overrides, actor_id)


@router.post(
    "/orgs/{org_id}/minute-book",
    response_model=MinuteBookResponse,
    status_code=201,
    summary="Generate the minute book",
)
def generate_minute_book(
    org_id: UUID,
    request: MinuteBookRequest,
    actor_id: str = Depends(get_actor_id),
    service: DocumentService = Depends(get_document_service),
):
    result = service.generate_minute_book(org_id, request.bundle, actor_id)
    return MinuteBookResponse(file_key=result.file_key, bundle=result.bundle)


# ============================================
# SERVICE ENDPOINTS
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
def health_check(provider: DatabaseSessionProvider = Depends(get_db_provider)):
    """Return health status including database latency. Always returns HTTP 200."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    try:
        status = check_health(provider.engine, provider.session_factory)
        return HealthResponse(
            status="healthy" if status.healthy else "degraded",
            database=status.to_dict(),
            version=API_VERSION,
            uptime_seconds=uptime_seconds,
        )
    except Exception as e:
        # Always return HTTP 200, but report error in JSON
        return HealthResponse(
            status="error",
            version=API_VERSION,
            uptime_seconds=uptime_seconds,
            error_message=sanitize_for_logging(str(e)),
        )


@app.get("/metrics", include_in_schema=False)
def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(router)


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    config = get_config_instance()
    uvicorn.run(app, host=API_HOST or config.api.host, port=int(API_PORT or config.api.port))
