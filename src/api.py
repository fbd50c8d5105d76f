"""
api.py

REST API layer for the Rate Desk back-office.

Framework : FastAPI
Identity  : Resolved upstream.  The auth gateway forwards the caller as two
            headers, ``X-User-Id`` (uuid) and ``X-User-Role`` (one of the
            Role values); requests without them are anonymous.  Every
            endpoint passes the resolved Identity (or None) to its use case.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /variant-rates                  rate listing (masked), CRUD, cooldown edits
  ├── /displayed-rates                resale markups on live rates
  ├── /enquiries                      customer enquiries with frozen pricing
  ├── /projects                       projects (status derived from activities)
  ├── /activities                     activities with derived status
  ├── /status-history/{entity_id}     status change log
  └── /maintenance                    on-demand expiry sweep (Admin)

Error handling
--------------
  ValidationError     → 422
  NotFoundError       → 404
  AuthorizationError  → 403
  CooldownViolation   → 409
  ApplicationError    → 422
  PersistenceError    → 500 (logged and written to the error log)
  Unhandled           → 500 (logged and written to the error log)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Listing  : { "data": [...], "total_count", "current_page", "total_pages" }
  Error    : { "detail": "<message>" }

Background work
---------------
  The expiry sweep runs as an asyncio task started on startup; it can also
  be triggered through POST /api/v1/maintenance/expire-variant-rates.

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import traceback
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Path, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, ConfigDict, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    AuthorizationError,
    CooldownViolation,
    NotFoundError,
    PersistenceError,
    ValidationError,
    # Infrastructure contracts
    AbstractUnitOfWork,
    StatusCaches,
    ListQuery,
    PageDTO,
    dto_to_dict,
    # Use-case commands
    CreateActivityCommand,
    CreateDisplayedRateCommand,
    CreateEnquiryCommand,
    CreateProjectCommand,
    CreateVariantRateCommand,
    DeleteVariantRateCommand,
    RecordErrorCommand,
    UpdateActivityCommand,
    UpdateDisplayedRateCommand,
    UpdateEnquiryCommand,
    UpdateVariantRateCommand,
    # Use-case classes
    CreateActivityUseCase,
    CreateDisplayedRateUseCase,
    CreateEnquiryUseCase,
    CreateProjectUseCase,
    CreateVariantRateUseCase,
    DeleteActivityUseCase,
    DeleteDisplayedRateUseCase,
    DeleteEnquiryUseCase,
    DeleteVariantRateUseCase,
    ExpireVariantRatesUseCase,
    GetActivityUseCase,
    GetDisplayedRateUseCase,
    GetEnquiryUseCase,
    GetProjectUseCase,
    GetVariantRateUseCase,
    ListActivitiesUseCase,
    ListDisplayedRatesUseCase,
    ListEnquiriesUseCase,
    ListProjectsUseCase,
    ListStatusHistoryUseCase,
    ListVariantRatesUseCase,
    RecordErrorUseCase,
    UpdateActivityUseCase,
    UpdateDisplayedRateUseCase,
    UpdateEnquiryUseCase,
    UpdateVariantRateUseCase,
)
from config import Settings, configure_logging, get_settings
from infrastructure import InMemoryUnitOfWork, seed_statuses
from model import TRANSITION_STATUSES, Identity, Role
from service import RateVisibilityService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title=get_settings().app_name,
    version="1.0.0",
    description=(
        "REST API for associate pricing (variant rates with role-based commission "
        "masking and edit cooldowns), resale markups, customer enquiries with "
        "frozen pricing, and project / activity tracking with derived statuses."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def keep_request_body(request: Request, call_next):
    """Keep the raw request body so failures can be logged with it."""
    request.state.raw_body = await request.body()
    return await call_next(request)


# Status name → id caches live for the whole process.
app.state.status_caches = StatusCaches()
app.state.sweep_task = None


@app.on_event("startup")
async def on_startup():
    """
    Configure logging, make sure the status reference records exist, and
    start the periodic expiry sweep.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    seed_statuses()
    logger.info("Status reference records seeded")
    if settings.expiry_sweep_enabled:
        app.state.sweep_task = asyncio.create_task(
            _expiry_sweep_loop(settings.expiry_sweep_interval_seconds)
        )
        logger.info("Expiry sweep scheduled every %ds", settings.expiry_sweep_interval_seconds)


@app.on_event("shutdown")
async def on_shutdown():
    task = app.state.sweep_task
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweep_task = None


async def _expiry_sweep_loop(interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(_run_expiry_sweep)
        except Exception:
            logger.exception("Scheduled expiry sweep failed")


def _run_expiry_sweep():
    return ExpireVariantRatesUseCase(_rate_rules(get_settings())).execute(_resolve_uow())


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_handler(request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(CooldownViolation)
async def cooldown_handler(request, exc: CooldownViolation):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    _record_failure(request, exc, exc.component)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    _record_failure(request, exc, "unhandled")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _request_payload(request: Request) -> Any:
    raw = getattr(request.state, "raw_body", b"")
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _record_failure(request: Request, exc: Exception, component: str) -> None:
    """Log the failure and write it to the error-tracking sink."""
    api = f"{request.method} {request.url.path}"
    body = {
        "query": dict(request.query_params),
        "path_params": dict(request.path_params),
        "payload": _request_payload(request),
    }
    logger.error(
        "%s failed in %s: %s | body=%s", api, component, exc, body,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    cmd = RecordErrorCommand(
        message=str(exc),
        stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        stage=component,
        api=api,
        body=body,
    )
    try:
        RecordErrorUseCase().execute(cmd, _resolve_uow())
    except Exception:
        logger.exception("Could not write error log entry for %s", api)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def _resolve_uow() -> AbstractUnitOfWork:
    """The Unit of Work outside request scope, honouring any override."""
    return app.dependency_overrides.get(get_uow, get_uow)()


def get_status_caches() -> StatusCaches:
    return app.state.status_caches


def _rate_rules(settings: Settings) -> RateVisibilityService:
    return RateVisibilityService(
        cooling_period=settings.cooling_period,
        delete_window=settings.delete_window,
    )


def get_rate_rules(settings: Settings = Depends(get_settings)) -> RateVisibilityService:
    return _rate_rules(settings)


def get_current_identity(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Optional[Identity]:
    """
    Build the caller's Identity from the gateway headers.
    Both headers absent → anonymous (None).
    """
    if not x_user_id and not x_user_role:
        return None
    if not x_user_id or not x_user_role:
        raise ValidationError("X-User-Id and X-User-Role must be supplied together.")
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError:
        raise ValidationError("X-User-Id must be a UUID.") from None
    try:
        role = Role(x_user_role)
    except ValueError:
        raise ValidationError(
            f"X-User-Role must be one of: {sorted(r.value for r in Role)}"
        ) from None
    return Identity(user_id=user_id, role=role)


_RESERVED_PARAMS = {"page", "limit"}
_RANGE_PARAM = re.compile(r"^(?P<field>[A-Za-z_][\w]*)\[(?P<bound>start|end)\]$")


def _listing_filters(request: Request) -> Dict[str, Any]:
    """
    Collect listing filters from the query string.

      ?isLive=true                → {"isLive": "true"}
      ?tag=a&tag=b                → {"tag": ["a", "b"]}
      ?createdAt[start]=2024-01-01 → {"createdAt": {"start": "2024-01-01"}}
    """
    filters: Dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        if key in _RESERVED_PARAMS:
            continue
        ranged = _RANGE_PARAM.match(key)
        if ranged:
            filters.setdefault(ranged.group("field"), {})[ranged.group("bound")] = value
        elif key in filters:
            existing = filters[key]
            filters[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            filters[key] = value
    return filters


def get_list_query(
    request: Request,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    viewer: Optional[Identity] = Depends(get_current_identity),
    settings: Settings = Depends(get_settings),
) -> ListQuery:
    limit = min(limit or settings.default_page_limit, settings.max_page_limit)
    return ListQuery(filters=_listing_filters(request), page=page, limit=limit, viewer=viewer)


# ---------------------------------------------------------------------------
# Envelope helpers
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if hasattr(data, "__dataclass_fields__"):
        return {"data": dto_to_dict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dto_to_dict(item) if hasattr(item, "__dataclass_fields__") else item
                for item in data
            ]
        }
    return {"data": data}


def _ok_page(page: PageDTO) -> Dict:
    return {
        "data": [dto_to_dict(item) for item in page.data],
        "total_count": page.total_count,
        "current_page": page.current_page,
        "total_pages": page.total_pages,
    }


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Variant rate schemas
# ---------------------------------------------------------------------------

class CreateVariantRateRequest(BaseModel):
    rate: float = Field(..., ge=0)
    commission: Optional[float] = Field(default=None, ge=0)
    duration: int = Field(default=1, ge=1, description="Live period in days.")
    is_live: bool = False
    selected: bool = False
    product_variant_id: uuid.UUID
    associate_id: Optional[uuid.UUID] = None
    tag_ids: List[uuid.UUID] = Field(default_factory=list)
    state_id: Optional[uuid.UUID] = None
    district_id: Optional[uuid.UUID] = None
    division_id: Optional[uuid.UUID] = None
    pincode_entry_id: Optional[uuid.UUID] = None
    hidden_draft_of_id: Optional[uuid.UUID] = None


class UpdateVariantRateRequest(BaseModel):
    rate: Optional[float] = Field(default=None, ge=0)
    commission: Optional[float] = Field(default=None, ge=0)
    duration: Optional[int] = Field(default=None, ge=1)
    is_live: Optional[bool] = None
    selected: Optional[bool] = None
    product_variant_id: Optional[uuid.UUID] = None
    associate_id: Optional[uuid.UUID] = None
    tag_ids: Optional[List[uuid.UUID]] = None
    state_id: Optional[uuid.UUID] = None
    district_id: Optional[uuid.UUID] = None
    division_id: Optional[uuid.UUID] = None
    pincode_entry_id: Optional[uuid.UUID] = None

    @field_validator("rate", "is_live", "selected", "tag_ids")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("must not be null")
        return v


# ---------------------------------------------------------------------------
# Displayed rate schemas
# ---------------------------------------------------------------------------

class CreateDisplayedRateRequest(BaseModel):
    variant_rate_id: uuid.UUID
    commission: Optional[float] = Field(default=None, ge=0)
    selected: bool = False
    associate_id: Optional[uuid.UUID] = None


class UpdateDisplayedRateRequest(BaseModel):
    variant_rate_id: Optional[uuid.UUID] = None
    commission: Optional[float] = Field(default=None, ge=0)
    selected: Optional[bool] = None
    associate_id: Optional[uuid.UUID] = None


# ---------------------------------------------------------------------------
# Enquiry schemas
# ---------------------------------------------------------------------------

_PHONE = re.compile(r"^\+?[0-9][0-9 \-]{5,19}$")


def _check_phone(v: Optional[str]) -> Optional[str]:
    if v is not None and not _PHONE.match(v.strip()):
        raise ValueError("phone_number must contain 6 to 20 digits")
    return v.strip() if v is not None else v


class CreateEnquiryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone_number: str
    variant_rate_id: Optional[uuid.UUID] = Field(default=None, alias="variantRate")
    display_rate_id: Optional[uuid.UUID] = Field(default=None, alias="displayRate")
    product_variant_id: Optional[uuid.UUID] = None
    status: Optional[str] = Field(default=None, description="Enquiry process status id or name.")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _check_phone(v)


class UpdateEnquiryRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    phone_number: Optional[str] = None
    status: Optional[str] = Field(default=None, description="Enquiry process status id or name.")

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        return _check_phone(v)


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    custom_id: str = Field(default="", max_length=50)
    description: str = Field(default="")
    customer_id: Optional[uuid.UUID] = None


# ---------------------------------------------------------------------------
# Activity schemas
# ---------------------------------------------------------------------------

def _check_transition(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    valid = {s.value for s in TRANSITION_STATUSES}
    if v not in valid:
        raise ValueError(f"status must be one of: {sorted(valid)}")
    return v


class CreateActivityRequest(BaseModel):
    project_id: uuid.UUID
    description: str = Field(default="")
    activity_manager_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    type_id: Optional[uuid.UUID] = None
    forecast_date: Optional[date] = None
    actual_date: Optional[date] = None
    target_operation_date: Optional[date] = None
    target_finance_date: Optional[date] = None
    hours_spent: float = Field(default=0.0, ge=0)
    worker_ids: List[uuid.UUID] = Field(default_factory=list)
    status: Optional[str] = Field(
        default=None, description="Requested transition: Submitted, Approved, Rejected, Suspended or Blocked."
    )

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _check_transition(v)


class UpdateActivityRequest(BaseModel):
    description: Optional[str] = None
    activity_manager_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    type_id: Optional[uuid.UUID] = None
    forecast_date: Optional[date] = None
    actual_date: Optional[date] = None
    target_operation_date: Optional[date] = None
    target_finance_date: Optional[date] = None
    hours_spent: Optional[float] = Field(default=None, ge=0)
    worker_ids: Optional[List[uuid.UUID]] = None
    status: Optional[str] = Field(
        default=None, description="Requested transition: Submitted, Approved, Rejected, Suspended or Blocked."
    )
    unblock: bool = Field(default=False, description="Admin only: restore the previous status.")
    rejection_reason: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: Optional[str]) -> Optional[str]:
        return _check_transition(v)

    @field_validator("worker_ids")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("must not be null")
        return v


_ACTIVITY_CONTROL_FIELDS = {"status", "unblock", "rejection_reason"}


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Variant rates
# ---------------------------------------------------------------------------

variant_rate_router = APIRouter(prefix="/variant-rates", tags=["Variant Rates"])


@variant_rate_router.get("", summary="List variant rates visible to the caller")
def list_variant_rates(
    q: ListQuery = Depends(get_list_query),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Filters: any rate field (``isLive=true``, ``productVariant=<id>``),
    plus ``associateCompanyName``, ``associateId``, ``product`` and
    ``subCategory``.  Commission is folded into the rate for everyone except
    Admins and the rate's own associate.
    """
    return _ok_page(ListVariantRatesUseCase(rules).execute(q, uow))


@variant_rate_router.get("/{rate_id}", summary="Get a variant rate")
def get_variant_rate(
    rate_id: uuid.UUID = Path(...),
    viewer: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetVariantRateUseCase(rules).execute(rate_id, viewer, uow))


@variant_rate_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a variant rate")
def create_variant_rate(
    body: CreateVariantRateRequest,
    identity: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateVariantRateCommand(identity=identity, **body.model_dump())
    return _ok(CreateVariantRateUseCase(rules).execute(cmd, uow))


@variant_rate_router.patch("/{rate_id}", summary="Edit a variant rate (cooldown rules apply)")
def update_variant_rate(
    body: UpdateVariantRateRequest,
    rate_id: uuid.UUID = Path(...),
    identity: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    The first edit, edits inside the cooling window, and edits after a full
    duration cycle are accepted.  Anything else is rejected with 409 unless
    the caller is an Admin.
    """
    cmd = UpdateVariantRateCommand(
        rate_id=rate_id,
        identity=identity,
        changes=body.model_dump(exclude_unset=True),
    )
    return _ok(UpdateVariantRateUseCase(rules).execute(cmd, uow))


@variant_rate_router.delete("/{rate_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a variant rate")
def delete_variant_rate(
    rate_id: uuid.UUID = Path(...),
    identity: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteVariantRateUseCase(rules).execute(DeleteVariantRateCommand(rate_id, identity), uow)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Displayed rates
# ---------------------------------------------------------------------------

displayed_rate_router = APIRouter(prefix="/displayed-rates", tags=["Displayed Rates"])


@displayed_rate_router.get("", summary="List displayed rates visible to the caller")
def list_displayed_rates(
    q: ListQuery = Depends(get_list_query),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok_page(ListDisplayedRatesUseCase(rules).execute(q, uow))


@displayed_rate_router.get("/{displayed_id}", summary="Get a displayed rate")
def get_displayed_rate(
    displayed_id: uuid.UUID = Path(...),
    viewer: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetDisplayedRateUseCase(rules).execute(displayed_id, viewer, uow))


@displayed_rate_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a displayed rate")
def create_displayed_rate(
    body: CreateDisplayedRateRequest,
    identity: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateDisplayedRateCommand(identity=identity, **body.model_dump())
    return _ok(CreateDisplayedRateUseCase(rules).execute(cmd, uow))


@displayed_rate_router.patch("/{displayed_id}", summary="Edit a displayed rate")
def update_displayed_rate(
    body: UpdateDisplayedRateRequest,
    displayed_id: uuid.UUID = Path(...),
    identity: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateDisplayedRateCommand(
        displayed_id=displayed_id,
        identity=identity,
        changes=body.model_dump(exclude_unset=True),
    )
    return _ok(UpdateDisplayedRateUseCase(rules).execute(cmd, uow))


@displayed_rate_router.delete(
    "/{displayed_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a displayed rate"
)
def delete_displayed_rate(
    displayed_id: uuid.UUID = Path(...),
    identity: Optional[Identity] = Depends(get_current_identity),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteDisplayedRateUseCase().execute(displayed_id, identity, uow)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Enquiries
# ---------------------------------------------------------------------------

enquiry_router = APIRouter(prefix="/enquiries", tags=["Enquiries"])


@enquiry_router.get("", summary="List enquiries")
def list_enquiries(
    q: ListQuery = Depends(get_list_query),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok_page(ListEnquiriesUseCase().execute(q, uow))


@enquiry_router.post("", status_code=status.HTTP_201_CREATED, summary="Create an enquiry")
def create_enquiry(
    body: CreateEnquiryRequest,
    viewer: Optional[Identity] = Depends(get_current_identity),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Pricing is copied from the variant rate (and the displayed rate, when
    one is given) at this moment and never changes afterwards.
    """
    cmd = CreateEnquiryCommand(
        name=body.name,
        phone_number=body.phone_number,
        variant_rate_id=body.variant_rate_id,
        display_rate_id=body.display_rate_id,
        product_variant_id=body.product_variant_id,
        status=body.status,
        viewer=viewer,
    )
    return _ok(CreateEnquiryUseCase().execute(cmd, uow))


@enquiry_router.get("/{enquiry_id}", summary="Get an enquiry")
def get_enquiry(
    enquiry_id: uuid.UUID = Path(...),
    viewer: Optional[Identity] = Depends(get_current_identity),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetEnquiryUseCase().execute(enquiry_id, viewer, uow))


@enquiry_router.patch("/{enquiry_id}", summary="Update an enquiry (status by id or name)")
def update_enquiry(
    body: UpdateEnquiryRequest,
    enquiry_id: uuid.UUID = Path(...),
    viewer: Optional[Identity] = Depends(get_current_identity),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateEnquiryCommand(
        enquiry_id=enquiry_id,
        viewer=viewer,
        name=body.name,
        phone_number=body.phone_number,
        status=body.status,
    )
    return _ok(UpdateEnquiryUseCase().execute(cmd, uow))


@enquiry_router.delete("/{enquiry_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an enquiry")
def delete_enquiry(
    enquiry_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteEnquiryUseCase().execute(enquiry_id, uow)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.get("", summary="List projects")
def list_projects(
    q: ListQuery = Depends(get_list_query),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok_page(ListProjectsUseCase().execute(q, uow))


@project_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a project")
def create_project(
    body: CreateProjectRequest,
    identity: Optional[Identity] = Depends(get_current_identity),
    caches: StatusCaches = Depends(get_status_caches),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateProjectCommand(identity=identity, **body.model_dump())
    return _ok(CreateProjectUseCase(caches).execute(cmd, uow))


@project_router.get("/{project_id}", summary="Get a project")
def get_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetProjectUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------

activity_router = APIRouter(prefix="/activities", tags=["Activities"])


@activity_router.get("", summary="List activities")
def list_activities(
    q: ListQuery = Depends(get_list_query),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok_page(ListActivitiesUseCase().execute(q, uow))


@activity_router.post("", status_code=status.HTTP_201_CREATED, summary="Create an activity")
def create_activity(
    body: CreateActivityRequest,
    identity: Optional[Identity] = Depends(get_current_identity),
    caches: StatusCaches = Depends(get_status_caches),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = CreateActivityCommand(
        project_id=body.project_id,
        identity=identity,
        fields=body.model_dump(exclude={"project_id", "status"}),
        status=body.status,
    )
    return _ok(CreateActivityUseCase(caches).execute(cmd, uow))


@activity_router.get("/{activity_id}", summary="Get an activity")
def get_activity(
    activity_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetActivityUseCase().execute(activity_id, uow))


@activity_router.patch("/{activity_id}", summary="Update an activity; its status is re-derived")
def update_activity(
    body: UpdateActivityRequest,
    activity_id: uuid.UUID = Path(...),
    identity: Optional[Identity] = Depends(get_current_identity),
    caches: StatusCaches = Depends(get_status_caches),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    The status is derived from the merged record: planning gaps first
    (target date, forecast date, workers), then a requested transition,
    then an Admin unblock, otherwise In Progress.  The owning project's
    status is re-derived afterwards.
    """
    cmd = UpdateActivityCommand(
        activity_id=activity_id,
        identity=identity,
        changes=body.model_dump(exclude_unset=True, exclude=_ACTIVITY_CONTROL_FIELDS),
        status=body.status,
        unblock=body.unblock,
        rejection_reason=body.rejection_reason,
    )
    return _ok(UpdateActivityUseCase(caches).execute(cmd, uow))


@activity_router.delete("/{activity_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Soft-delete an activity")
def delete_activity(
    activity_id: uuid.UUID = Path(...),
    identity: Optional[Identity] = Depends(get_current_identity),
    caches: StatusCaches = Depends(get_status_caches),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    DeleteActivityUseCase(caches).execute(activity_id, identity, uow)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Status history
# ---------------------------------------------------------------------------

history_router = APIRouter(prefix="/status-history", tags=["Status History"])


@history_router.get("/{entity_id}", summary="Status change log for an activity or project")
def list_status_history(
    entity_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListStatusHistoryUseCase().execute(entity_id, uow))


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

maintenance_router = APIRouter(prefix="/maintenance", tags=["Maintenance"])


@maintenance_router.post("/expire-variant-rates", summary="Run the variant rate expiry sweep now")
def expire_variant_rates(
    identity: Optional[Identity] = Depends(get_current_identity),
    rules: RateVisibilityService = Depends(get_rate_rules),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    if identity is None or not identity.is_admin:
        raise AuthorizationError("Only an Admin may run the expiry sweep.")
    return _ok(ExpireVariantRatesUseCase(rules).execute(uow))


# ---------------------------------------------------------------------------
# Register all routers
# ---------------------------------------------------------------------------

api_v1.include_router(variant_rate_router)
api_v1.include_router(displayed_rate_router)
api_v1.include_router(enquiry_router)
api_v1.include_router(project_router)
api_v1.include_router(activity_router)
api_v1.include_router(history_router)
api_v1.include_router(maintenance_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Variant Rates",
        "description": (
            "Associate rates per product variant.  The commission is folded into "
            "the rate for everyone but Admins and the owning associate.  Edits are "
            "subject to a cooling window and a per-duration lock."
        ),
    },
    {
        "name": "Displayed Rates",
        "description": (
            "Resale markups one associate layers on another associate's live rate."
        ),
    },
    {
        "name": "Enquiries",
        "description": (
            "Customer price enquiries.  Pricing is frozen from the source rates "
            "when the enquiry is created."
        ),
    },
    {
        "name": "Projects",
        "description": "Projects whose status follows the statuses of their activities.",
    },
    {
        "name": "Activities",
        "description": (
            "Units of work under a project.  The status is derived on every save; "
            "callers may only request the Submitted / Approved / Rejected / "
            "Suspended / Blocked transitions."
        ),
    },
    {
        "name": "Status History",
        "description": "Append-only log of activity and project status changes.",
    },
    {
        "name": "Maintenance",
        "description": "Operational endpoints (Admin only).",
    },
]

app.openapi_tags = tags_metadata
