"""
application.py

Application layer for the Rate Desk back-office.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data a
     given viewer is entitled to see; masked figures never leave this layer
     unmasked.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in
     infrastructure.py).
  3. Declaring the UnitOfWork abstraction that groups the repositories used
     by one request.
  4. Translating listing filters into store queries (dynamic field filters,
     company / product / sub-category name resolution, role visibility).
  5. Implementing Use Case handlers, one class per operation, that
     orchestrate service calls, repository reads/writes, and side-effects
     (status history, project status propagation) in the correct order.

Structure
---------
DTOs
    VariantRateDTO, DisplayedRateDTO, EnquiryDTO
    ProjectDTO, ActivityDTO, StatusHistoryDTO
    PageDTO, SweepResultDTO

Repository interfaces
    AbstractDocumentRepository, AbstractReferenceRepository
    AbstractAssociateRepository, AbstractProductRepository,
    AbstractProductVariantRepository, AbstractStatusHistoryRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Variant rates ---
    ListVariantRatesUseCase, GetVariantRateUseCase, CreateVariantRateUseCase,
    UpdateVariantRateUseCase, DeleteVariantRateUseCase,
    ExpireVariantRatesUseCase

    --- Displayed rates ---
    ListDisplayedRatesUseCase, GetDisplayedRateUseCase,
    CreateDisplayedRateUseCase, UpdateDisplayedRateUseCase,
    DeleteDisplayedRateUseCase

    --- Enquiries ---
    ListEnquiriesUseCase, GetEnquiryUseCase, CreateEnquiryUseCase,
    UpdateEnquiryUseCase, DeleteEnquiryUseCase

    --- Projects & activities ---
    CreateProjectUseCase, GetProjectUseCase, ListProjectsUseCase,
    CreateActivityUseCase, UpdateActivityUseCase, GetActivityUseCase,
    ListActivitiesUseCase, DeleteActivityUseCase,
    PropagateProjectStatusUseCase, ListStatusHistoryUseCase

    --- Errors ---
    RecordErrorUseCase

Design notes
------------
- Use cases return DTOs only; no domain objects cross the application
  boundary.
- Each use case accepts a UnitOfWork per call.  Long-lived collaborators
  (rate rules, status caches) are injected through the constructor.
- Errors bubble up as one of the ApplicationError subclasses below; domain
  ValueErrors are translated at this boundary.
- All timestamps flowing out are ISO-8601 strings (UTC).
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Type

from model import (
    Activity,
    ActivityStatusName,
    Associate,
    DisplayedRate,
    Enquiry,
    EntityType,
    ErrorLog,
    Identity,
    Product,
    ProductVariant,
    Project,
    ProjectStatusName,
    Role,
    StatusHistory,
    VariantRate,
)
from service import (
    ActivityStatusService,
    EnquiryPricingService,
    ProjectStatusService,
    RateVisibilityService,
    StatusNameCache,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class ValidationError(ApplicationError):
    """Raised on missing or malformed input."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class AuthorizationError(ApplicationError):
    """Raised when the acting user lacks the required role."""


class CooldownViolation(ApplicationError):
    """Raised when a non-Admin edits a rate outside its edit window."""


class PersistenceError(ApplicationError):
    """Raised by store implementations when a read or write fails."""

    def __init__(self, message: str, component: str = "store") -> None:
        super().__init__(message)
        self.component = component


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _sid(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


def dto_to_dict(dto: Any) -> Dict[str, Any]:
    """Serialise a DTO, dropping any fields the viewer may not see."""
    data = dataclasses.asdict(dto)
    for hidden in data.pop("hidden_fields", []):
        data.pop(hidden, None)
    return data


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class VariantRateDTO:
    id: str
    rate: float
    commission: Optional[float]
    duration: int
    is_live: bool
    selected: bool
    product_variant_id: Optional[str]
    associate_id: Optional[str]
    associate_company_id: Optional[str]
    tag_ids: List[str]
    state_id: Optional[str]
    district_id: Optional[str]
    division_id: Optional[str]
    pincode_entry_id: Optional[str]
    hidden_draft_of_id: Optional[str]
    last_edit_time: Optional[str]
    cooling_start_time: Optional[str]
    last_live_at: Optional[str]
    created_at: str
    updated_at: str
    hidden_fields: List[str] = field(default_factory=list)


@dataclass
class DisplayedRateDTO:
    id: str
    variant_rate_id: str
    product_variant_id: Optional[str]
    associate_id: Optional[str]
    associate_company_id: Optional[str]
    selected: bool
    rate: float
    commission: Optional[float]
    variant_commission: Optional[float]
    variant_is_live: bool
    hidden_fields: List[str] = field(default_factory=list)


@dataclass
class EnquiryDTO:
    id: str
    name: str
    phone_number: str
    variant_rate_id: str
    display_rate_id: Optional[str]
    product_variant_id: Optional[str]
    product_associate_id: Optional[str]
    mediator_associate_id: Optional[str]
    status_id: Optional[str]
    status: Optional[str]
    rate: float
    commission: Optional[float]
    mediator_commission: Optional[float]
    created_at: str
    hidden_fields: List[str] = field(default_factory=list)


@dataclass
class ProjectDTO:
    id: str
    title: str
    custom_id: str
    description: str
    customer_id: Optional[str]
    status_id: Optional[str]
    status: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class ActivityDTO:
    id: str
    title: str
    description: str
    project_id: str
    activity_manager_id: Optional[str]
    customer_id: Optional[str]
    type_id: Optional[str]
    status_id: Optional[str]
    status: Optional[str]
    previous_status_id: Optional[str]
    forecast_date: Optional[str]
    actual_date: Optional[str]
    target_operation_date: Optional[str]
    target_finance_date: Optional[str]
    hours_spent: float
    worker_ids: List[str]
    rejection_reason: List[str]
    is_deleted: bool
    updated_at: str


@dataclass
class StatusHistoryDTO:
    id: str
    entity_id: str
    entity_type: str
    previous_status: Optional[str]
    new_status: Optional[str]
    change_type: str
    changed_by_id: Optional[str]
    changed_role: Optional[str]
    changed_at: str


@dataclass
class PageDTO:
    data: List[Any]
    total_count: int
    current_page: int
    total_pages: int


@dataclass
class SweepResultDTO:
    scanned: int
    deactivated_ids: List[str]
    failed_ids: List[str]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs for a given viewer."""

    @staticmethod
    def variant_rate(
        r: VariantRate, viewer: Optional[Identity], visibility: RateVisibilityService
    ) -> VariantRateDTO:
        view = visibility.mask_variant_rate(r, viewer)
        return VariantRateDTO(
            id=str(r.id),
            rate=view.rate,
            commission=view.commission,
            duration=r.duration,
            is_live=r.is_live,
            selected=r.selected,
            product_variant_id=_sid(r.product_variant_id),
            associate_id=_sid(r.associate_id),
            associate_company_id=_sid(r.associate_company_id),
            tag_ids=[str(t) for t in r.tag_ids],
            state_id=_sid(r.state_id),
            district_id=_sid(r.district_id),
            division_id=_sid(r.division_id),
            pincode_entry_id=_sid(r.pincode_entry_id),
            hidden_draft_of_id=_sid(r.hidden_draft_of_id),
            last_edit_time=_fmt(r.last_edit_time),
            cooling_start_time=_fmt(r.cooling_start_time),
            last_live_at=_fmt(r.last_live_at),
            created_at=_fmt(r.created_at),
            updated_at=_fmt(r.updated_at),
            hidden_fields=["commission"] if view.commission is None else [],
        )

    @staticmethod
    def displayed_rate(
        d: DisplayedRate,
        base: VariantRate,
        viewer: Optional[Identity],
        visibility: RateVisibilityService,
    ) -> DisplayedRateDTO:
        view = visibility.mask_displayed_rate(d, base, viewer)
        return DisplayedRateDTO(
            id=str(d.id),
            variant_rate_id=str(d.variant_rate_id),
            product_variant_id=_sid(base.product_variant_id),
            associate_id=_sid(d.associate_id),
            associate_company_id=_sid(d.associate_company_id),
            selected=d.selected,
            rate=view.rate,
            commission=view.commission,
            variant_commission=view.variant_commission,
            variant_is_live=base.is_live,
            hidden_fields=["variant_commission"] if view.variant_commission is None else [],
        )

    @staticmethod
    def enquiry(
        e: Enquiry,
        viewer: Optional[Identity],
        pricing: EnquiryPricingService,
        status_name: Optional[str],
    ) -> EnquiryDTO:
        view = pricing.view(e, viewer)
        hidden = []
        if view.commission is None:
            hidden = ["commission", "mediator_commission"]
        return EnquiryDTO(
            id=str(e.id),
            name=e.name,
            phone_number=e.phone_number,
            variant_rate_id=str(e.variant_rate_id),
            display_rate_id=_sid(e.display_rate_id),
            product_variant_id=_sid(e.product_variant_id),
            product_associate_id=_sid(e.product_associate_id),
            mediator_associate_id=_sid(e.mediator_associate_id),
            status_id=_sid(e.status_id),
            status=status_name,
            rate=view.rate,
            commission=view.commission,
            mediator_commission=view.mediator_commission,
            created_at=_fmt(e.created_at),
            hidden_fields=hidden,
        )

    @staticmethod
    def project(p: Project, status_name: Optional[str]) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            title=p.title,
            custom_id=p.custom_id,
            description=p.description,
            customer_id=_sid(p.customer_id),
            status_id=_sid(p.status_id),
            status=status_name,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def activity(a: Activity, status_name: Optional[str]) -> ActivityDTO:
        return ActivityDTO(
            id=str(a.id),
            title=a.title,
            description=a.description,
            project_id=str(a.project_id),
            activity_manager_id=_sid(a.activity_manager_id),
            customer_id=_sid(a.customer_id),
            type_id=_sid(a.type_id),
            status_id=_sid(a.status_id),
            status=status_name,
            previous_status_id=_sid(a.previous_status_id),
            forecast_date=_fmt_date(a.forecast_date),
            actual_date=_fmt_date(a.actual_date),
            target_operation_date=_fmt_date(a.target_operation_date),
            target_finance_date=_fmt_date(a.target_finance_date),
            hours_spent=a.hours_spent,
            worker_ids=[str(w) for w in a.worker_ids],
            rejection_reason=list(a.rejection_reason),
            is_deleted=a.is_deleted,
            updated_at=_fmt(a.updated_at),
        )

    @staticmethod
    def status_history(h: StatusHistory) -> StatusHistoryDTO:
        return StatusHistoryDTO(
            id=str(h.id),
            entity_id=str(h.entity_id),
            entity_type=h.entity_type.value,
            previous_status=h.previous_status,
            new_status=h.new_status,
            change_type=h.change_type,
            changed_by_id=_sid(h.changed_by_id),
            changed_role=h.changed_role.value if h.changed_role else None,
            changed_at=_fmt(h.changed_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================
#
# Queries are plain dicts in the document-store dialect:
#   {"field": value}                      equality (membership for list fields)
#   {"field": {"$in": [...]}}             any of
#   {"field": {"$ne": value}}             not equal
#   {"field": {"$regex": "...", "$options": "i"}}
#   {"field": {"$gte": ..., "$lte": ...}} inclusive range
#   {"$and": [q, ...]}, {"$or": [q, ...]}

Query = Dict[str, Any]


class AbstractDocumentRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, entity_id: uuid.UUID) -> Optional[Any]: ...
    @abc.abstractmethod
    def find(self, query: Query, skip: int = 0, limit: Optional[int] = None) -> List[Any]: ...
    @abc.abstractmethod
    def count(self, query: Query) -> int: ...
    @abc.abstractmethod
    def save(self, entity: Any) -> None: ...
    @abc.abstractmethod
    def delete(self, entity_id: uuid.UUID) -> None: ...


class AbstractReferenceRepository(abc.ABC):
    """Named reference records (companies, statuses, products, ...)."""
    @abc.abstractmethod
    def get(self, entity_id: uuid.UUID) -> Optional[Any]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Any]: ...
    @abc.abstractmethod
    def list_by_name(self, name: str) -> List[Any]: ...
    @abc.abstractmethod
    def save(self, entity: Any) -> None: ...

    def find_by_name(self, name: str) -> Optional[Any]:
        matches = self.list_by_name(name)
        return matches[0] if matches else None


class AbstractAssociateRepository(AbstractReferenceRepository):
    @abc.abstractmethod
    def list_for_companies(self, company_ids: Iterable[uuid.UUID]) -> List[Associate]: ...


class AbstractProductRepository(AbstractReferenceRepository):
    @abc.abstractmethod
    def list_for_sub_categories(self, sub_category_ids: Iterable[uuid.UUID]) -> List[Product]: ...


class AbstractProductVariantRepository(AbstractReferenceRepository):
    @abc.abstractmethod
    def list_for_products(self, product_ids: Iterable[uuid.UUID]) -> List[ProductVariant]: ...


class AbstractStatusHistoryRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_entity(self, entity_id: uuid.UUID) -> List[StatusHistory]: ...
    @abc.abstractmethod
    def save(self, entry: StatusHistory) -> None: ...


class AbstractErrorLogRepository(abc.ABC):
    @abc.abstractmethod
    def list_all(self) -> List[ErrorLog]: ...
    @abc.abstractmethod
    def save(self, entry: ErrorLog) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories used by one request.
    Use as a context manager:

        with uow:
            uow.variant_rates.save(rate)
            uow.commit()

    Single-record saves are atomic; nothing spans records.  In particular
    the read-check-write of a rate edit is best-effort: two concurrent edits
    of the same rate may both pass the cooldown check.
    """
    associate_companies: AbstractReferenceRepository
    associates: AbstractAssociateRepository
    sub_categories: AbstractReferenceRepository
    products: AbstractProductRepository
    product_variants: AbstractProductVariantRepository
    variant_rates: AbstractDocumentRepository
    displayed_rates: AbstractDocumentRepository
    enquiries: AbstractDocumentRepository
    enquiry_statuses: AbstractReferenceRepository
    projects: AbstractDocumentRepository
    project_statuses: AbstractReferenceRepository
    activities: AbstractDocumentRepository
    activity_statuses: AbstractReferenceRepository
    status_history: AbstractStatusHistoryRepository
    errors: AbstractErrorLogRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_visibility_svc = RateVisibilityService()
_pricing_svc = EnquiryPricingService()
_activity_status_svc = ActivityStatusService()
_project_status_svc = ProjectStatusService()


@dataclass
class StatusCaches:
    """Per-process name → id caches for activity and project statuses."""
    activity: StatusNameCache = field(default_factory=StatusNameCache)
    project: StatusNameCache = field(default_factory=StatusNameCache)

    def clear(self) -> None:
        self.activity.clear()
        self.project.clear()


# ===========================================================================
# LISTING QUERIES
# ===========================================================================

@dataclass
class ListQuery:
    filters: Dict[str, Any] = field(default_factory=dict)
    page: int = 1
    limit: int = 10
    viewer: Optional[Identity] = None

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValidationError("page must be >= 1.")
        if self.limit < 1:
            raise ValidationError("limit must be >= 1.")

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")
_RATE_NAME_FILTERS = ("associateCompanyName", "associateId", "product", "subCategory")


def _to_snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError:
            return None
    return None


def _as_temporal(value: Any) -> Any:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"Invalid date value '{value}'.") from None
        if len(value) <= 10:
            return parsed.date()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def build_dynamic_query(filters: Dict[str, Any], model: Type[Any]) -> Query:
    """
    Translate free-form listing filters into a store query.

      - uuid string         → exact id match
      - "true" / "false"    → boolean
      - other string        → case-insensitive substring match
      - list                → $in
      - {start, end}        → inclusive range

    Keys may be camelCase or snake_case; a key naming a reference
    (``productVariant``) matches its ``*_id`` field.  Keys that match no
    field of `model` are ignored.
    """
    names = {f.name for f in dataclasses.fields(model)}
    query: Query = {}
    if "is_deleted" in names:
        query["is_deleted"] = False

    for key, value in filters.items():
        snake = _to_snake(key)
        if snake not in names and f"{snake}_id" in names:
            snake = f"{snake}_id"
        elif snake not in names and f"{snake}_ids" in names:
            snake = f"{snake}_ids"
        if snake not in names or value is None:
            continue

        if isinstance(value, dict):
            bounds: Dict[str, Any] = {}
            if value.get("start"):
                bounds["$gte"] = _as_temporal(value["start"])
            if value.get("end"):
                bounds["$lte"] = _as_temporal(value["end"])
            if bounds:
                query[snake] = bounds
        elif isinstance(value, (list, tuple, set)):
            query[snake] = {"$in": [_as_uuid(v) or v for v in value]}
        elif isinstance(value, str):
            as_id = _as_uuid(value)
            if as_id is not None:
                query[snake] = as_id
            elif value.lower() in ("true", "false"):
                query[snake] = value.lower() == "true"
            else:
                query[snake] = {"$regex": re.escape(value), "$options": "i"}
        else:
            query[snake] = value
    return query


def _company_ids_for_name(uow: AbstractUnitOfWork, raw_name: str) -> Set[uuid.UUID]:
    return {c.id for c in uow.associate_companies.list_by_name(raw_name)}


def _variant_ids_for_names(
    uow: AbstractUnitOfWork, product: Optional[str], sub_category: Optional[str]
) -> Optional[Set[uuid.UUID]]:
    """Product variant ids matching the product and/or sub-category names."""
    result: Optional[Set[uuid.UUID]] = None
    if product:
        product_ids = [p.id for p in uow.products.list_by_name(product)]
        result = {v.id for v in uow.product_variants.list_for_products(product_ids)}
    if sub_category:
        sub_ids = [s.id for s in uow.sub_categories.list_by_name(sub_category)]
        product_ids = [p.id for p in uow.products.list_for_sub_categories(sub_ids)]
        by_sub = {v.id for v in uow.product_variants.list_for_products(product_ids)}
        result = by_sub if result is None else result & by_sub
    return result


def _rate_name_query(uow: AbstractUnitOfWork, filters: Dict[str, Any]) -> Query:
    """Resolve the name-based rate filters common to both rate listings."""
    query: Query = {}
    company_name = filters.get("associateCompanyName")
    if company_name:
        query["associate_company_id"] = {"$in": sorted(_company_ids_for_name(uow, str(company_name)), key=str)}
    associate_id = filters.get("associateId")
    if associate_id:
        parsed = _as_uuid(associate_id)
        if parsed is None:
            raise ValidationError(f"Invalid associateId '{associate_id}'.")
        query["associate_id"] = parsed
    return query


def _page(items: List[Any], total: int, q: ListQuery) -> PageDTO:
    total_pages = (total + q.limit - 1) // q.limit
    return PageDTO(data=items, total_count=total, current_page=q.page, total_pages=total_pages)


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _require_identity(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise AuthorizationError("This operation requires an authenticated caller.")
    return identity


def _lists_not_null(changes: Dict[str, Any], list_fields: Set[str]) -> Dict[str, Any]:
    """A null list field in a patch clears it to an empty list."""
    return {k: ([] if k in list_fields and v is None else v) for k, v in changes.items()}


def _get_or_raise(repo: Any, entity_id: uuid.UUID, label: str) -> Any:
    entity = repo.get(entity_id)
    if entity is None:
        raise NotFoundError(f"{label} {entity_id} not found.")
    return entity


def _company_for_associate(uow: AbstractUnitOfWork, associate_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
    if associate_id is None:
        return None
    associate = _get_or_raise(uow.associates, associate_id, "Associate")
    return associate.associate_company_id


def _status_name(repo: AbstractReferenceRepository, status_id: Optional[uuid.UUID]) -> Optional[str]:
    if status_id is None:
        return None
    status = repo.get(status_id)
    return status.name if status else None


def _status_resolver(
    repo: AbstractReferenceRepository, cache: StatusNameCache, label: str
) -> Callable[[str], uuid.UUID]:
    def _load(name: str) -> Optional[uuid.UUID]:
        record = repo.find_by_name(name)
        return record.id if record else None

    def resolve(name: str) -> uuid.UUID:
        status_id = cache.get_or_load(name, _load)
        if status_id is None:
            raise NotFoundError(f"{label} '{name}' not found.")
        return status_id

    return resolve


def _record_status_change(
    uow: AbstractUnitOfWork,
    entity_id: uuid.UUID,
    entity_type: EntityType,
    previous: Optional[str],
    new: Optional[str],
    change_type: str,
    acting: Optional[Identity],
) -> None:
    uow.status_history.save(
        StatusHistory(
            entity_id=entity_id,
            entity_type=entity_type,
            previous_status=previous,
            new_status=new,
            change_type=change_type,
            changed_by_id=acting.user_id if acting else None,
            changed_role=acting.role if acting else None,
        )
    )


def _propagate_project_status(
    uow: AbstractUnitOfWork,
    activity: Activity,
    caches: StatusCaches,
    acting: Optional[Identity],
) -> Project:
    """
    Re-derive the project's status from all of its live activities.

    Every matching rule performs its own write, in rule order; the final
    stored value is the last one written.
    """
    project = _get_or_raise(uow.projects, activity.project_id, "Project")
    siblings = uow.activities.find({"project_id": project.id, "is_deleted": False})
    names = [_status_name(uow.activity_statuses, a.status_id) or "" for a in siblings]
    resolve = _status_resolver(uow.project_statuses, caches.project, "Project status")

    for status in _project_status_svc.status_writes(names):
        status_id = resolve(status.value)
        if project.status_id != status_id:
            _record_status_change(
                uow,
                project.id,
                EntityType.PROJECT,
                _status_name(uow.project_statuses, project.status_id),
                status.value,
                "Project Updated",
                acting,
            )
        project.status_id = status_id
        project.updated_at = datetime.now(timezone.utc)
        uow.projects.save(project)
        logger.info("Project %s status written: %s", project.id, status.value)
    return project


# ===========================================================================
# USE CASES: VARIANT RATES
# ===========================================================================

_VARIANT_RATE_FIELDS = {
    "rate", "commission", "duration", "is_live", "selected",
    "product_variant_id", "associate_id", "tag_ids",
    "state_id", "district_id", "division_id", "pincode_entry_id",
    "hidden_draft_of_id",
}


def _variant_rate_visibility_query(viewer: Optional[Identity]) -> Query:
    if viewer is not None and viewer.role is Role.ADMIN:
        return {}
    if viewer is not None and viewer.role is Role.ASSOCIATE:
        return {"$or": [{"associate_id": viewer.user_id}, {"is_live": True}]}
    return {"is_live": True, "selected": True}


class ListVariantRatesUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(self, q: ListQuery, uow: AbstractUnitOfWork) -> PageDTO:
        with uow:
            generic = {k: v for k, v in q.filters.items() if k not in _RATE_NAME_FILTERS}
            clauses: List[Query] = [
                build_dynamic_query(generic, VariantRate),
                _rate_name_query(uow, q.filters),
                _variant_rate_visibility_query(q.viewer),
            ]
            variant_ids = _variant_ids_for_names(
                uow, q.filters.get("product"), q.filters.get("subCategory")
            )
            if variant_ids is not None:
                clauses.append({"product_variant_id": {"$in": sorted(variant_ids, key=str)}})
            query: Query = {"$and": [c for c in clauses if c]}

            rates = uow.variant_rates.find(query, skip=q.skip, limit=q.limit)
            total = uow.variant_rates.count(query)
            items = [_Assembler.variant_rate(r, q.viewer, self.visibility) for r in rates]
            return _page(items, total, q)


class GetVariantRateUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(
        self, rate_id: uuid.UUID, viewer: Optional[Identity], uow: AbstractUnitOfWork
    ) -> VariantRateDTO:
        with uow:
            rate = _get_or_raise(uow.variant_rates, rate_id, "Variant rate")
            return _Assembler.variant_rate(rate, viewer, self.visibility)


@dataclass
class CreateVariantRateCommand:
    identity: Optional[Identity]
    rate: float
    product_variant_id: uuid.UUID
    commission: Optional[float] = None
    duration: int = 1
    is_live: bool = False
    selected: bool = False
    associate_id: Optional[uuid.UUID] = None
    tag_ids: List[uuid.UUID] = field(default_factory=list)
    state_id: Optional[uuid.UUID] = None
    district_id: Optional[uuid.UUID] = None
    division_id: Optional[uuid.UUID] = None
    pincode_entry_id: Optional[uuid.UUID] = None
    hidden_draft_of_id: Optional[uuid.UUID] = None


class CreateVariantRateUseCase:
    """
    Create a rate.  An Associate creating a rate without naming an
    associate creates it for themselves.  The edit timestamps stay unset so
    the first edit is always allowed.
    """

    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(
        self, cmd: CreateVariantRateCommand, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> VariantRateDTO:
        identity = _require_identity(cmd.identity)
        now = now or datetime.now(timezone.utc)
        with uow:
            _get_or_raise(uow.product_variants, cmd.product_variant_id, "Product variant")
            associate_id = cmd.associate_id
            if associate_id is None and identity.role is Role.ASSOCIATE:
                associate_id = identity.user_id
            if cmd.hidden_draft_of_id is not None:
                _get_or_raise(uow.variant_rates, cmd.hidden_draft_of_id, "Variant rate")

            rate = VariantRate(
                rate=cmd.rate,
                commission=cmd.commission,
                duration=cmd.duration or 1,
                is_live=cmd.is_live,
                selected=cmd.selected,
                product_variant_id=cmd.product_variant_id,
                associate_id=associate_id,
                associate_company_id=_company_for_associate(uow, associate_id),
                tag_ids=list(cmd.tag_ids),
                state_id=cmd.state_id,
                district_id=cmd.district_id,
                division_id=cmd.division_id,
                pincode_entry_id=cmd.pincode_entry_id,
                hidden_draft_of_id=cmd.hidden_draft_of_id,
                created_at=now,
                updated_at=now,
            )
            self.visibility.stamp_first_live(rate, now)
            uow.variant_rates.save(rate)
            uow.commit()
            return _Assembler.variant_rate(rate, identity, self.visibility)


@dataclass
class UpdateVariantRateCommand:
    rate_id: uuid.UUID
    identity: Optional[Identity]
    changes: Dict[str, Any] = field(default_factory=dict)


class UpdateVariantRateUseCase:
    """
    Apply an edit under the cooldown rules.

    Read-then-conditional-write: the cooldown check and the save are two
    separate store calls, so concurrent edits to one rate are not
    linearised.
    """

    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(
        self, cmd: UpdateVariantRateCommand, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> VariantRateDTO:
        identity = _require_identity(cmd.identity)
        unknown = set(cmd.changes) - _VARIANT_RATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown variant rate fields: {sorted(unknown)}.")
        now = now or datetime.now(timezone.utc)

        with uow:
            rate = _get_or_raise(uow.variant_rates, cmd.rate_id, "Variant rate")
            decision = self.visibility.decide_edit(rate, identity, now)
            if not decision.allowed:
                logger.warning(
                    "Rejected edit of variant rate %s by %s (%s)",
                    rate.id, identity.user_id, identity.role.value,
                )
                raise CooldownViolation(decision.reason)

            changes = _lists_not_null(cmd.changes, {"tag_ids"})
            if "associate_id" in changes:
                changes["associate_company_id"] = _company_for_associate(uow, changes["associate_id"])
            if changes.get("product_variant_id") is not None:
                _get_or_raise(uow.product_variants, changes["product_variant_id"], "Product variant")
            if "duration" in changes and not changes["duration"]:
                changes["duration"] = 1

            self.visibility.apply_edit(rate, changes, identity, decision, now)
            if decision.is_cooling_edit:
                logger.info("Cooling edit of variant rate %s by %s", rate.id, identity.user_id)
            uow.variant_rates.save(rate)
            uow.commit()
            return _Assembler.variant_rate(rate, identity, self.visibility)


@dataclass
class DeleteVariantRateCommand:
    rate_id: uuid.UUID
    identity: Optional[Identity]


class DeleteVariantRateUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(
        self, cmd: DeleteVariantRateCommand, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> None:
        identity = _require_identity(cmd.identity)
        with uow:
            rate = _get_or_raise(uow.variant_rates, cmd.rate_id, "Variant rate")
            try:
                self.visibility.check_delete(rate, identity, now)
            except ValueError as exc:
                raise AuthorizationError(str(exc)) from exc
            uow.variant_rates.delete(rate.id)
            uow.commit()


class ExpireVariantRatesUseCase:
    """
    Deactivate every live rate whose live period (duration days from
    last_live_at) has passed.  Each record is saved on its own; a failure on
    one record is logged and the sweep moves on.  Running it twice changes
    nothing the second time.
    """

    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(self, uow: AbstractUnitOfWork, now: Optional[datetime] = None) -> SweepResultDTO:
        now = now or datetime.now(timezone.utc)
        deactivated: List[str] = []
        failed: List[str] = []
        with uow:
            candidates = uow.variant_rates.find({"is_live": True, "last_live_at": {"$ne": None}})
            for rate in candidates:
                if not self.visibility.is_expired(rate, now):
                    continue
                try:
                    self.visibility.expire(rate, now)
                    uow.variant_rates.save(rate)
                except Exception:
                    logger.exception("Failed to deactivate expired variant rate %s", rate.id)
                    failed.append(str(rate.id))
                else:
                    logger.info("Deactivated expired variant rate %s", rate.id)
                    deactivated.append(str(rate.id))
            uow.commit()
        logger.info(
            "Expiry sweep: scanned=%d deactivated=%d failed=%d",
            len(candidates), len(deactivated), len(failed),
        )
        return SweepResultDTO(scanned=len(candidates), deactivated_ids=deactivated, failed_ids=failed)


# ===========================================================================
# USE CASES: DISPLAYED RATES
# ===========================================================================

_DISPLAYED_RATE_FIELDS = {"commission", "selected", "associate_id", "variant_rate_id"}


def _displayed_rate_visibility_query(uow: AbstractUnitOfWork, viewer: Optional[Identity]) -> Query:
    if viewer is not None and viewer.role is Role.ADMIN:
        return {}
    live_ids = sorted((r.id for r in uow.variant_rates.find({"is_live": True})), key=str)
    live_clause: Query = {"variant_rate_id": {"$in": live_ids}}
    if viewer is None:
        return live_clause
    return {"$or": [{"associate_id": viewer.user_id}, live_clause]}


class ListDisplayedRatesUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(self, q: ListQuery, uow: AbstractUnitOfWork) -> PageDTO:
        with uow:
            generic = {k: v for k, v in q.filters.items() if k not in _RATE_NAME_FILTERS}
            clauses: List[Query] = [
                build_dynamic_query(generic, DisplayedRate),
                _rate_name_query(uow, q.filters),
                _displayed_rate_visibility_query(uow, q.viewer),
            ]
            variant_ids = _variant_ids_for_names(
                uow, q.filters.get("product"), q.filters.get("subCategory")
            )
            if variant_ids is not None:
                base_ids = sorted(
                    (r.id for r in uow.variant_rates.find(
                        {"product_variant_id": {"$in": sorted(variant_ids, key=str)}}
                    )),
                    key=str,
                )
                clauses.append({"variant_rate_id": {"$in": base_ids}})
            query: Query = {"$and": [c for c in clauses if c]}

            items = []
            for d in uow.displayed_rates.find(query, skip=q.skip, limit=q.limit):
                base = _get_or_raise(uow.variant_rates, d.variant_rate_id, "Variant rate")
                items.append(_Assembler.displayed_rate(d, base, q.viewer, self.visibility))
            return _page(items, uow.displayed_rates.count(query), q)


class GetDisplayedRateUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(
        self, displayed_id: uuid.UUID, viewer: Optional[Identity], uow: AbstractUnitOfWork
    ) -> DisplayedRateDTO:
        with uow:
            displayed = _get_or_raise(uow.displayed_rates, displayed_id, "Displayed rate")
            base = _get_or_raise(uow.variant_rates, displayed.variant_rate_id, "Variant rate")
            return _Assembler.displayed_rate(displayed, base, viewer, self.visibility)


@dataclass
class CreateDisplayedRateCommand:
    identity: Optional[Identity]
    variant_rate_id: uuid.UUID
    commission: Optional[float] = None
    selected: bool = False
    associate_id: Optional[uuid.UUID] = None


class CreateDisplayedRateUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(self, cmd: CreateDisplayedRateCommand, uow: AbstractUnitOfWork) -> DisplayedRateDTO:
        identity = _require_identity(cmd.identity)
        with uow:
            base = _get_or_raise(uow.variant_rates, cmd.variant_rate_id, "Variant rate")
            associate_id = cmd.associate_id
            if associate_id is None and identity.role is Role.ASSOCIATE:
                associate_id = identity.user_id
            if associate_id is None:
                raise ValidationError("A displayed rate requires an associate.")
            displayed = DisplayedRate(
                variant_rate_id=base.id,
                commission=cmd.commission,
                selected=cmd.selected,
                associate_id=associate_id,
                associate_company_id=_company_for_associate(uow, associate_id),
            )
            uow.displayed_rates.save(displayed)
            uow.commit()
            return _Assembler.displayed_rate(displayed, base, identity, self.visibility)


@dataclass
class UpdateDisplayedRateCommand:
    displayed_id: uuid.UUID
    identity: Optional[Identity]
    changes: Dict[str, Any] = field(default_factory=dict)


class UpdateDisplayedRateUseCase:
    def __init__(self, visibility: Optional[RateVisibilityService] = None) -> None:
        self.visibility = visibility or _visibility_svc

    def execute(self, cmd: UpdateDisplayedRateCommand, uow: AbstractUnitOfWork) -> DisplayedRateDTO:
        identity = _require_identity(cmd.identity)
        unknown = set(cmd.changes) - _DISPLAYED_RATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown displayed rate fields: {sorted(unknown)}.")
        with uow:
            displayed = _get_or_raise(uow.displayed_rates, cmd.displayed_id, "Displayed rate")
            changes = dict(cmd.changes)
            if "variant_rate_id" in changes:
                _get_or_raise(uow.variant_rates, changes["variant_rate_id"], "Variant rate")
            if "associate_id" in changes:
                if changes["associate_id"] is None:
                    raise ValidationError("A displayed rate requires an associate.")
                changes["associate_company_id"] = _company_for_associate(uow, changes["associate_id"])
            for key, value in changes.items():
                setattr(displayed, key, value)
            displayed.updated_at = datetime.now(timezone.utc)
            uow.displayed_rates.save(displayed)
            base = _get_or_raise(uow.variant_rates, displayed.variant_rate_id, "Variant rate")
            uow.commit()
            return _Assembler.displayed_rate(displayed, base, identity, self.visibility)


class DeleteDisplayedRateUseCase:
    def execute(self, displayed_id: uuid.UUID, identity: Optional[Identity], uow: AbstractUnitOfWork) -> None:
        _require_identity(identity)
        with uow:
            _get_or_raise(uow.displayed_rates, displayed_id, "Displayed rate")
            uow.displayed_rates.delete(displayed_id)
            uow.commit()


# ===========================================================================
# USE CASES: ENQUIRIES
# ===========================================================================

def _resolve_enquiry_status(uow: AbstractUnitOfWork, value: Any) -> uuid.UUID:
    """Accept an EnquiryProcessStatus id, or its name."""
    as_id = _as_uuid(value)
    if as_id is not None:
        return as_id
    status = uow.enquiry_statuses.find_by_name(str(value))
    if status is None:
        raise ValidationError("Invalid status name")
    return status.id


class ListEnquiriesUseCase:
    def __init__(self, pricing: Optional[EnquiryPricingService] = None) -> None:
        self.pricing = pricing or _pricing_svc

    def execute(self, q: ListQuery, uow: AbstractUnitOfWork) -> PageDTO:
        with uow:
            query = build_dynamic_query(q.filters, Enquiry)
            items = [
                _Assembler.enquiry(e, q.viewer, self.pricing, _status_name(uow.enquiry_statuses, e.status_id))
                for e in uow.enquiries.find(query, skip=q.skip, limit=q.limit)
            ]
            return _page(items, uow.enquiries.count(query), q)


class GetEnquiryUseCase:
    def __init__(self, pricing: Optional[EnquiryPricingService] = None) -> None:
        self.pricing = pricing or _pricing_svc

    def execute(self, enquiry_id: uuid.UUID, viewer: Optional[Identity], uow: AbstractUnitOfWork) -> EnquiryDTO:
        with uow:
            enquiry = _get_or_raise(uow.enquiries, enquiry_id, "Enquiry")
            return _Assembler.enquiry(
                enquiry, viewer, self.pricing, _status_name(uow.enquiry_statuses, enquiry.status_id)
            )


@dataclass
class CreateEnquiryCommand:
    name: str
    phone_number: str
    variant_rate_id: Optional[uuid.UUID]
    display_rate_id: Optional[uuid.UUID] = None
    product_variant_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    viewer: Optional[Identity] = None


class CreateEnquiryUseCase:
    """
    Price an enquiry from its source rates.  The figures copied here are
    never recomputed, whatever later happens to the rates.
    """

    def __init__(self, pricing: Optional[EnquiryPricingService] = None) -> None:
        self.pricing = pricing or _pricing_svc

    def execute(self, cmd: CreateEnquiryCommand, uow: AbstractUnitOfWork) -> EnquiryDTO:
        if cmd.variant_rate_id is None:
            raise ValidationError("variantRate is required.")
        with uow:
            variant_rate = uow.variant_rates.get(cmd.variant_rate_id)
            if variant_rate is None or variant_rate.associate_id is None:
                raise ValidationError(
                    f"Variant rate {cmd.variant_rate_id} not found or has no associate."
                )
            displayed = uow.displayed_rates.get(cmd.display_rate_id) if cmd.display_rate_id else None
            status_id = _resolve_enquiry_status(uow, cmd.status) if cmd.status else None
            try:
                enquiry = self.pricing.create_enquiry(
                    name=cmd.name,
                    phone_number=cmd.phone_number,
                    variant_rate=variant_rate,
                    displayed_rate=displayed,
                    product_variant_id=cmd.product_variant_id,
                    status_id=status_id,
                )
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.enquiries.save(enquiry)
            uow.commit()
            return _Assembler.enquiry(
                enquiry, cmd.viewer, self.pricing, _status_name(uow.enquiry_statuses, status_id)
            )


@dataclass
class UpdateEnquiryCommand:
    enquiry_id: uuid.UUID
    viewer: Optional[Identity]
    name: Optional[str] = None
    phone_number: Optional[str] = None
    status: Optional[str] = None


class UpdateEnquiryUseCase:
    def __init__(self, pricing: Optional[EnquiryPricingService] = None) -> None:
        self.pricing = pricing or _pricing_svc

    def execute(self, cmd: UpdateEnquiryCommand, uow: AbstractUnitOfWork) -> EnquiryDTO:
        with uow:
            enquiry = _get_or_raise(uow.enquiries, cmd.enquiry_id, "Enquiry")
            if cmd.status is not None:
                enquiry.status_id = _resolve_enquiry_status(uow, cmd.status)
            if cmd.name is not None:
                enquiry.name = cmd.name
            if cmd.phone_number is not None:
                enquiry.phone_number = cmd.phone_number
            enquiry.updated_at = datetime.now(timezone.utc)
            uow.enquiries.save(enquiry)
            uow.commit()
            return _Assembler.enquiry(
                enquiry, cmd.viewer, self.pricing, _status_name(uow.enquiry_statuses, enquiry.status_id)
            )


class DeleteEnquiryUseCase:
    def execute(self, enquiry_id: uuid.UUID, uow: AbstractUnitOfWork) -> None:
        with uow:
            _get_or_raise(uow.enquiries, enquiry_id, "Enquiry")
            uow.enquiries.delete(enquiry_id)
            uow.commit()


# ===========================================================================
# USE CASES: PROJECTS
# ===========================================================================

@dataclass
class CreateProjectCommand:
    title: str
    identity: Optional[Identity]
    custom_id: str = ""
    description: str = ""
    customer_id: Optional[uuid.UUID] = None


class CreateProjectUseCase:
    """Create a project; it starts Open until its activities say otherwise."""

    def __init__(self, caches: StatusCaches) -> None:
        self.caches = caches

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        identity = _require_identity(cmd.identity)
        with uow:
            resolve = _status_resolver(uow.project_statuses, self.caches.project, "Project status")
            project = Project(
                title=cmd.title,
                custom_id=cmd.custom_id,
                description=cmd.description,
                customer_id=cmd.customer_id,
                status_id=resolve(ProjectStatusName.OPEN.value),
            )
            uow.projects.save(project)
            _record_status_change(
                uow, project.id, EntityType.PROJECT, None,
                ProjectStatusName.OPEN.value, "Project Created", identity,
            )
            uow.commit()
            return _Assembler.project(project, ProjectStatusName.OPEN.value)


class GetProjectUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _get_or_raise(uow.projects, project_id, "Project")
            return _Assembler.project(project, _status_name(uow.project_statuses, project.status_id))


class ListProjectsUseCase:
    def execute(self, q: ListQuery, uow: AbstractUnitOfWork) -> PageDTO:
        with uow:
            query = build_dynamic_query(q.filters, Project)
            items = [
                _Assembler.project(p, _status_name(uow.project_statuses, p.status_id))
                for p in uow.projects.find(query, skip=q.skip, limit=q.limit)
            ]
            return _page(items, uow.projects.count(query), q)


# ===========================================================================
# USE CASES: ACTIVITIES
# ===========================================================================

_ACTIVITY_FIELDS = {
    "description", "activity_manager_id", "customer_id", "type_id",
    "forecast_date", "actual_date", "target_operation_date", "target_finance_date",
    "hours_spent", "worker_ids",
}


@dataclass
class CreateActivityCommand:
    project_id: uuid.UUID
    identity: Optional[Identity]
    fields: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None


class CreateActivityUseCase:
    def __init__(
        self,
        caches: StatusCaches,
        statuses: Optional[ActivityStatusService] = None,
    ) -> None:
        self.caches = caches
        self.statuses = statuses or _activity_status_svc

    def execute(self, cmd: CreateActivityCommand, uow: AbstractUnitOfWork) -> ActivityDTO:
        identity = _require_identity(cmd.identity)
        unknown = set(cmd.fields) - _ACTIVITY_FIELDS
        if unknown:
            raise ValidationError(f"Unknown activity fields: {sorted(unknown)}.")
        with uow:
            project = _get_or_raise(uow.projects, cmd.project_id, "Project")
            resolve = _status_resolver(uow.activity_statuses, self.caches.activity, "Activity status")

            patch = dict(cmd.fields)
            if cmd.status:
                patch["status"] = cmd.status
            status_id = self.statuses.determine_status(patch, None, identity.role, resolve)

            existing = uow.activities.count({"project_id": project.id})
            activity = Activity(project_id=project.id, **cmd.fields)
            activity.title = self.statuses.generate_title(project, existing)
            activity.status_id = status_id
            uow.activities.save(activity)

            status_name = _status_name(uow.activity_statuses, status_id)
            _record_status_change(
                uow, activity.id, EntityType.ACTIVITY, None, status_name, "Activity Created", identity
            )
            uow.commit()
            return _Assembler.activity(activity, status_name)


@dataclass
class UpdateActivityCommand:
    activity_id: uuid.UUID
    identity: Optional[Identity]
    changes: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None
    unblock: bool = False
    rejection_reason: Optional[str] = None


class UpdateActivityUseCase:
    """
    Apply a patch, re-derive the activity's status against the merged
    record, then propagate to the owning project.
    """

    def __init__(
        self,
        caches: StatusCaches,
        statuses: Optional[ActivityStatusService] = None,
    ) -> None:
        self.caches = caches
        self.statuses = statuses or _activity_status_svc

    def execute(self, cmd: UpdateActivityCommand, uow: AbstractUnitOfWork) -> ActivityDTO:
        identity = _require_identity(cmd.identity)
        unknown = set(cmd.changes) - _ACTIVITY_FIELDS
        if unknown:
            raise ValidationError(f"Unknown activity fields: {sorted(unknown)}.")
        with uow:
            activity = _get_or_raise(uow.activities, cmd.activity_id, "Activity")
            if activity.is_deleted:
                raise NotFoundError(f"Activity {cmd.activity_id} not found.")
            resolve = _status_resolver(uow.activity_statuses, self.caches.activity, "Activity status")

            changes = _lists_not_null(cmd.changes, {"worker_ids"})
            patch = dict(changes)
            if cmd.status:
                patch["status"] = cmd.status
            if cmd.unblock:
                patch["unblock"] = True
            new_status_id = self.statuses.determine_status(patch, activity, identity.role, resolve)

            previous_name = _status_name(uow.activity_statuses, activity.status_id)
            for key, value in changes.items():
                setattr(activity, key, value)
            if (
                cmd.rejection_reason
                and cmd.status == ActivityStatusName.REJECTED.value
                and new_status_id == resolve(ActivityStatusName.REJECTED.value)
            ):
                activity.rejection_reason.append(cmd.rejection_reason)

            changed = self.statuses.apply_status(activity, new_status_id)
            activity.updated_at = datetime.now(timezone.utc)
            uow.activities.save(activity)

            new_name = _status_name(uow.activity_statuses, activity.status_id)
            if changed:
                _record_status_change(
                    uow, activity.id, EntityType.ACTIVITY, previous_name, new_name,
                    "Activity Updated", identity,
                )
            _propagate_project_status(uow, activity, self.caches, identity)
            uow.commit()
            return _Assembler.activity(activity, new_name)


class GetActivityUseCase:
    def execute(self, activity_id: uuid.UUID, uow: AbstractUnitOfWork) -> ActivityDTO:
        with uow:
            activity = _get_or_raise(uow.activities, activity_id, "Activity")
            return _Assembler.activity(activity, _status_name(uow.activity_statuses, activity.status_id))


class ListActivitiesUseCase:
    def execute(self, q: ListQuery, uow: AbstractUnitOfWork) -> PageDTO:
        with uow:
            query = build_dynamic_query(q.filters, Activity)
            items = [
                _Assembler.activity(a, _status_name(uow.activity_statuses, a.status_id))
                for a in uow.activities.find(query, skip=q.skip, limit=q.limit)
            ]
            return _page(items, uow.activities.count(query), q)


class DeleteActivityUseCase:
    """Soft delete; the project's status is re-derived without the activity."""

    def __init__(self, caches: StatusCaches) -> None:
        self.caches = caches

    def execute(self, activity_id: uuid.UUID, identity: Optional[Identity], uow: AbstractUnitOfWork) -> None:
        identity = _require_identity(identity)
        with uow:
            activity = _get_or_raise(uow.activities, activity_id, "Activity")
            activity.is_deleted = True
            activity.updated_at = datetime.now(timezone.utc)
            uow.activities.save(activity)
            _propagate_project_status(uow, activity, self.caches, identity)
            uow.commit()


class PropagateProjectStatusUseCase:
    def __init__(self, caches: StatusCaches) -> None:
        self.caches = caches

    def execute(self, activity_id: uuid.UUID, identity: Optional[Identity], uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            activity = _get_or_raise(uow.activities, activity_id, "Activity")
            project = _propagate_project_status(uow, activity, self.caches, identity)
            uow.commit()
            return _Assembler.project(project, _status_name(uow.project_statuses, project.status_id))


class ListStatusHistoryUseCase:
    def execute(self, entity_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[StatusHistoryDTO]:
        with uow:
            entries = sorted(uow.status_history.list_for_entity(entity_id), key=lambda h: h.changed_at)
            return [_Assembler.status_history(h) for h in entries]


# ===========================================================================
# USE CASES: ERRORS
# ===========================================================================

@dataclass
class RecordErrorCommand:
    message: str
    stack: str
    stage: str
    api: str
    body: Dict[str, Any] = field(default_factory=dict)


class RecordErrorUseCase:
    """Write a failure to the error-tracking sink."""

    def execute(self, cmd: RecordErrorCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            uow.errors.save(
                ErrorLog(
                    message=cmd.message,
                    stack=cmd.stack,
                    stage=cmd.stage,
                    api=cmd.api,
                    body=cmd.body,
                )
            )
            uow.commit()
