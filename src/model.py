"""
model.py

Domain models for the Rate Desk back-office: product variant pricing,
resale markups, customer enquiries, and project / activity tracking.

Entities
--------
- AssociateCompany, Associate
- SubCategory, Product, ProductVariant
- VariantRate
- DisplayedRate
- Enquiry, EnquiryProcessStatus
- Project, ProjectStatus
- Activity, ActivityStatus
- StatusHistory
- ErrorLog

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout; references to other records are
stored by id only, the way a document store keeps them.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Closed set of caller roles supplied by the upstream auth layer."""
    ADMIN = "Admin"
    ASSOCIATE = "Associate"
    CUSTOMER = "Customer"
    PROJECT_MANAGER = "ProjectManager"
    ACTIVITY_MANAGER = "ActivityManager"
    WORKER = "Worker"


class ActivityStatusName(str, Enum):
    """
    Names of the ActivityStatus reference records.

    NO_TARGET / TO_BE_PLANNED / TO_BE_ASSIGNED / IN_PROGRESS are derived from
    the activity's own fields.  The remaining five are transition labels a
    caller may request directly.
    """
    NO_TARGET = "No Target"
    TO_BE_PLANNED = "To Be Planned"
    TO_BE_ASSIGNED = "To Be Assigned"
    IN_PROGRESS = "In Progress"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    SUSPENDED = "Suspended"
    BLOCKED = "Blocked"


TRANSITION_STATUSES = frozenset({
    ActivityStatusName.SUBMITTED,
    ActivityStatusName.APPROVED,
    ActivityStatusName.REJECTED,
    ActivityStatusName.SUSPENDED,
    ActivityStatusName.BLOCKED,
})


class ProjectStatusName(str, Enum):
    """Names of the ProjectStatus reference records."""
    OPEN = "Open"
    CLOSED = "Closed"
    SUSPENDED = "Suspended"
    BLOCKED = "Blocked"


class EntityType(str, Enum):
    ACTIVITY = "Activity"
    PROJECT = "Project"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Identity:
    """
    The caller as resolved by the upstream authentication layer.

    The core trusts this as given; an anonymous caller is represented by
    passing ``None`` wherever an ``Optional[Identity]`` is accepted.
    """
    user_id: uuid.UUID
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


# ---------------------------------------------------------------------------
# Reference records (read by the core, maintained elsewhere)
# ---------------------------------------------------------------------------


@dataclass
class AssociateCompany:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""


@dataclass
class Associate:
    """A seller of rates.  Always belongs to exactly one associate company."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    associate_company_id: Optional[uuid.UUID] = None   # FK → AssociateCompany.id


@dataclass
class SubCategory:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""


@dataclass
class Product:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    sub_category_id: Optional[uuid.UUID] = None        # FK → SubCategory.id


@dataclass
class ProductVariant:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    product_id: Optional[uuid.UUID] = None             # FK → Product.id


@dataclass
class ActivityStatus:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""


@dataclass
class ProjectStatus:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""


@dataclass
class EnquiryProcessStatus:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""


# ---------------------------------------------------------------------------
# Pricing Entities
# ---------------------------------------------------------------------------


@dataclass
class VariantRate:
    """
    A priced offer for a product variant by an associate.

    `commission` is the associate's margin on top of `rate`; only Admins and
    the owning associate ever see it as a separate figure.

    Edit-cooldown state lives directly on the record:
    `last_edit_time` starts a duration cycle, `cooling_start_time` opens the
    short cooling window in which draft edits are accepted.

    `last_live_at` is stamped once, the first time the rate goes live, and
    drives the hourly expiry sweep.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    rate: float = 0.0
    commission: Optional[float] = None
    duration: int = 1                                   # days
    is_live: bool = False
    selected: bool = False

    product_variant_id: Optional[uuid.UUID] = None      # FK → ProductVariant.id
    associate_id: Optional[uuid.UUID] = None            # FK → Associate.id
    associate_company_id: Optional[uuid.UUID] = None    # derived from associate
    tag_ids: List[uuid.UUID] = field(default_factory=list)

    # Optional geographic scoping
    state_id: Optional[uuid.UUID] = None
    district_id: Optional[uuid.UUID] = None
    division_id: Optional[uuid.UUID] = None
    pincode_entry_id: Optional[uuid.UUID] = None

    hidden_draft_of_id: Optional[uuid.UUID] = None      # FK → VariantRate.id

    last_edit_time: Optional[datetime] = None
    cooling_start_time: Optional[datetime] = None
    last_live_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class DisplayedRate:
    """
    An associate-specific markup layered on top of another associate's live
    VariantRate, used when one associate resells another's rate.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    variant_rate_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → VariantRate.id
    commission: Optional[float] = None
    selected: bool = False
    associate_id: Optional[uuid.UUID] = None            # FK → Associate.id
    associate_company_id: Optional[uuid.UUID] = None    # derived from associate
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Enquiry:
    """
    A customer price inquiry.

    `rate`, `commission` and `mediator_commission` are frozen at creation from
    the source VariantRate / DisplayedRate and are never recomputed.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    phone_number: str = ""
    name: str = ""

    variant_rate_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → VariantRate.id
    display_rate_id: Optional[uuid.UUID] = None         # FK → DisplayedRate.id
    product_variant_id: Optional[uuid.UUID] = None      # FK → ProductVariant.id
    product_associate_id: Optional[uuid.UUID] = None    # = variant rate's associate
    mediator_associate_id: Optional[uuid.UUID] = None   # = displayed rate's associate
    status_id: Optional[uuid.UUID] = None               # FK → EnquiryProcessStatus.id

    rate: float = 0.0
    commission: float = 0.0
    mediator_commission: float = 0.0

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Project Entities
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    Aggregates activities.  `status_id` is derived from the statuses of the
    project's activities and is not set directly by callers after creation.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    title: str = ""
    custom_id: str = ""
    description: str = ""
    customer_id: Optional[uuid.UUID] = None
    status_id: Optional[uuid.UUID] = None               # FK → ProjectStatus.id
    is_deleted: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Activity:
    """
    A unit of work under a project.

    `status_id` is derived on every save.  `previous_status_id` holds the
    status in force before the most recent change, so an Admin can restore
    it when lifting a block or suspension.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    title: str = ""                                     # generated on first save
    description: str = ""
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)       # FK → Project.id
    activity_manager_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    type_id: Optional[uuid.UUID] = None

    status_id: Optional[uuid.UUID] = None               # FK → ActivityStatus.id
    previous_status_id: Optional[uuid.UUID] = None      # FK → ActivityStatus.id

    forecast_date: Optional[date] = None
    actual_date: Optional[date] = None
    target_operation_date: Optional[date] = None
    target_finance_date: Optional[date] = None

    hours_spent: float = 0.0
    worker_ids: List[uuid.UUID] = field(default_factory=list)
    rejection_reason: List[str] = field(default_factory=list)
    is_deleted: bool = False

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


# ---------------------------------------------------------------------------
# Audit & Error Entities
# ---------------------------------------------------------------------------


@dataclass
class StatusHistory:
    """
    Immutable record of a status change on an activity or project.
    Status values are stored by name so the log stays readable even if
    reference records are later renamed.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    entity_id: uuid.UUID = field(default_factory=uuid.uuid4)
    entity_type: EntityType = EntityType.ACTIVITY
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    change_type: str = ""
    changed_by_id: Optional[uuid.UUID] = None
    changed_role: Optional[Role] = None
    changed_at: datetime = field(default_factory=_now)


@dataclass
class ErrorLog:
    """A failure captured by the error-tracking sink."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    message: str = ""
    stack: str = ""
    resolved: bool = False
    stage: str = ""                 # originating component
    api: str = ""                   # "<METHOD> <path>"
    body: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
