"""
service.py

Service layer for the Rate Desk back-office.

Responsibilities
----------------
Each service class encapsulates the business rules for its domain.
Services receive and return domain model instances (from model.py) or small
view objects.  No persistence is handled here; callers are responsible for
loading and storing models via the repositories in the application layer.

Services
--------
- RateVisibilityService     – role-dependent masking of rate / commission,
                              edit-cooldown decisions,
                              delete window, live-expiry checks
- EnquiryPricingService     – frozen pricing snapshot and enquiry masking
- ActivityStatusService     – priority-ordered activity status derivation
- ProjectStatusService      – project status propagation from activities
- StatusNameCache           – injected name → id memo for status lookups

Design notes
------------
- Decisions that depend on rule order are written as explicit ordered lists
  of (predicate, outcome) pairs evaluated top-to-bottom; the first match
  wins unless stated otherwise.
- UTC datetimes are used throughout; callers must pass tz-aware values.
- Business rule violations raise a ValueError with a descriptive message.
- Methods that would normally persist data return the mutated object so
  the caller can hand it to a repository.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from model import (
    Activity,
    ActivityStatusName,
    DisplayedRate,
    Enquiry,
    Identity,
    Project,
    ProjectStatusName,
    Role,
    TRANSITION_STATUSES,
    VariantRate,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

COOLING_PERIOD = timedelta(minutes=15)
DELETE_WINDOW = timedelta(minutes=15)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def normalize_name(value: str) -> str:
    """
    Canonical form used to compare human-entered names with stored names.

        "   OBAOL_supreme   "  ->  "obaol supreme"

    Applied symmetrically to both sides of every name comparison.
    """
    return re.sub(r"\s+", " ", value.replace("_", " ")).strip().lower()


# ---------------------------------------------------------------------------
# StatusNameCache
# ---------------------------------------------------------------------------

class StatusNameCache:
    """
    Memoises status name → id lookups for one kind of status record.

    Status definitions are static reference data, so entries are never
    evicted.  One instance is created per process and injected into the use
    cases that need it; tests build a fresh one or call clear().
    """

    def __init__(self) -> None:
        self._ids: Dict[str, uuid.UUID] = {}

    def get_or_load(
        self, name: str, loader: Callable[[str], Optional[uuid.UUID]]
    ) -> Optional[uuid.UUID]:
        key = normalize_name(name)
        cached = self._ids.get(key)
        if cached is not None:
            return cached
        loaded = loader(name)
        if loaded is not None:
            self._ids[key] = loaded
        return loaded

    def clear(self) -> None:
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._ids)


# ---------------------------------------------------------------------------
# RateVisibilityService
# ---------------------------------------------------------------------------

class VisibilityTier(str, Enum):
    FULL = "full"        # Admin: raw rate and commission
    OWNER = "owner"      # the rate's own associate: raw rate, commission apart
    MASKED = "masked"    # everyone else: commission folded in and hidden


@dataclass
class RateView:
    """What a viewer may see of a VariantRate.  `commission` None = hidden."""
    rate: float
    commission: Optional[float]
    tier: VisibilityTier


@dataclass
class DisplayedRateView:
    """What a viewer may see of a DisplayedRate layered on a VariantRate."""
    rate: float
    commission: Optional[float]
    variant_commission: Optional[float]


@dataclass
class EditDecision:
    allowed: bool
    is_cooling_edit: bool
    reason: str


_ViewerRule = Tuple[Callable[[Optional[Identity], Optional[uuid.UUID]], bool], VisibilityTier]

_VISIBILITY_RULES: List[_ViewerRule] = [
    (lambda viewer, owner_id: viewer is not None and viewer.role is Role.ADMIN,
     VisibilityTier.FULL),
    (lambda viewer, owner_id: viewer is not None
        and viewer.role is Role.ASSOCIATE
        and owner_id is not None
        and viewer.user_id == owner_id,
     VisibilityTier.OWNER),
    (lambda viewer, owner_id: True, VisibilityTier.MASKED),
]


class RateVisibilityService:
    """
    Read-side masking and write-side edit rules for VariantRate and
    DisplayedRate records.

    The masking methods never touch the record they are given; they return
    a view object the application layer serialises.
    """

    def __init__(
        self,
        cooling_period: timedelta = COOLING_PERIOD,
        delete_window: timedelta = DELETE_WINDOW,
    ) -> None:
        self.cooling_period = cooling_period
        self.delete_window = delete_window

    # --- Read path ----------------------------------------------------------

    def visibility_for(
        self, viewer: Optional[Identity], owner_id: Optional[uuid.UUID]
    ) -> VisibilityTier:
        for predicate, tier in _VISIBILITY_RULES:
            if predicate(viewer, owner_id):
                return tier
        return VisibilityTier.MASKED

    def mask_variant_rate(
        self, rate: VariantRate, viewer: Optional[Identity]
    ) -> RateView:
        tier = self.visibility_for(viewer, rate.associate_id)
        base = rate.rate or 0.0
        commission = rate.commission or 0.0
        if tier is VisibilityTier.MASKED:
            return RateView(rate=base + commission, commission=None, tier=tier)
        return RateView(rate=base, commission=rate.commission, tier=tier)

    def mask_displayed_rate(
        self,
        displayed: DisplayedRate,
        base: VariantRate,
        viewer: Optional[Identity],
    ) -> DisplayedRateView:
        """
        The displayed rate's own associate already knows their markup, so it
        is not added for them.  Everyone else sees both commissions folded in.
        Non-Admins never see either commission as a figure.
        """
        base_rate = base.rate or 0.0
        variant_commission = base.commission or 0.0
        displayed_commission = displayed.commission or 0.0
        is_owner = (
            viewer is not None
            and displayed.associate_id is not None
            and viewer.user_id == displayed.associate_id
        )
        if is_owner:
            value = base_rate + variant_commission
        else:
            value = base_rate + variant_commission + displayed_commission

        if viewer is not None and viewer.is_admin:
            return DisplayedRateView(
                rate=value,
                commission=displayed.commission,
                variant_commission=base.commission,
            )
        return DisplayedRateView(rate=value, commission=0.0, variant_commission=None)

    # --- Write path ---------------------------------------------------------

    def decide_edit(
        self, rate: VariantRate, identity: Identity, now: Optional[datetime] = None
    ) -> EditDecision:
        """
        Evaluate the edit-cooldown rules against `now`, first match wins:

          1. never edited                          → allowed
          2. within the cooling window             → allowed, cooling (draft) edit
          3. a full duration since the last edit   → allowed, new cycle
          4. otherwise                             → rejected unless Admin
        """
        now = now or _utcnow()
        duration = timedelta(days=rate.duration or 1)
        last_edit = _aware(rate.last_edit_time) if rate.last_edit_time else None
        cooling_start = _aware(rate.cooling_start_time) if rate.cooling_start_time else None

        rules: List[Tuple[Callable[[], bool], EditDecision]] = [
            (lambda: last_edit is None,
             EditDecision(True, False, "first edit")),
            (lambda: cooling_start is not None and now - cooling_start <= self.cooling_period,
             EditDecision(True, True, "within cooling window")),
            (lambda: now - last_edit >= duration,
             EditDecision(True, False, "duration cycle elapsed")),
        ]
        for predicate, decision in rules:
            if predicate():
                return decision

        if identity.is_admin:
            return EditDecision(True, False, "admin override")
        return EditDecision(
            False,
            False,
            "Rate is locked for the current duration cycle; wait for the next "
            "duration cycle before editing.",
        )

    def apply_edit(
        self,
        rate: VariantRate,
        changes: Mapping[str, Any],
        identity: Identity,
        decision: EditDecision,
        now: Optional[datetime] = None,
    ) -> VariantRate:
        """
        Apply an allowed edit.  The caller has already resolved any derived
        reference fields (associate_company_id) into `changes`.
        """
        if not decision.allowed:
            raise ValueError(decision.reason)
        now = now or _utcnow()
        was_live = rate.is_live

        for key, value in changes.items():
            setattr(rate, key, value)

        rate.cooling_start_time = now
        if not decision.is_cooling_edit:
            rate.last_edit_time = now

        if not identity.is_admin:
            rate.is_live = not decision.is_cooling_edit

        if rate.is_live and not was_live:
            self.stamp_first_live(rate, now)
        rate.updated_at = now
        return rate

    def stamp_first_live(self, rate: VariantRate, now: Optional[datetime] = None) -> VariantRate:
        """Set last_live_at the first time a rate is live; never overwritten."""
        if rate.is_live and rate.last_live_at is None:
            rate.last_live_at = now or _utcnow()
        return rate

    def check_delete(
        self, rate: VariantRate, identity: Identity, now: Optional[datetime] = None
    ) -> None:
        """Non-Admins may only delete a rate shortly after editing it."""
        if identity.is_admin:
            return
        if rate.last_edit_time is None:
            raise ValueError("Deletion not allowed: edit timestamp is missing.")
        now = now or _utcnow()
        if now - _aware(rate.last_edit_time) > self.delete_window:
            raise ValueError(
                "Deletion not allowed: rate was edited more than "
                f"{int(self.delete_window.total_seconds() // 60)} minutes ago."
            )

    # --- Expiry -------------------------------------------------------------

    def is_expired(self, rate: VariantRate, now: Optional[datetime] = None) -> bool:
        if not rate.is_live or rate.last_live_at is None:
            return False
        now = now or _utcnow()
        return _aware(rate.last_live_at) + timedelta(days=rate.duration or 1) < now

    def expire(self, rate: VariantRate, now: Optional[datetime] = None) -> VariantRate:
        rate.is_live = False
        rate.updated_at = now or _utcnow()
        return rate


# ---------------------------------------------------------------------------
# EnquiryPricingService
# ---------------------------------------------------------------------------

@dataclass
class EnquiryView:
    rate: float
    commission: Optional[float]
    mediator_commission: Optional[float]


class EnquiryPricingService:
    """
    Freezes pricing onto an enquiry at creation and masks it on read.
    """

    def create_enquiry(
        self,
        name: str,
        phone_number: str,
        variant_rate: VariantRate,
        displayed_rate: Optional[DisplayedRate] = None,
        product_variant_id: Optional[uuid.UUID] = None,
        status_id: Optional[uuid.UUID] = None,
    ) -> Enquiry:
        """Create and return a new Enquiry (unsaved) with its pricing snapshot."""
        if variant_rate.associate_id is None:
            raise ValueError(
                f"Variant rate {variant_rate.id} has no associate; cannot price an enquiry."
            )
        enquiry = Enquiry(
            name=name,
            phone_number=phone_number,
            variant_rate_id=variant_rate.id,
            product_variant_id=product_variant_id or variant_rate.product_variant_id,
            product_associate_id=variant_rate.associate_id,
            status_id=status_id,
            rate=variant_rate.rate or 0.0,
            commission=variant_rate.commission or 0.0,
        )
        if displayed_rate is not None and displayed_rate.associate_id is not None:
            enquiry.display_rate_id = displayed_rate.id
            enquiry.mediator_associate_id = displayed_rate.associate_id
            enquiry.mediator_commission = displayed_rate.commission or 0.0
        return enquiry

    def view(self, enquiry: Enquiry, viewer: Optional[Identity]) -> EnquiryView:
        is_admin = viewer is not None and viewer.is_admin
        is_product_associate = (
            viewer is not None and viewer.user_id == enquiry.product_associate_id
        )
        rate = enquiry.rate
        if not is_admin and not is_product_associate:
            rate += enquiry.commission
        if is_admin:
            return EnquiryView(rate, enquiry.commission, enquiry.mediator_commission)
        return EnquiryView(rate, None, None)


# ---------------------------------------------------------------------------
# ActivityStatusService
# ---------------------------------------------------------------------------

# Candidate activity data: model field names, plus "status" (a requested
# label) and "unblock" (flag) taken from the incoming payload.
Candidate = Mapping[str, Any]
StatusResolver = Callable[[str], uuid.UUID]


@dataclass
class _StatusRule:
    name: str
    applies: Callable[[Candidate, Optional[Role]], bool]
    outcome: Callable[[Candidate, StatusResolver], uuid.UUID]


def _requested_transition(candidate: Candidate) -> Optional[str]:
    requested = candidate.get("status")
    if isinstance(requested, str) and requested in {s.value for s in TRANSITION_STATUSES}:
        return requested
    return None


_ACTIVITY_STATUS_RULES: List[_StatusRule] = [
    _StatusRule(
        "no target date",
        lambda c, role: not c.get("target_operation_date"),
        lambda c, resolve: resolve(ActivityStatusName.NO_TARGET.value),
    ),
    _StatusRule(
        "no forecast date",
        lambda c, role: not c.get("forecast_date"),
        lambda c, resolve: resolve(ActivityStatusName.TO_BE_PLANNED.value),
    ),
    _StatusRule(
        "no workers",
        lambda c, role: not c.get("worker_ids"),
        lambda c, resolve: resolve(ActivityStatusName.TO_BE_ASSIGNED.value),
    ),
    _StatusRule(
        "requested transition",
        lambda c, role: _requested_transition(c) is not None,
        lambda c, resolve: resolve(_requested_transition(c)),
    ),
    _StatusRule(
        "admin unblock",
        lambda c, role: role is Role.ADMIN
        and bool(c.get("unblock"))
        and c.get("previous_status_id") is not None,
        lambda c, resolve: c["previous_status_id"],
    ),
    _StatusRule(
        "default",
        lambda c, role: True,
        lambda c, resolve: resolve(ActivityStatusName.IN_PROGRESS.value),
    ),
]


class ActivityStatusService:
    """
    Derives an activity's status from its own fields.

    The status is never taken verbatim from a caller except for the five
    transition labels (Submitted / Approved / Rejected / Suspended / Blocked),
    and even those only once the planning prerequisites are met.
    """

    rules = _ACTIVITY_STATUS_RULES

    def merge(self, current: Optional[Activity], patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Existing fields form the base; the patch overrides field by field."""
        merged: Dict[str, Any] = dict(vars(current)) if current is not None else {}
        # The stored status is an id; only a label from the patch may request a transition.
        merged.pop("status_id", None)
        merged.update(patch)
        return merged

    def determine_status(
        self,
        patch: Mapping[str, Any],
        current: Optional[Activity],
        role: Optional[Role],
        resolve: StatusResolver,
    ) -> uuid.UUID:
        candidate = self.merge(current, patch)
        return self.matching_rule(candidate, role).outcome(candidate, resolve)

    def matching_rule(self, candidate: Candidate, role: Optional[Role]) -> _StatusRule:
        for rule in self.rules:
            if rule.applies(candidate, role):
                return rule
        return self.rules[-1]

    def apply_status(self, activity: Activity, new_status_id: uuid.UUID) -> bool:
        """
        Write the derived status.  When it differs from the stored one the
        stored id is kept as previous_status_id first.  Returns True if the
        status changed.
        """
        if activity.status_id == new_status_id:
            return False
        if activity.status_id is not None:
            activity.previous_status_id = activity.status_id
        activity.status_id = new_status_id
        activity.updated_at = _utcnow()
        return True

    def generate_title(self, project: Project, existing_count: int) -> str:
        prefix = project.custom_id or "ACT"
        return f"{prefix}-{existing_count + 1:03d}"


# ---------------------------------------------------------------------------
# ProjectStatusService
# ---------------------------------------------------------------------------

_ProjectRule = Tuple[Callable[[List[str]], bool], ProjectStatusName]

_APPROVED = ActivityStatusName.APPROVED.value
_SUSPENDED = ActivityStatusName.SUSPENDED.value
_BLOCKED = ActivityStatusName.BLOCKED.value

_PROJECT_STATUS_RULES: List[_ProjectRule] = [
    (lambda names: bool(names) and all(n == _APPROVED for n in names),
     ProjectStatusName.CLOSED),
    (lambda names: _SUSPENDED in names, ProjectStatusName.SUSPENDED),
    (lambda names: _BLOCKED in names, ProjectStatusName.BLOCKED),
    (lambda names: not (names and all(n == _APPROVED for n in names))
        and _SUSPENDED not in names
        and _BLOCKED not in names,
     ProjectStatusName.OPEN),
]


class ProjectStatusService:
    """
    Derives a project's status from its activities' status names.

    Unlike the activity rules these are not first-match: every rule whose
    condition holds produces its own write, in order, and the last write
    wins.  A project with both a Suspended and a Blocked activity is written
    Suspended and then Blocked.
    """

    rules = _PROJECT_STATUS_RULES

    def status_writes(self, activity_status_names: List[str]) -> List[ProjectStatusName]:
        return [status for condition, status in self.rules if condition(activity_status_names)]

    def final_status(self, activity_status_names: List[str]) -> Optional[ProjectStatusName]:
        writes = self.status_writes(activity_status_names)
        return writes[-1] if writes else None
