"""
Domain rule tests for service.py.  No repositories involved: every service
is exercised on plain model instances.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta

import pytest

from model import (
    Activity,
    ActivityStatusName,
    DisplayedRate,
    Enquiry,
    Identity,
    Project,
    ProjectStatusName,
    Role,
    VariantRate,
)
from service import (
    ActivityStatusService,
    EnquiryPricingService,
    EnquiryView,
    ProjectStatusService,
    RateVisibilityService,
    StatusNameCache,
    VisibilityTier,
    normalize_name,
)

from conftest import T0

OWNER_ID = uuid.uuid4()
RESELLER_ID = uuid.uuid4()
ADMIN = Identity(uuid.uuid4(), Role.ADMIN)
OWNER = Identity(OWNER_ID, Role.ASSOCIATE)
RESELLER = Identity(RESELLER_ID, Role.ASSOCIATE)
CUSTOMER = Identity(uuid.uuid4(), Role.CUSTOMER)

STATUS_IDS = {s.value: uuid.uuid4() for s in ActivityStatusName}


def resolve(name: str) -> uuid.UUID:
    return STATUS_IDS[name]


def _rate(**kw) -> VariantRate:
    fields = dict(rate=100.0, commission=10.0, associate_id=OWNER_ID)
    fields.update(kw)
    return VariantRate(**fields)


# ---------------------------------------------------------------------------
# Name normalisation & status cache
# ---------------------------------------------------------------------------

class TestNormalizeName:
    def test_underscores_whitespace_and_case(self):
        assert normalize_name("   OBAOL_supreme   ") == "obaol supreme"

    def test_collapses_inner_whitespace(self):
        assert normalize_name("Acme \t  Traders") == "acme traders"


class TestStatusNameCache:
    def test_loads_once_per_normalised_name(self):
        cache = StatusNameCache()
        calls = []
        status_id = uuid.uuid4()

        def loader(name):
            calls.append(name)
            return status_id

        assert cache.get_or_load("In Progress", loader) == status_id
        assert cache.get_or_load("  in_progress ", loader) == status_id
        assert calls == ["In Progress"]
        assert len(cache) == 1

    def test_missing_names_are_not_cached(self):
        cache = StatusNameCache()
        assert cache.get_or_load("Nope", lambda name: None) is None
        assert len(cache) == 0

    def test_clear(self):
        cache = StatusNameCache()
        cache.get_or_load("Open", lambda name: uuid.uuid4())
        cache.clear()
        assert len(cache) == 0


# ---------------------------------------------------------------------------
# Rate masking
# ---------------------------------------------------------------------------

class TestVariantRateMasking:
    svc = RateVisibilityService()

    def test_admin_sees_raw_figures(self):
        view = self.svc.mask_variant_rate(_rate(), ADMIN)
        assert (view.rate, view.commission, view.tier) == (100.0, 10.0, VisibilityTier.FULL)

    def test_owner_sees_base_rate(self):
        view = self.svc.mask_variant_rate(_rate(), OWNER)
        assert view.rate == 100.0
        assert view.commission == 10.0
        assert view.tier is VisibilityTier.OWNER

    @pytest.mark.parametrize("viewer", [RESELLER, CUSTOMER, None])
    def test_everyone_else_sees_commission_folded_in(self, viewer):
        view = self.svc.mask_variant_rate(_rate(), viewer)
        assert view.rate == 110.0
        assert view.commission is None
        assert view.tier is VisibilityTier.MASKED

    def test_missing_commission_counts_as_zero(self):
        assert self.svc.mask_variant_rate(_rate(commission=None), CUSTOMER).rate == 100.0

    def test_masking_does_not_touch_the_record(self):
        rate = _rate()
        self.svc.mask_variant_rate(rate, CUSTOMER)
        assert (rate.rate, rate.commission) == (100.0, 10.0)


class TestDisplayedRateMasking:
    svc = RateVisibilityService()
    base = VariantRate(rate=100.0, commission=10.0, associate_id=OWNER_ID, is_live=True)

    def _displayed(self):
        return DisplayedRate(variant_rate_id=self.base.id, commission=5.0, associate_id=RESELLER_ID)

    def test_displayed_owner_does_not_see_own_markup_added(self):
        view = self.svc.mask_displayed_rate(self._displayed(), self.base, RESELLER)
        assert view.rate == 110.0
        assert view.commission == 0.0
        assert view.variant_commission is None

    def test_others_see_both_commissions_added(self):
        view = self.svc.mask_displayed_rate(self._displayed(), self.base, CUSTOMER)
        assert view.rate == 115.0
        assert view.commission == 0.0

    def test_admin_sees_commissions(self):
        view = self.svc.mask_displayed_rate(self._displayed(), self.base, ADMIN)
        assert view.rate == 115.0
        assert view.commission == 5.0
        assert view.variant_commission == 10.0


# ---------------------------------------------------------------------------
# Edit cooldown
# ---------------------------------------------------------------------------

class TestEditDecision:
    svc = RateVisibilityService()

    def test_first_edit_is_allowed(self):
        decision = self.svc.decide_edit(_rate(), OWNER, T0)
        assert decision.allowed and not decision.is_cooling_edit

    def test_edit_inside_cooling_window(self):
        rate = _rate(last_edit_time=T0, cooling_start_time=T0)
        decision = self.svc.decide_edit(rate, OWNER, T0 + timedelta(minutes=15))
        assert decision.allowed and decision.is_cooling_edit

    def test_edit_after_full_duration(self):
        rate = _rate(duration=2, last_edit_time=T0, cooling_start_time=T0)
        decision = self.svc.decide_edit(rate, OWNER, T0 + timedelta(days=2))
        assert decision.allowed and not decision.is_cooling_edit

    def test_edit_inside_duration_is_locked(self):
        rate = _rate(last_edit_time=T0, cooling_start_time=T0)
        decision = self.svc.decide_edit(rate, OWNER, T0 + timedelta(minutes=16))
        assert not decision.allowed
        assert "next duration cycle" in decision.reason

    def test_admin_overrides_the_lock(self):
        rate = _rate(last_edit_time=T0, cooling_start_time=T0)
        assert self.svc.decide_edit(rate, ADMIN, T0 + timedelta(hours=1)).allowed

    def test_configured_cooling_period(self):
        svc = RateVisibilityService(cooling_period=timedelta(minutes=5))
        rate = _rate(last_edit_time=T0, cooling_start_time=T0)
        assert not svc.decide_edit(rate, OWNER, T0 + timedelta(minutes=6)).allowed


class TestApplyEdit:
    svc = RateVisibilityService()

    def test_new_cycle_edit_goes_live_and_stamps_first_live(self):
        rate = _rate()
        decision = self.svc.decide_edit(rate, OWNER, T0)
        self.svc.apply_edit(rate, {"rate": 120.0}, OWNER, decision, T0)
        assert rate.rate == 120.0
        assert rate.is_live is True
        assert rate.last_edit_time == T0
        assert rate.cooling_start_time == T0
        assert rate.last_live_at == T0

    def test_cooling_edit_keeps_last_edit_time_and_drafts(self):
        rate = _rate(is_live=True, last_edit_time=T0, cooling_start_time=T0, last_live_at=T0)
        later = T0 + timedelta(seconds=1)
        decision = self.svc.decide_edit(rate, OWNER, later)
        self.svc.apply_edit(rate, {"rate": 90.0}, OWNER, decision, later)
        assert rate.last_edit_time == T0
        assert rate.cooling_start_time == later
        assert rate.is_live is False
        assert rate.last_live_at == T0

    def test_admin_is_live_is_taken_as_given(self):
        rate = _rate(last_edit_time=T0, cooling_start_time=T0)
        later = T0 + timedelta(seconds=1)
        decision = self.svc.decide_edit(rate, ADMIN, later)
        self.svc.apply_edit(rate, {"is_live": True}, ADMIN, decision, later)
        assert rate.is_live is True

    def test_rejected_decision_raises(self):
        rate = _rate(last_edit_time=T0, cooling_start_time=T0)
        later = T0 + timedelta(hours=1)
        decision = self.svc.decide_edit(rate, OWNER, later)
        with pytest.raises(ValueError):
            self.svc.apply_edit(rate, {"rate": 1.0}, OWNER, decision, later)


class TestDeleteWindowAndExpiry:
    svc = RateVisibilityService()

    def test_owner_may_delete_shortly_after_editing(self):
        self.svc.check_delete(_rate(last_edit_time=T0), OWNER, T0 + timedelta(minutes=10))

    def test_owner_may_not_delete_later(self):
        with pytest.raises(ValueError, match="more than 15 minutes"):
            self.svc.check_delete(_rate(last_edit_time=T0), OWNER, T0 + timedelta(minutes=20))

    def test_missing_edit_time_blocks_delete(self):
        with pytest.raises(ValueError, match="missing"):
            self.svc.check_delete(_rate(), OWNER, T0)

    def test_admin_may_always_delete(self):
        self.svc.check_delete(_rate(), ADMIN, T0)

    def test_expiry_uses_first_live_plus_duration(self):
        rate = _rate(is_live=True, last_live_at=T0, duration=2)
        assert not self.svc.is_expired(rate, T0 + timedelta(days=2))
        assert self.svc.is_expired(rate, T0 + timedelta(days=2, seconds=1))

    def test_not_live_never_expires(self):
        assert not self.svc.is_expired(_rate(last_live_at=T0), T0 + timedelta(days=30))


# ---------------------------------------------------------------------------
# Enquiry pricing
# ---------------------------------------------------------------------------

class TestEnquiryPricing:
    svc = EnquiryPricingService()

    def test_snapshot_copies_rate_and_markup(self):
        base = _rate(product_variant_id=uuid.uuid4())
        displayed = DisplayedRate(variant_rate_id=base.id, commission=4.0, associate_id=RESELLER_ID)
        enquiry = self.svc.create_enquiry("Meera", "9876543210", base, displayed)
        assert (enquiry.rate, enquiry.commission, enquiry.mediator_commission) == (100.0, 10.0, 4.0)
        assert enquiry.product_associate_id == OWNER_ID
        assert enquiry.mediator_associate_id == RESELLER_ID
        assert enquiry.product_variant_id == base.product_variant_id

    def test_rate_without_associate_is_rejected(self):
        with pytest.raises(ValueError):
            self.svc.create_enquiry("Meera", "9876543210", _rate(associate_id=None))

    def test_views(self):
        enquiry = Enquiry(rate=100.0, commission=10.0, mediator_commission=4.0, product_associate_id=OWNER_ID)
        assert self.svc.view(enquiry, ADMIN) == EnquiryView(100.0, 10.0, 4.0)
        owner_view = self.svc.view(enquiry, OWNER)
        assert (owner_view.rate, owner_view.commission) == (100.0, None)
        customer_view = self.svc.view(enquiry, CUSTOMER)
        assert (customer_view.rate, customer_view.mediator_commission) == (110.0, None)


# ---------------------------------------------------------------------------
# Activity status derivation
# ---------------------------------------------------------------------------

PLANNED = dict(
    target_operation_date=date(2024, 3, 1),
    forecast_date=date(2024, 2, 1),
    worker_ids=[uuid.uuid4()],
)


class TestActivityStatus:
    svc = ActivityStatusService()

    def _derive(self, patch, current=None, role=Role.ACTIVITY_MANAGER):
        return self.svc.determine_status(patch, current, role, resolve)

    def test_no_target_wins_over_everything(self):
        patch = dict(PLANNED, target_operation_date=None, status="Approved", unblock=True)
        assert self._derive(patch, role=Role.ADMIN) == STATUS_IDS["No Target"]

    def test_no_forecast(self):
        assert self._derive({"target_operation_date": date(2024, 3, 1)}) == STATUS_IDS["To Be Planned"]

    def test_no_workers(self):
        patch = dict(PLANNED, worker_ids=[])
        assert self._derive(patch) == STATUS_IDS["To Be Assigned"]

    def test_requested_transition(self):
        assert self._derive(dict(PLANNED, status="Submitted")) == STATUS_IDS["Submitted"]

    def test_other_labels_are_ignored(self):
        assert self._derive(dict(PLANNED, status="No Target")) == STATUS_IDS["In Progress"]

    def test_default_in_progress(self):
        assert self._derive(dict(PLANNED)) == STATUS_IDS["In Progress"]

    def test_patch_overrides_stored_fields(self):
        current = Activity(**PLANNED, status_id=STATUS_IDS["In Progress"])
        assert self._derive({"worker_ids": []}, current) == STATUS_IDS["To Be Assigned"]

    def test_stored_status_does_not_request_a_transition(self):
        current = Activity(**PLANNED, status_id=STATUS_IDS["Blocked"])
        assert self._derive({}, current) == STATUS_IDS["In Progress"]

    def test_admin_unblock_restores_previous(self):
        current = Activity(
            **PLANNED,
            status_id=STATUS_IDS["Blocked"],
            previous_status_id=STATUS_IDS["Submitted"],
        )
        assert self._derive({"unblock": True}, current, Role.ADMIN) == STATUS_IDS["Submitted"]

    def test_unblock_needs_admin_and_a_previous_status(self):
        current = Activity(**PLANNED, status_id=STATUS_IDS["Blocked"], previous_status_id=STATUS_IDS["Submitted"])
        assert self._derive({"unblock": True}, current, Role.ACTIVITY_MANAGER) == STATUS_IDS["In Progress"]
        bare = Activity(**PLANNED, status_id=STATUS_IDS["Blocked"])
        assert self._derive({"unblock": True}, bare, Role.ADMIN) == STATUS_IDS["In Progress"]

    def test_apply_status_keeps_previous(self):
        activity = Activity(status_id=STATUS_IDS["To Be Planned"])
        assert self.svc.apply_status(activity, STATUS_IDS["In Progress"]) is True
        assert activity.previous_status_id == STATUS_IDS["To Be Planned"]
        assert self.svc.apply_status(activity, STATUS_IDS["In Progress"]) is False

    def test_generate_title(self):
        assert self.svc.generate_title(Project(custom_id="PRJ"), 0) == "PRJ-001"
        assert self.svc.generate_title(Project(), 11) == "ACT-012"


# ---------------------------------------------------------------------------
# Project status propagation
# ---------------------------------------------------------------------------

class TestProjectStatus:
    svc = ProjectStatusService()

    @pytest.mark.parametrize(
        "names, final",
        [
            (["Approved", "Approved"], ProjectStatusName.CLOSED),
            (["Approved", "Blocked"], ProjectStatusName.BLOCKED),
            (["Approved", "In Progress"], ProjectStatusName.OPEN),
            (["Suspended", "Blocked"], ProjectStatusName.BLOCKED),
            ([], ProjectStatusName.OPEN),
        ],
    )
    def test_final_status(self, names, final):
        assert self.svc.final_status(names) is final

    def test_every_matching_rule_writes(self):
        assert self.svc.status_writes(["Suspended", "Blocked"]) == [
            ProjectStatusName.SUSPENDED,
            ProjectStatusName.BLOCKED,
        ]
