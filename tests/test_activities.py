"""
Activity status derivation through the use cases, and propagation of the
result to the owning project.
"""

from __future__ import annotations

import uuid
from datetime import date

import pytest

from application import (
    AuthorizationError,
    CreateActivityCommand,
    CreateActivityUseCase,
    CreateProjectCommand,
    CreateProjectUseCase,
    DeleteActivityUseCase,
    GetProjectUseCase,
    ListActivitiesUseCase,
    ListQuery,
    ListStatusHistoryUseCase,
    NotFoundError,
    PropagateProjectStatusUseCase,
    UpdateActivityCommand,
    UpdateActivityUseCase,
    ValidationError,
)
from model import Identity, Role

PLANNED = {
    "target_operation_date": date(2024, 3, 1),
    "forecast_date": date(2024, 2, 1),
    "worker_ids": [uuid.UUID("11111111-1111-1111-1111-111111111111")],
}


@pytest.fixture
def manager() -> Identity:
    return Identity(user_id=uuid.uuid4(), role=Role.ACTIVITY_MANAGER)


@pytest.fixture
def project(uow, caches, admin):
    cmd = CreateProjectCommand(title="Warehouse fit-out", identity=admin, custom_id="PRJ")
    return CreateProjectUseCase(caches).execute(cmd, uow)


@pytest.fixture
def create(uow, caches, project, manager):
    def _create(status=None, **fields):
        cmd = CreateActivityCommand(
            project_id=uuid.UUID(project.id), identity=manager, fields=fields, status=status
        )
        return CreateActivityUseCase(caches).execute(cmd, uow)
    return _create


@pytest.fixture
def update(uow, caches, manager):
    def _update(activity_id, identity=None, status=None, unblock=False, rejection_reason=None, **changes):
        cmd = UpdateActivityCommand(
            activity_id=uuid.UUID(activity_id),
            identity=identity or manager,
            changes=changes,
            status=status,
            unblock=unblock,
            rejection_reason=rejection_reason,
        )
        return UpdateActivityUseCase(caches).execute(cmd, uow)
    return _update


def _project_status(uow, project):
    return GetProjectUseCase().execute(uuid.UUID(project.id), uow).status


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

class TestCreateActivity:
    def test_new_project_is_open(self, project):
        assert project.status == "Open"

    def test_unplanned_activity_has_no_target(self, create):
        dto = create()
        assert dto.status == "No Target"
        assert dto.title == "PRJ-001"

    def test_titles_follow_the_project_sequence(self, create):
        create()
        assert create().title == "PRJ-002"

    def test_planned_activity_with_requested_status(self, create):
        assert create(status="Submitted", **PLANNED).status == "Submitted"

    def test_requested_status_needs_the_plan(self, create):
        assert create(status="Approved", target_operation_date=date(2024, 3, 1)).status == "To Be Planned"

    def test_unknown_project(self, uow, caches, manager):
        cmd = CreateActivityCommand(project_id=uuid.uuid4(), identity=manager)
        with pytest.raises(NotFoundError):
            CreateActivityUseCase(caches).execute(cmd, uow)

    def test_anonymous_caller_is_refused(self, uow, caches, project):
        cmd = CreateActivityCommand(project_id=uuid.UUID(project.id), identity=None)
        with pytest.raises(AuthorizationError):
            CreateActivityUseCase(caches).execute(cmd, uow)

    def test_status_ids_are_cached(self, create, caches):
        create(**PLANNED)
        assert len(caches.activity) >= 1


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------

class TestUpdateActivity:
    def test_planning_progression(self, create, update):
        activity = create()
        assert update(activity.id, target_operation_date=date(2024, 3, 1)).status == "To Be Planned"
        assert update(activity.id, forecast_date=date(2024, 2, 1)).status == "To Be Assigned"
        dto = update(activity.id, worker_ids=PLANNED["worker_ids"])
        assert dto.status == "In Progress"

    def test_previous_status_is_kept(self, create, update, db):
        activity = create(**PLANNED)
        in_progress_id = db.activities[uuid.UUID(activity.id)].status_id
        dto = update(activity.id, status="Submitted")
        assert dto.previous_status_id == str(in_progress_id)

    def test_no_target_wins(self, create, update, admin):
        activity = create(**PLANNED)
        dto = update(activity.id, identity=admin, status="Approved", unblock=True, target_operation_date=None)
        assert dto.status == "No Target"

    def test_admin_unblock_restores_previous(self, create, update, admin):
        activity = create(**PLANNED)
        update(activity.id, status="Submitted")
        assert update(activity.id, status="Blocked").status == "Blocked"
        assert update(activity.id, identity=admin, unblock=True).status == "Submitted"

    def test_unblock_by_non_admin_falls_through(self, create, update):
        activity = create(**PLANNED)
        update(activity.id, status="Submitted")
        update(activity.id, status="Blocked")
        assert update(activity.id, unblock=True).status == "In Progress"

    def test_rejection_reasons_accumulate(self, create, update):
        activity = create(**PLANNED)
        update(activity.id, status="Rejected", rejection_reason="Missing photos")
        dto = update(activity.id, status="Rejected", rejection_reason="Wrong site")
        assert dto.rejection_reason == ["Missing photos", "Wrong site"]

    def test_rejection_reason_needs_a_rejection(self, create, update):
        activity = create()
        dto = update(activity.id, status="Rejected", rejection_reason="ignored")
        assert dto.status == "No Target"
        assert dto.rejection_reason == []

    def test_null_workers_clear_the_assignment(self, uow, create, update, db):
        activity = create(**PLANNED)
        dto = update(activity.id, worker_ids=None)
        assert dto.status == "To Be Assigned"
        assert dto.worker_ids == []
        assert db.activities[uuid.UUID(activity.id)].worker_ids == []

    def test_unknown_fields(self, create, update):
        activity = create()
        with pytest.raises(ValidationError):
            update(activity.id, status_id=uuid.uuid4())

    def test_deleted_activity_cannot_be_updated(self, uow, caches, create, update, admin):
        activity = create()
        DeleteActivityUseCase(caches).execute(uuid.UUID(activity.id), admin, uow)
        with pytest.raises(NotFoundError):
            update(activity.id, description="late")

    def test_history_records_changes_only(self, uow, create, update):
        activity = create(**PLANNED)
        update(activity.id, description="same status")
        update(activity.id, status="Submitted")
        entries = ListStatusHistoryUseCase().execute(uuid.UUID(activity.id), uow)
        assert [(e.previous_status, e.new_status) for e in entries] == [
            (None, "In Progress"),
            ("In Progress", "Submitted"),
        ]
        assert entries[1].change_type == "Activity Updated"
        assert entries[1].changed_role == "ActivityManager"


# ---------------------------------------------------------------------------
# Project propagation
# ---------------------------------------------------------------------------

class TestProjectPropagation:
    def test_all_approved_closes_the_project(self, uow, project, create, update):
        a = create(**PLANNED)
        b = create(**PLANNED)
        update(a.id, status="Approved")
        assert _project_status(uow, project) == "Open"
        update(b.id, status="Approved")
        assert _project_status(uow, project) == "Closed"

    def test_blocked_activity_blocks_the_project(self, uow, project, create, update):
        a = create(**PLANNED)
        b = create(**PLANNED)
        update(a.id, status="Approved")
        update(b.id, status="Blocked")
        assert _project_status(uow, project) == "Blocked"

    def test_work_in_progress_keeps_it_open(self, uow, project, create, update):
        a = create(**PLANNED)
        create(**PLANNED)
        update(a.id, status="Approved")
        assert _project_status(uow, project) == "Open"

    def test_suspended_and_blocked_both_write(self, uow, project, create, update):
        a = create(**PLANNED)
        b = create(**PLANNED)
        update(a.id, status="Blocked")
        update(b.id, status="Suspended")
        assert _project_status(uow, project) == "Blocked"

        entries = ListStatusHistoryUseCase().execute(uuid.UUID(project.id), uow)
        assert [(e.previous_status, e.new_status) for e in entries][-2:] == [
            ("Blocked", "Suspended"),
            ("Suspended", "Blocked"),
        ]

    def test_deleted_activities_are_ignored(self, uow, caches, project, create, update, admin):
        a = create(**PLANNED)
        b = create(**PLANNED)
        update(a.id, status="Approved")
        assert _project_status(uow, project) == "Open"
        DeleteActivityUseCase(caches).execute(uuid.UUID(b.id), admin, uow)
        assert _project_status(uow, project) == "Closed"

    def test_on_demand_propagation(self, uow, caches, project, create, admin, db):
        a = create(**PLANNED)
        db.projects[uuid.UUID(project.id)].status_id = None
        dto = PropagateProjectStatusUseCase(caches).execute(uuid.UUID(a.id), admin, uow)
        assert dto.status == "Open"


class TestListActivities:
    def test_deleted_are_hidden(self, uow, caches, project, create, admin):
        keep = create()
        gone = create()
        DeleteActivityUseCase(caches).execute(uuid.UUID(gone.id), admin, uow)
        page = ListActivitiesUseCase().execute(ListQuery(filters={"project": project.id}), uow)
        assert [a.id for a in page.data] == [keep.id]
