"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

Records are kept in plain Python dicts keyed by UUID and queried with the
same document-store dialect the application layer emits ($in, $regex,
$gte/$lte, $ne, $and/$or).  Suitable for local development, demos, and
integration testing without needing a real database.

To swap in a real document store later, implement the same Abstract*
interfaces from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: MongoUnitOfWork(client)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Tuple

from application import (
    AbstractAssociateRepository,
    AbstractDocumentRepository,
    AbstractErrorLogRepository,
    AbstractProductRepository,
    AbstractProductVariantRepository,
    AbstractReferenceRepository,
    AbstractStatusHistoryRepository,
    AbstractUnitOfWork,
    Query,
)
from model import (
    ActivityStatus,
    ActivityStatusName,
    EnquiryProcessStatus,
    ProjectStatus,
    ProjectStatusName,
)
from service import normalize_name

DEFAULT_ENQUIRY_STATUSES = ("New", "Contacted", "Negotiating", "Converted", "Closed")


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: uuid.UUID) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


# ---------------------------------------------------------------------------
# Query matching
# ---------------------------------------------------------------------------

def _aligned(stored: Any, bound: Any) -> Tuple[Any, Any]:
    """Line a stored value up with a range bound (datetime vs. date)."""
    if isinstance(stored, datetime):
        if stored.tzinfo is None:
            stored = stored.replace(tzinfo=timezone.utc)
        if not isinstance(bound, datetime) and isinstance(bound, date):
            return stored.date(), bound
    elif isinstance(stored, date) and isinstance(bound, datetime):
        return stored, bound.date()
    return stored, bound


def _match_value(stored: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                if isinstance(stored, list):
                    if not any(v in operand for v in stored):
                        return False
                elif stored not in operand:
                    return False
            elif op == "$ne":
                if stored == operand:
                    return False
            elif op == "$regex":
                flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
                if stored is None or not re.search(operand, str(stored), flags):
                    return False
            elif op == "$options":
                continue
            elif op in ("$gte", "$lte"):
                if stored is None:
                    return False
                value, bound = _aligned(stored, operand)
                if op == "$gte" and value < bound:
                    return False
                if op == "$lte" and value > bound:
                    return False
            else:
                raise ValueError(f"Unsupported query operator {op!r}")
        return True
    if isinstance(stored, list) and not isinstance(condition, list):
        return condition in stored
    return stored == condition


def matches(obj: Any, query: Query) -> bool:
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(obj, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(obj, sub) for sub in condition):
                return False
        elif not _match_value(getattr(obj, key, None), condition):
            return False
    return True


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process: restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.associate_companies: _Store = _Store()
        self.associates:          _Store = _Store()
        self.sub_categories:      _Store = _Store()
        self.products:            _Store = _Store()
        self.product_variants:    _Store = _Store()
        self.variant_rates:       _Store = _Store()
        self.displayed_rates:     _Store = _Store()
        self.enquiries:           _Store = _Store()
        self.enquiry_statuses:    _Store = _Store()
        self.projects:            _Store = _Store()
        self.project_statuses:    _Store = _Store()
        self.activities:          _Store = _Store()
        self.activity_statuses:   _Store = _Store()
        self.status_history:      _Store = _Store()
        self.errors:              _Store = _Store()

    def seed_statuses(self) -> None:
        """Create the status reference records that are not present yet."""
        seeds = (
            (self.activity_statuses, ActivityStatus, [s.value for s in ActivityStatusName]),
            (self.project_statuses, ProjectStatus, [s.value for s in ProjectStatusName]),
            (self.enquiry_statuses, EnquiryProcessStatus, list(DEFAULT_ENQUIRY_STATUSES)),
        )
        for store, record_type, names in seeds:
            existing = {normalize_name(r.name) for r in store.all()}
            for name in names:
                if normalize_name(name) not in existing:
                    store.put(record_type(name=name))


# Module-level singleton: shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryDocumentRepository(AbstractDocumentRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, entity_id):         return self._s.fetch(entity_id)
    def save(self, entity):           self._s.put(entity)
    def delete(self, entity_id):      self._s.remove(entity_id)

    def find(self, query, skip=0, limit=None):
        found = [o for o in self._s.all() if matches(o, query)]
        end = None if limit is None else skip + limit
        return found[skip:end]

    def count(self, query):
        return sum(1 for o in self._s.all() if matches(o, query))


class InMemoryReferenceRepository(AbstractReferenceRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, entity_id):         return self._s.fetch(entity_id)
    def list_all(self):               return self._s.all()
    def save(self, entity):           self._s.put(entity)

    def list_by_name(self, name):
        wanted = normalize_name(name)
        return [r for r in self._s.all() if normalize_name(r.name) == wanted]


class InMemoryAssociateRepository(InMemoryReferenceRepository, AbstractAssociateRepository):
    def list_for_companies(self, company_ids: Iterable[uuid.UUID]):
        ids = set(company_ids)
        return [a for a in self._s.all() if a.associate_company_id in ids]


class InMemoryProductRepository(InMemoryReferenceRepository, AbstractProductRepository):
    def list_for_sub_categories(self, sub_category_ids: Iterable[uuid.UUID]):
        ids = set(sub_category_ids)
        return [p for p in self._s.all() if p.sub_category_id in ids]


class InMemoryProductVariantRepository(InMemoryReferenceRepository, AbstractProductVariantRepository):
    def list_for_products(self, product_ids: Iterable[uuid.UUID]):
        ids = set(product_ids)
        return [v for v in self._s.all() if v.product_id in ids]


class InMemoryStatusHistoryRepository(AbstractStatusHistoryRepository):
    def __init__(self, store: _Store): self._s = store
    def save(self, entry):            self._s.put(entry)
    def list_for_entity(self, entity_id):
        return [h for h in self._s.all() if h.entity_id == entity_id]


class InMemoryErrorLogRepository(AbstractErrorLogRepository):
    def __init__(self, store: _Store): self._s = store
    def save(self, entry):            self._s.put(entry)
    def list_all(self):               return self._s.all()


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wires all in-memory repositories against the shared _db singleton.
    commit() and rollback() are no-ops because Python dicts are mutated
    in-place; a real DB implementation would flush / rollback a session here.
    """

    def __init__(self, db: Optional[InMemoryDatabase] = None):
        d = db or _db
        self.associate_companies = InMemoryReferenceRepository(d.associate_companies)
        self.associates          = InMemoryAssociateRepository(d.associates)
        self.sub_categories      = InMemoryReferenceRepository(d.sub_categories)
        self.products            = InMemoryProductRepository(d.products)
        self.product_variants    = InMemoryProductVariantRepository(d.product_variants)
        self.variant_rates       = InMemoryDocumentRepository(d.variant_rates)
        self.displayed_rates     = InMemoryDocumentRepository(d.displayed_rates)
        self.enquiries           = InMemoryDocumentRepository(d.enquiries)
        self.enquiry_statuses    = InMemoryReferenceRepository(d.enquiry_statuses)
        self.projects            = InMemoryDocumentRepository(d.projects)
        self.project_statuses    = InMemoryReferenceRepository(d.project_statuses)
        self.activities          = InMemoryDocumentRepository(d.activities)
        self.activity_statuses   = InMemoryReferenceRepository(d.activity_statuses)
        self.status_history      = InMemoryStatusHistoryRepository(d.status_history)
        self.errors              = InMemoryErrorLogRepository(d.errors)

    def commit(self):   pass
    def rollback(self): pass


def seed_statuses(db: Optional[InMemoryDatabase] = None) -> None:
    """Seed the status reference records into `db` (the shared store by default)."""
    (db or _db).seed_statuses()
