"""Shared fixtures: an isolated in-memory store with a small catalogue."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from application import StatusCaches
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import (
    Associate,
    AssociateCompany,
    Identity,
    Product,
    ProductVariant,
    Role,
    SubCategory,
    VariantRate,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@dataclass
class Catalog:
    acme: AssociateCompany
    globex: AssociateCompany
    owner: Associate
    reseller: Associate
    grains: SubCategory
    spices: SubCategory
    rice: Product
    pepper: Product
    basmati: ProductVariant
    sona: ProductVariant
    black_pepper: ProductVariant


@pytest.fixture
def db() -> InMemoryDatabase:
    d = InMemoryDatabase()
    d.seed_statuses()
    return d


@pytest.fixture
def uow(db) -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork(db)


@pytest.fixture
def caches() -> StatusCaches:
    return StatusCaches()


@pytest.fixture
def catalog(db) -> Catalog:
    acme = AssociateCompany(name="Acme Traders")
    globex = AssociateCompany(name="Globex")
    owner = Associate(name="Asha", associate_company_id=acme.id)
    reseller = Associate(name="Ravi", associate_company_id=globex.id)
    grains = SubCategory(name="Grains")
    spices = SubCategory(name="Spices")
    rice = Product(name="Rice", sub_category_id=grains.id)
    pepper = Product(name="Pepper", sub_category_id=spices.id)
    basmati = ProductVariant(name="Basmati", product_id=rice.id)
    sona = ProductVariant(name="Sona Masoori", product_id=rice.id)
    black_pepper = ProductVariant(name="Black Pepper", product_id=pepper.id)

    for company in (acme, globex):
        db.associate_companies.put(company)
    for associate in (owner, reseller):
        db.associates.put(associate)
    for sub in (grains, spices):
        db.sub_categories.put(sub)
    for product in (rice, pepper):
        db.products.put(product)
    for variant in (basmati, sona, black_pepper):
        db.product_variants.put(variant)

    return Catalog(acme, globex, owner, reseller, grains, spices, rice, pepper, basmati, sona, black_pepper)


@pytest.fixture
def admin() -> Identity:
    return Identity(user_id=uuid.uuid4(), role=Role.ADMIN)


@pytest.fixture
def owner_identity(catalog) -> Identity:
    return Identity(user_id=catalog.owner.id, role=Role.ASSOCIATE)


@pytest.fixture
def reseller_identity(catalog) -> Identity:
    return Identity(user_id=catalog.reseller.id, role=Role.ASSOCIATE)


@pytest.fixture
def customer() -> Identity:
    return Identity(user_id=uuid.uuid4(), role=Role.CUSTOMER)


@pytest.fixture
def make_rate(db, catalog):
    """Persist a VariantRate owned by `catalog.owner` unless told otherwise."""

    def _make(**overrides) -> VariantRate:
        fields = dict(
            rate=100.0,
            commission=10.0,
            product_variant_id=catalog.basmati.id,
            associate_id=catalog.owner.id,
            associate_company_id=catalog.acme.id,
            created_at=T0,
            updated_at=T0,
        )
        fields.update(overrides)
        rate = VariantRate(**fields)
        db.variant_rates.put(rate)
        return rate

    return _make
