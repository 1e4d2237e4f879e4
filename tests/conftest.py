# tests/conftest.py
"""
Shared fixtures: throwaway DuckDB warehouse and source catalogue files, an
in-memory stand-in for the identity service, and a factory wiring up the
resolvers the way etl.py does.
"""
import copy
from types import SimpleNamespace

import duckdb
import pytest

import setup_database as db_setup
from access_resolver import AccessResolver
from content_resolver import ContentResolver
from dimensions import DimensionResolver, UseridRegistry, build_cache_registry
from hierarchy_resolver import HierarchyResolver
from identity_store import IdentityStore
from license_resolver import LicenseResolver
from sequencer import Sequencer
from source_catalog import SourceCatalog
from warehouse import Warehouse


class FakeIdentityService:
    """Canned identity-service answers, with a log of every lookup made."""

    def __init__(self, identities=None, paths=None, licenses=None, subscriptions=None, products=None):
        self.identities = identities or {}
        self.paths = paths or {}
        self.licenses = licenses or {}
        self.subscriptions = subscriptions or {}
        self.products = products or {}
        self.calls = []

    def read_identity(self, identity_id):
        self.calls.append(("identity", identity_id))
        return copy.deepcopy(self.identities.get(identity_id))

    def read_identity_paths(self, identity_id):
        self.calls.append(("paths", identity_id))
        if identity_id not in self.identities:
            return None
        return copy.deepcopy(self.paths.get(identity_id, [[identity_id]]))

    def read_license(self, license_id):
        self.calls.append(("license", license_id))
        return copy.deepcopy(self.licenses.get(license_id))

    def read_subscription(self, subscription_id):
        self.calls.append(("subscription", subscription_id))
        return copy.deepcopy(self.subscriptions.get(subscription_id))

    def read_product(self, product_id):
        self.calls.append(("product", product_id))
        return copy.deepcopy(self.products.get(product_id))

    def count(self, kind):
        return sum(1 for k, _ in self.calls if k == kind)


def identity(classification, country=None, share_subscriptions=False, include_identity=True):
    return {
        "classification": classification,
        "country": country,
        "share_subscriptions": share_subscriptions,
        "include_identity": include_identity,
    }


@pytest.fixture()
def warehouse_path(tmp_path):
    db_path = tmp_path / "test_warehouse.db"
    db_setup.setup_database(str(db_path))
    return str(db_path)


@pytest.fixture()
def warehouse(warehouse_path):
    wh = Warehouse(warehouse_path, reconnect_retries=1, reconnect_interval=0)
    try:
        yield wh
    finally:
        wh.close()


@pytest.fixture()
def source_con(tmp_path):
    """Writable connection to an empty source catalogue."""
    db_path = tmp_path / "test_source.db"
    db_setup.setup_source_database(str(db_path))
    con = duckdb.connect(str(db_path), read_only=False)
    try:
        yield con
    finally:
        con.close()


@pytest.fixture()
def catalog(source_con):
    return SourceCatalog(connection=source_con)


@pytest.fixture()
def fake_service():
    return FakeIdentityService()


@pytest.fixture()
def make_stack(catalog):
    """Build the resolver stack over a warehouse and identity service."""

    def _make(warehouse, service, **access_opts):
        sequencer = Sequencer(warehouse)
        caches = build_cache_registry()
        resolver = DimensionResolver(warehouse, sequencer, caches)
        store = IdentityStore(service, warehouse, sequencer, resolver)
        return SimpleNamespace(
            warehouse=warehouse,
            service=service,
            sequencer=sequencer,
            caches=caches,
            resolver=resolver,
            store=store,
            userids=UseridRegistry(warehouse),
            hierarchy=HierarchyResolver(
                service, store, warehouse, sequencer, resolver, caches, session_batch_size=10
            ),
            licenses=LicenseResolver(service, store, warehouse, sequencer, caches),
            content=ContentResolver(warehouse, sequencer, catalog, caches),
            access=AccessResolver(service, store, resolver, catalog, **access_opts),
            catalog=catalog,
        )

    return _make
