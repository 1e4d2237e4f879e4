# tests/test_dimension_resolution.py
"""
Dimension resolution: idempotent insert-or-fetch, truncation, normalisation,
cache policies, sequence reservations, and races between sibling workers.
"""
import duckdb
import pytest

from conftest import FakeIdentityService, identity
from dimension_cache import (
    CacheRegistry,
    CacheSpec,
    CachePolicy,
    NullCache,
    UnboundedCache,
    WatermarkCache,
    watermark,
)
from dimensions import (
    DIMENSIONS,
    DimensionResolver,
    UseridRegistry,
    build_cache_registry,
    date_attributes,
    page_type_short,
)
from identity_store import IdentityStore
from sequencer import Sequencer
from warehouse import PersistentConflictError, Warehouse, retry_on_conflict


@pytest.fixture()
def resolver(warehouse):
    sequencer = Sequencer(warehouse)
    return DimensionResolver(warehouse, sequencer, build_cache_registry())


def _rows(warehouse, table):
    return warehouse.fetchall(f"SELECT * FROM {table}")


def test_resolving_twice_returns_same_key(warehouse, resolver):
    first = resolver.resolve("Mozilla/5.0", DIMENSIONS["user_agent"])
    second = resolver.resolve("Mozilla/5.0", DIMENSIONS["user_agent"])
    assert first is not None
    assert first == second
    assert len(_rows(warehouse, "dim_user_agent")) == 1


def test_resolving_with_cold_cache_returns_stored_key(warehouse, resolver):
    key = resolver.resolve("/fulltext/paper.pdf", DIMENSIONS["filename"])

    fresh = DimensionResolver(warehouse, Sequencer(warehouse), build_cache_registry())
    assert fresh.resolve("/fulltext/paper.pdf", DIMENSIONS["filename"]) == key


def test_empty_and_whitespace_values_resolve_to_nothing(warehouse, resolver):
    assert resolver.resolve(None, DIMENSIONS["service"]) is None
    assert resolver.resolve("", DIMENSIONS["service"]) is None
    assert resolver.resolve("   \t", DIMENSIONS["service"]) is None
    assert _rows(warehouse, "dim_service") == []


def test_long_values_are_truncated_and_share_a_key(warehouse, resolver):
    descriptor = DIMENSIONS["filename"]
    prefix = "x" * descriptor.max_length
    key_a = resolver.resolve(prefix + "-first", descriptor)
    key_b = resolver.resolve(prefix + "-second", descriptor)

    assert key_a == key_b
    stored = warehouse.fetchall("SELECT filename FROM dim_filename")
    assert stored == [(prefix,)]


def test_normaliser_rejection_gives_no_key(warehouse, resolver):
    assert resolver.resolve("not a url", DIMENSIONS["url"]) is None
    assert resolver.resolve("http://example.org/a?b=1", DIMENSIONS["url"]) is not None
    row = warehouse.fetchone("SELECT host, path, query FROM dim_url")
    assert row == ("example.org", "/a", "b=1")


def test_country_codes_resolve_to_alpha_2(warehouse, resolver):
    key = resolver.resolve("gb", DIMENSIONS["country"])
    assert resolver.resolve("GB", DIMENSIONS["country"]) == key
    assert resolver.resolve("GBR", DIMENSIONS["country"]) == key
    assert resolver.resolve("826", DIMENSIONS["country"]) == key
    assert warehouse.fetchall("SELECT country_code, country_name FROM dim_country") == [
        ("GB", "United Kingdom")
    ]


def test_unrecognised_country_code_is_kept_without_name(warehouse, resolver):
    resolver.resolve("zz", DIMENSIONS["country"])
    assert warehouse.fetchall("SELECT country_code, country_name FROM dim_country") == [
        ("ZZ", None)
    ]


def test_date_rows_carry_calendar_attributes(warehouse, resolver):
    key = resolver.resolve("2024-02-29", DIMENSIONS["date"])
    row = warehouse.fetchone(
        "SELECT year, quarter, month_num, month_name, day_of_month, day_of_week FROM dim_date WHERE date_key = ?",
        [key],
    )
    assert row == (2024, "Q1", 2, "February", 29, "Thursday")
    assert resolver.resolve("2024-02-30", DIMENSIONS["date"]) is None


def test_date_attributes_week_number():
    assert date_attributes("2024-01-01")["week_num"] == 1


def test_page_type_rows_store_short_form(warehouse, resolver):
    resolver.resolve("article/pdf", DIMENSIONS["page_type"])
    assert warehouse.fetchone("SELECT page_type, page_type_exp FROM dim_page_type") == (
        "article",
        "article/pdf",
    )
    assert page_type_short("?junk") == "-"


def test_attribute_dimensions_require_attributes(resolver):
    with pytest.raises(ValueError):
        resolver.resolve("institution////", DIMENSIONS["access"])


def test_resolve_checked_reports_existing_rows(resolver):
    key, existed = resolver.resolve_checked("1,2", DIMENSIONS["syndicategroup"])
    assert existed is False
    assert resolver.resolve_checked("1,2", DIMENSIONS["syndicategroup"]) == (key, True)


def test_userids_are_normalised_and_registered_once(warehouse):
    userids = UseridRegistry(warehouse)
    assert userids.register("000123") == "123"
    assert userids.register("123") == "123"
    assert userids.register("0") is None
    assert userids.register("abc") is None
    assert warehouse.fetchall("SELECT userid FROM dim_userid") == [("123",)]
    assert len(userids) == 1


# --- caches ---


def test_watermark_cache_evicts_least_recent_down_to_low_watermark():
    cache = WatermarkCache(high_watermark=4, low_watermark=2)
    for i in range(4):
        cache.set(f"v{i}", i)
    assert cache.get("v0") == 0  # v0 becomes most recent
    cache.set("v4", 4)

    assert len(cache) == 2
    assert cache.purges == 1
    assert cache.get("v0") == 0
    assert cache.get("v4") == 4
    assert cache.get("v1") is None
    assert cache.get("v3") is None


def test_watermark_spec_rejects_inverted_marks():
    with pytest.raises(ValueError):
        watermark(100, 100)
    assert CacheSpec(CachePolicy.WATERMARK, 10, 5).low_watermark == 5


def test_null_cache_never_holds_anything():
    cache = NullCache()
    cache.set("a", 1)
    assert cache.get("a") is None
    assert cache.misses == 1


def test_registry_clears_only_date_scoped_caches_on_date_change():
    registry = CacheRegistry(
        {"content_item": watermark(10, 5), "country": CacheSpec(CachePolicy.UNBOUNDED)},
        date_scoped=["content_item"],
    )
    registry.cache("content_item").set("1234-5678/1", 7)
    registry.cache("country").set("GB", 3)

    assert registry.advance_date("2024-01-01") is False
    assert registry.advance_date("2024-01-01") is False
    assert registry.cache("content_item").get("1234-5678/1") == 7

    assert registry.advance_date("2024-01-02") is True
    assert registry.cache("content_item").get("1234-5678/1") is None
    assert registry.cache("country").get("GB") == 3
    assert isinstance(registry.cache("country"), UnboundedCache)


def test_cache_report_lists_every_dimension():
    report = build_cache_registry().report()
    names = [r["dimension"] for r in report]
    assert names == sorted(DIMENSIONS)


# --- sequencer ---


def test_sequencer_serves_batches_from_one_reservation(warehouse):
    sequencer = Sequencer(warehouse)
    keys = [sequencer.next("request", 10) for _ in range(12)]

    assert keys == list(range(1, 13))
    assert warehouse.fetchone(
        "SELECT last_value FROM etl_sequences WHERE name = 'request'"
    ) == (20,)


def test_unbatched_sequences_advance_one_at_a_time(warehouse):
    sequencer = Sequencer(warehouse)
    assert [sequencer.next("identity") for _ in range(3)] == [1, 2, 3]
    assert sequencer.next("license") == 1


def test_reconnect_drops_reservations(warehouse):
    sequencer = Sequencer(warehouse)
    assert sequencer.next("ics_session", 10) == 1
    assert sequencer.next("ics_session", 10) == 2

    warehouse.reconnect()

    # Keys 3..10 are abandoned; the next block starts after the old one
    assert sequencer.next("ics_session", 10) == 11
    assert warehouse.reconnects == 1


def test_dry_run_sequencer_uses_memory_only(warehouse):
    sequencer = Sequencer(warehouse, dry_run=True)
    assert [sequencer.next("request", 100) for _ in range(3)] == [1, 2, 3]
    assert sequencer.next("identity") == 1
    assert warehouse.fetchall("SELECT * FROM etl_sequences") == []


def test_dry_run_warehouse_rolls_back_on_close(warehouse_path):
    wh = Warehouse(warehouse_path, dry_run=True)
    DimensionResolver(wh, Sequencer(wh, dry_run=True), build_cache_registry()).resolve(
        "EJ", DIMENSIONS["service"]
    )
    assert wh.fetchall("SELECT service_code FROM dim_service") == [("EJ",)]
    wh.close()

    check = Warehouse(warehouse_path)
    try:
        assert check.fetchall("SELECT * FROM dim_service") == []
    finally:
        check.close()


def test_dry_run_keys_start_above_stored_sequence(warehouse):
    live = Sequencer(warehouse)
    assert [live.next("identity") for _ in range(3)] == [1, 2, 3]

    dry = Sequencer(warehouse, dry_run=True)
    assert dry.next("identity") == 4
    assert dry.next("identity") == 5
    assert warehouse.fetchone(
        "SELECT last_value FROM etl_sequences WHERE name = 'identity'"
    ) == (3,)


def test_dry_run_over_populated_warehouse(warehouse_path):
    live = Warehouse(warehouse_path)
    try:
        resolver = DimensionResolver(live, Sequencer(live), build_cache_registry())
        ej = resolver.resolve("EJ", DIMENSIONS["service"])
    finally:
        live.close()

    wh = Warehouse(warehouse_path, dry_run=True)
    try:
        resolver = DimensionResolver(wh, Sequencer(wh, dry_run=True), build_cache_registry())
        select = resolver.resolve("Select", DIMENSIONS["service"])
        assert select == ej + 1
        assert resolver.resolve("EJ", DIMENSIONS["service"]) == ej
    finally:
        wh.close()

    check = Warehouse(warehouse_path)
    try:
        assert check.fetchall("SELECT service_code FROM dim_service") == [("EJ",)]
    finally:
        check.close()


def test_dry_run_reconnect_forgets_rolled_back_rows(warehouse_path):
    wh = Warehouse(warehouse_path, dry_run=True, reconnect_retries=1, reconnect_interval=0)
    try:
        sequencer = Sequencer(wh, dry_run=True)
        caches = build_cache_registry()
        resolver = DimensionResolver(wh, sequencer, caches)
        store = IdentityStore(
            FakeIdentityService(identities={"A": identity("institution")}),
            wh,
            sequencer,
            resolver,
        )
        userids = UseridRegistry(wh)

        key = resolver.resolve("EJ", DIMENSIONS["service"])
        store.by_external_id("A")
        userids.register("42")

        wh.reconnect()

        assert wh.fetchall("SELECT * FROM dim_service") == []
        assert caches.cache("service").get("EJ") is None
        assert store._by_id == {}
        assert len(userids) == 0
        assert resolver.resolve("EJ", DIMENSIONS["service"]) == key
        assert wh.fetchall("SELECT service_code FROM dim_service") == [("EJ",)]
    finally:
        wh.close()


def test_creating_a_sequence_row_survives_one_conflict(warehouse, monkeypatch):
    real_execute = warehouse.execute
    conflicts = []

    def execute(sql, params=None):
        if "INSERT INTO etl_sequences" in sql and not conflicts:
            conflicts.append(sql)
            raise duckdb.TransactionException("write-write conflict")
        return real_execute(sql, params)

    monkeypatch.setattr(warehouse, "execute", execute)
    assert Sequencer(warehouse).next("license") == 1
    assert len(conflicts) == 1


# --- races ---


def test_concurrent_workers_resolve_to_one_row(warehouse_path, monkeypatch):
    worker_a = Warehouse(warehouse_path)
    worker_b = Warehouse(warehouse_path)
    try:
        resolver_a = DimensionResolver(worker_a, Sequencer(worker_a), build_cache_registry())
        resolver_b = DimensionResolver(worker_b, Sequencer(worker_b), build_cache_registry())

        # Worker A looks before worker B inserts, so its first read is stale
        real_fetchone = worker_a.fetchone
        stale = {"pending": True}

        def fetchone(sql, params=None):
            if stale["pending"] and "FROM dim_ip_address" in sql:
                stale["pending"] = False
                key_b.append(resolver_b.resolve("192.0.2.10", DIMENSIONS["ip_address"]))
                return None
            return real_fetchone(sql, params)

        key_b = []
        monkeypatch.setattr(worker_a, "fetchone", fetchone)

        key_a = resolver_a.resolve("192.0.2.10", DIMENSIONS["ip_address"])

        assert key_a == key_b[0]
        assert worker_a.fetchall("SELECT ip_address_key FROM dim_ip_address") == [(key_a,)]
    finally:
        worker_a.close()
        worker_b.close()


def test_conflict_is_retried_once_then_fatal():
    attempts = []

    def always_conflicts():
        attempts.append(1)
        raise duckdb.ConstraintException("Duplicate key")

    with pytest.raises(PersistentConflictError) as excinfo:
        retry_on_conflict(always_conflicts, "dim_test 'x'")
    assert len(attempts) == 2
    assert isinstance(excinfo.value.cause, duckdb.ConstraintException)


def test_conflict_followed_by_success_returns_result():
    attempts = []

    def conflicts_once():
        attempts.append(1)
        if len(attempts) == 1:
            raise duckdb.ConstraintException("Duplicate key")
        return 42

    assert retry_on_conflict(conflicts_once, "dim_test 'x'") == 42
