# tests/test_hierarchy_resolution.py
"""
Identity hierarchy resolution: primary selection, participation roles,
syndicate groups, reuse by session id and by membership, and abandonment when
the primary cannot be read.
"""
import pytest

from conftest import FakeIdentityService, identity
from hierarchy_resolver import (
    ROLE_INDIVIDUAL,
    ROLE_INHERITED,
    ROLE_PRIMARY,
    ROLE_SHARED,
    HierarchyGraph,
    HierarchyResolver,
)
from dimensions import build_cache_registry


@pytest.fixture()
def syndicate_service():
    # A shares its subscriptions; B is an individual directly under A
    return FakeIdentityService(
        identities={
            "A": identity("institution", country="gb", share_subscriptions=True),
            "B": identity("individual", country="fr"),
            "C1": identity("institution", country="de"),
            "C2": identity("institution", country="us"),
            "CONS": identity("consortium"),
            "M": identity("institution", country="jp"),
            "U": identity("individual"),
            "guest": identity("hierarchy"),
        },
        paths={
            "A": [["A"]],
            "B": [["B", "A"]],
            "CONS": [["CONS"]],
            "M": [["M", "CONS"]],
            "U": [["U", "M", "CONS"]],
        },
    )


def _participations(warehouse, session_key):
    rows = warehouse.fetchall(
        """
        SELECT i.identity_id, s.participation_type
        FROM dim_session_identity s
        JOIN dim_identity i ON i.identity_key = s.identity_key
        WHERE s.ics_session_key = ?
        ORDER BY i.identity_id
        """,
        [session_key],
    )
    return dict(rows)


def test_graph_depth_uses_longest_path():
    graph = HierarchyGraph.from_paths([["X", "P", "R"], ["X", "R"], ["Q", "R"]])
    depths = graph.depths()
    assert depths == {"R": 1, "P": 2, "Q": 2, "X": 3}
    assert graph.descendants("R") == {"P", "Q", "X"}
    assert graph.ancestors("X", stop=["P"]) == {"R"}


def test_graph_depth_terminates_on_cycles():
    graph = HierarchyGraph.from_paths([["X", "Y", "X"]])
    assert set(graph.depths()) == {"X", "Y"}


def test_shared_subscription_member_is_shared_and_institution_is_primary(
    warehouse, make_stack, syndicate_service
):
    stack = make_stack(warehouse, syndicate_service)
    resolution = stack.hierarchy.resolve(["A", "B"], session_id="20240301-s1")

    primary = stack.store.by_internal_key(resolution.identity_key_primary)
    assert primary.identity_id == "A"
    assert resolution.country_key_inst == primary.country_key
    assert _participations(warehouse, resolution.session_key) == {
        "A": ROLE_PRIMARY,
        "B": ROLE_SHARED,
    }

    members = warehouse.fetchall(
        "SELECT identity_key FROM dim_syndicategroup_identity WHERE syndicategroup_key = ?",
        [resolution.syndicategroup_key],
    )
    assert members == [(primary.key,)]


def test_same_membership_reuses_classification_for_new_session(
    warehouse, make_stack, syndicate_service
):
    stack = make_stack(warehouse, syndicate_service)
    first = stack.hierarchy.resolve(["A", "B"], session_id="20240301-s1")
    path_lookups = syndicate_service.count("paths")

    second = stack.hierarchy.resolve(["B", "A"], session_id="20240301-s2")

    assert syndicate_service.count("paths") == path_lookups
    assert second.session_key != first.session_key
    assert (
        second.identity_key_primary,
        second.country_key_inst,
        second.syndicategroup_key,
    ) == (first.identity_key_primary, first.country_key_inst, first.syndicategroup_key)
    assert _participations(warehouse, second.session_key) == _participations(
        warehouse, first.session_key
    )


def test_known_session_is_replayed_from_warehouse(warehouse, make_stack, syndicate_service):
    first = make_stack(warehouse, syndicate_service).hierarchy.resolve(
        ["A", "B"], session_id="20240301-s1"
    )

    replay = make_stack(warehouse, syndicate_service).hierarchy.resolve(
        ["A", "B"], session_id="20240301-s1"
    )
    assert replay == first.__class__(
        session_key=first.session_key,
        identity_key_primary=first.identity_key_primary,
        include_identity=first.include_identity,
        country_key_inst=first.country_key_inst,
        syndicategroup_key=first.syndicategroup_key,
    )
    assert warehouse.fetchone("SELECT count(*) FROM dim_ics_session") == (1,)


def test_recomputed_classification_matches_original(warehouse, make_stack, syndicate_service):
    first = make_stack(warehouse, syndicate_service).hierarchy.resolve(
        ["B", "A"], session_id="20240301-s1"
    )
    other = make_stack(warehouse, syndicate_service).hierarchy.resolve(
        ["A", "B"], session_id="20240302-s9"
    )
    assert (other.identity_key_primary, other.syndicategroup_key) == (
        first.identity_key_primary,
        first.syndicategroup_key,
    )
    assert warehouse.fetchone("SELECT count(*) FROM dim_syndicategroup") == (1,)
    assert warehouse.fetchone("SELECT count(*) FROM dim_syndicategroup_identity") == (1,)


def test_equal_depth_tie_goes_to_lowest_identity_id(warehouse, make_stack, syndicate_service):
    stack = make_stack(warehouse, syndicate_service)
    for ids in (["C2", "C1"], ["C1", "C2"]):
        stack.caches.clear_all()
        resolution = stack.hierarchy.classify(ids)
        assert stack.store.by_internal_key(resolution.identity_key_primary).identity_id == "C1"
        assert resolution.syndicategroup_key is None


def test_institutions_above_an_individual_are_inherited(
    warehouse, make_stack, syndicate_service
):
    stack = make_stack(warehouse, syndicate_service)
    resolution = stack.hierarchy.resolve(["U", "M", "CONS"], session_id="20240301-u1")

    # With both institutions ignorable and no other candidate, guest is primary
    primary = stack.store.by_internal_key(resolution.identity_key_primary)
    assert primary.identity_id == "guest"
    assert _participations(warehouse, resolution.session_key) == {
        "CONS": ROLE_INHERITED,
        "M": ROLE_INHERITED,
        "U": ROLE_INDIVIDUAL,
    }


def test_deepest_institution_beats_its_consortium(warehouse, make_stack, syndicate_service):
    stack = make_stack(warehouse, syndicate_service)
    resolution = stack.hierarchy.classify(["CONS", "M", "guest"])
    assert stack.store.by_internal_key(resolution.identity_key_primary).identity_id == "M"


def test_explicit_primary_marks_descendant_institutions_shared(
    warehouse, make_stack, syndicate_service
):
    stack = make_stack(warehouse, syndicate_service)
    resolution = stack.hierarchy.resolve(
        ["CONS", "M"], session_id="20240301-e1", primary_id="CONS"
    )
    assert _participations(warehouse, resolution.session_key) == {
        "CONS": ROLE_PRIMARY,
        "M": ROLE_SHARED,
    }


def test_unreadable_primary_abandons_event(warehouse, make_stack, syndicate_service):
    stack = make_stack(warehouse, syndicate_service)
    assert stack.hierarchy.resolve(["A", "B"], session_id="20240301-x1", primary_id="GONE") is None
    assert stack.hierarchy.resolve(["A"], primary_id="GONE") is None
    assert warehouse.fetchone("SELECT count(*) FROM dim_ics_session") == (0,)


def test_primary_without_session_skips_inference(warehouse, make_stack, syndicate_service):
    stack = make_stack(warehouse, syndicate_service)
    resolution = stack.hierarchy.resolve(["A", "B"], primary_id="B")

    assert resolution.session_key is None
    assert stack.store.by_internal_key(resolution.identity_key_primary).identity_id == "B"
    assert syndicate_service.count("paths") == 0


def test_identity_attributes_are_refreshed_on_later_runs(warehouse, make_stack, syndicate_service):
    make_stack(warehouse, syndicate_service).store.by_external_id("C1")
    syndicate_service.identities["C1"]["classification"] = "consortium"

    record = make_stack(warehouse, syndicate_service).store.by_external_id("C1")
    assert record.classification == "consortium"
    assert warehouse.fetchone(
        "SELECT classification FROM dim_identity WHERE identity_id = 'C1'"
    ) == ("consortium",)


def test_failed_identity_lookup_is_cached(warehouse, make_stack, syndicate_service):
    stack = make_stack(warehouse, syndicate_service)
    assert stack.store.by_external_id("NOPE") is None
    assert stack.store.by_external_id("NOPE") is None
    assert syndicate_service.calls.count(("identity", "NOPE")) == 1


def test_unknown_sentinel_is_never_looked_up(warehouse, make_stack, syndicate_service):
    record = make_stack(warehouse, syndicate_service).store.by_external_id("__UNKNOWN__")
    assert record.classification == "__UNKNOWN__"
    assert ("identity", "__UNKNOWN__") not in syndicate_service.calls


def test_session_cache_is_per_registry(warehouse, make_stack, syndicate_service):
    stack = make_stack(warehouse, syndicate_service)
    other = HierarchyResolver(
        syndicate_service,
        stack.store,
        warehouse,
        stack.sequencer,
        stack.resolver,
        build_cache_registry(),
    )
    stack.hierarchy.resolve(["A", "B"], session_id="20240301-s1")
    lookups = syndicate_service.count("paths")

    # A fresh registry has nothing cached, but the warehouse row is found
    other.resolve(["A", "B"], session_id="20240301-s1")
    assert syndicate_service.count("paths") == lookups
