# tests/test_pipeline.py
"""
End-to-end load: log lines in, counted outcomes and published year
partitions out.
"""
from urllib.parse import urlencode

import pandas as pd
import pytest

from conftest import FakeIdentityService, identity
from fact_writer import FactAssembler, PartitionedWriter, build_loader_header
from log_parser import FIELD_SEPARATOR
from pipeline import (
    SUCCESS,
    TOTAL,
    EventResult,
    LoadPipeline,
    Outcome,
    normalise_search_component,
)

ISSN = "1234-5678"


def line(**fields):
    base = {
        "date": "2024-03-01",
        "time": "10:15:00",
        "ip_address": "192.0.2.1",
        "service": "EJ",
        "page_type": "abstract",
    }
    merged = {**base, **fields}
    return urlencode({k: v for k, v in merged.items() if v is not None}) + "\n"


@pytest.fixture()
def service():
    return FakeIdentityService(
        identities={
            "A": identity("institution", country="gb", share_subscriptions=True),
            "B": identity("individual"),
        },
        paths={"A": [["A"]], "B": [["B", "A"]]},
        licenses={
            "L1": {"identity_id": "A", "subscription_id": "S1"},
            "L-noid": {"identity_id": "GONE", "subscription_id": "S1"},
        },
        subscriptions={"S1": {"product_id": "P1"}},
        products={"P1": {"name": "Journal archive"}},
    )


@pytest.fixture()
def seeded_source(source_con):
    source_con.execute(
        f"""
        INSERT INTO jnl_journals VALUES ('{ISSN}', 'Journal of Examples', 'J. Ex.');
        INSERT INTO jnl_volumes VALUES ('{ISSN}', '10', '10');
        INSERT INTO jnl_issues VALUES ('{ISSN}', '10', '2', '2');
        INSERT INTO jnl_articles VALUES
            ('{ISSN}', '10', '2', '101', '2023-03-15', DATE '2023-03-15',
             'paper', NULL, 'On examples', 'A. Author');
        """
    )
    return source_con


@pytest.fixture()
def pipeline(warehouse, make_stack, service, seeded_source, tmp_path):
    stack = make_stack(warehouse, service)
    writer = PartitionedWriter(
        tmp_path / "stats",
        tmp_path / "queue",
        tmp_path / "queue2",
        header=build_loader_header(warehouse),
        date_label="2024-03-01",
    )
    return LoadPipeline(
        caches=stack.caches,
        resolver=stack.resolver,
        hierarchy=stack.hierarchy,
        licenses=stack.licenses,
        content=stack.content,
        access=stack.access,
        assembler=FactAssembler(stack.resolver, stack.sequencer, stack.userids),
        writer=writer,
        userids=stack.userids,
    )


def test_run_counts_every_line_and_publishes_years(pipeline, warehouse):
    lines = [
        line(
            page_type="article",
            filename="/1234-5678/10/2/101/paper.pdf",
            identity_ids="A,B",
            ics_session_id="20240301-s1",
            license_id="L1",
            issn=ISSN,
            volnum="10",
            issnum="2",
            artnum="101",
            http_status="200",
            alert_profile_id="99",
            search_query="  quantum \t dots ",
            ext_auth_service="shib",
            ext_auth_id="user@example.ac.uk",
            userid="0042",
        ),
        line(service=None),
        line(identity_ids="A", ics_session_id="20240301-s2", identity_id_primary="GONE"),
        "not a log line\n",
        line(date="2023-12-31", service="IOPscience", page_type="home"),
    ]

    with pipeline.writer:
        counts = pipeline.run(lines)
        published = pipeline.writer.publish()

    assert counts[TOTAL] == 5
    assert counts[SUCCESS] == 2
    assert counts["invalid_missing_service"] == 1
    assert counts["abandoned_primary_identity"] == 1
    assert counts["invalid_bad_format"] == 1
    assert counts["new_format"] == 4

    assert sorted(p.name.split(".")[3] for p in published) == ["2023", "2024"]
    for path in published:
        year = path.name.split(".")[3]
        text = path.read_text()
        assert f"partition fact_request_{year}\n" in text
        assert len(text.split("begindata\n", 1)[1].splitlines()) == 1

    assert warehouse.fetchone("SELECT search_value, search_field FROM dim_search") == (
        f"quantum dots{FIELD_SEPARATOR} {FIELD_SEPARATOR} ",
        " ",
    )
    assert warehouse.fetchone("SELECT authen_value, authen_id FROM dim_external_authen") == (
        f"shib{FIELD_SEPARATOR}user@example.ac.uk",
        "user@example.ac.uk",
    )
    assert warehouse.fetchone("SELECT alert_profile FROM dim_alert_profile") == ("EJ/99",)
    assert warehouse.fetchone("SELECT access_role, age_years FROM dim_access") == (
        "institution",
        1,
    )
    assert warehouse.fetchall("SELECT userid FROM dim_userid") == [("42",)]


def test_unreadable_license_abandons_line(pipeline):
    result = pipeline.process_line(line(license_id="L-noid"))
    assert result == EventResult.abandoned("abandoned_licensed_identity")
    assert result.count_key == "abandoned_licensed_identity"


def test_content_without_article_gets_no_access(pipeline, warehouse):
    result = pipeline.process_line(line(issn=ISSN, volnum="10"))
    assert result.outcome is Outcome.EMITTED
    assert warehouse.fetchall("SELECT * FROM dim_access") == []
    assert warehouse.fetchone("SELECT count(*) FROM dim_content_item") == (1,)
    pipeline.writer.discard()


def test_summary_and_cache_report(pipeline):
    with pipeline.writer:
        pipeline.run([line(), "junk\n"])
        pipeline.writer.discard()

    summary = pipeline.summary()
    assert summary.startswith("Processed lines (0 seconds): ")
    assert "Success: 1" in summary
    assert "Total: 2" in summary

    report = pipeline.cache_report()
    assert isinstance(report, pd.DataFrame)
    assert report.iloc[-1]["dimension"] == "userid"
    assert set(report.columns) == {"dimension", "policy", "cached", "hits", "misses", "purges"}


def test_event_result_count_keys():
    assert EventResult.emitted().count_key == SUCCESS
    assert EventResult.skipped("local").count_key == "local"
    assert EventResult.abandoned("abandoned_subscription").outcome is Outcome.ABANDONED


@pytest.mark.parametrize(
    "value, limit, expected",
    [
        ("  a \n\t b ", 400, "a b"),
        (None, 400, " "),
        ("   ", 400, " "),
        ("ééé", 4, "éé"),
        ("abcdef", 3, "abc"),
    ],
)
def test_normalise_search_component(value, limit, expected):
    assert normalise_search_component(value, limit) == expected
