"""Integration tests for identity resolution against a real PostgreSQL.

Covers the cross-source scenario where one release is listed by three
sources: two share a maker code, the third only shares title and release
date.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from catalog_identity import db, group_manager
from catalog_identity.config import DEFAULT_MATCHING_CONFIG
from catalog_identity.resolver import consolidate_code_groups, resolve_identities
from catalog_identity.stats import Deadline, RunContext

pytestmark = pytest.mark.postgres

TITLE = "Summer Vacation Special Edition"
RELEASE = date(2024, 3, 1)


def _ctx(db_url: str | None = None, **overrides) -> RunContext:
    values = dict(config=DEFAULT_MATCHING_CONFIG, deadline=Deadline(None), db_url=db_url)
    values.update(overrides)
    return RunContext(**values)


def _three_sources(catalog) -> tuple[int, int, int]:
    r1 = catalog.product(
        "fanza-ssis00865",
        "FANZA",
        TITLE,
        maker_code="SSIS-865",
        release_date=RELEASE,
        performers=("Alice",),
    )
    r2 = catalog.product("mgs-summer-special", "MGS", TITLE, release_date=RELEASE)
    r3 = catalog.product(
        "sokmil-x865", "SOKMIL", "Completely Different Listing", maker_code="SSIS-865"
    )
    return r1, r2, r3


def _methods(catalog) -> dict[int, str]:
    return dict(catalog.rows("SELECT product_id, matching_method FROM identity_group_members"))


class TestCrossSourceScenario:
    def test_one_group_with_primary_master(self, db_conn, catalog) -> None:
        r1, r2, r3 = _three_sources(catalog)

        stats = resolve_identities(db_conn, _ctx())

        assert catalog.scalar("SELECT count(*) FROM identity_groups") == 1
        info = group_manager.get_product_group(db_conn, r1)
        assert info.member_count == 3
        assert info.master_product_id == r1
        assert info.canonical_product_code == "SSIS-865"
        methods = _methods(catalog)
        assert methods[r2] == "title_only_relaxed"
        assert methods[r3] == "code_exact"

        assert stats.processed == 3
        assert stats.created == 1
        assert stats.merged == 1
        assert stats.skipped == 1
        assert stats.errors == 0
        assert stats.details["code_exact"] == 1
        assert stats.details["title_only_relaxed"] == 1

    def test_second_run_changes_nothing(self, db_conn, catalog) -> None:
        _three_sources(catalog)
        resolve_identities(db_conn, _ctx())
        before = catalog.rows(
            "SELECT group_id, product_id, matching_method FROM identity_group_members ORDER BY 2"
        )

        stats = resolve_identities(db_conn, _ctx())

        assert stats.processed == 0
        after = catalog.rows(
            "SELECT group_id, product_id, matching_method FROM identity_group_members ORDER BY 2"
        )
        assert after == before

    def test_touched_products_recorded(self, db_conn, catalog) -> None:
        ids = set(_three_sources(catalog))
        ctx = _ctx()
        resolve_identities(db_conn, ctx)
        assert ctx.changes.product_ids == ids


class TestResolutionOptions:
    def test_unmatched_records_get_own_groups(self, db_conn, catalog) -> None:
        catalog.product("fanza-a", "FANZA", "First Title Here")
        catalog.product("mgs-b", "MGS", "Another Thing Entirely")
        stats = resolve_identities(db_conn, _ctx())
        assert stats.created == 2
        assert catalog.scalar("SELECT count(*) FROM identity_groups") == 2

    def test_target_sources(self, db_conn, catalog) -> None:
        catalog.product("fanza-a", "FANZA", "First Title Here")
        mgs = catalog.product("mgs-b", "MGS", "Another Thing Entirely")
        stats = resolve_identities(db_conn, _ctx(target_sources=["MGS"]))
        assert stats.processed == 1
        assert catalog.rows("SELECT product_id FROM identity_group_members") == [(mgs,)]

    def test_limit(self, db_conn, catalog) -> None:
        for i in range(5):
            catalog.product(f"mgs-item-{i}", "MGS", f"Unrelated Title {i}")
        stats = resolve_identities(db_conn, _ctx(limit=3, batch_size=2))
        assert stats.processed == 3
        assert catalog.scalar("SELECT count(*) FROM identity_group_members") == 3

    def test_incremental_only_recent_records(self, db_conn, catalog) -> None:
        catalog.product("fanza-old", "FANZA", "Old Listing From Last Year")
        recent = catalog.product(
            "mgs-new",
            "MGS",
            "Fresh Listing Today",
            created_at=datetime.now(timezone.utc),
        )
        stats = resolve_identities(db_conn, _ctx(mode="incremental"))
        assert stats.processed == 1
        assert catalog.rows("SELECT product_id FROM identity_group_members") == [(recent,)]

    def test_expired_budget(self, db_conn, catalog) -> None:
        catalog.product("fanza-a", "FANZA", "First Title Here")
        stats = resolve_identities(db_conn, _ctx(deadline=Deadline(0)))
        assert stats.timed_out is True
        assert stats.processed == 0

    def test_worker_pool_keeps_codes_together(self, db_url, db_conn, catalog) -> None:
        fanza = catalog.product("fanza-1", "FANZA", "Alpha Listing", maker_code="SSIS-865")
        mgs = catalog.product("mgs-1", "MGS", "Beta Listing", maker_code="ssis00865")
        sokmil = catalog.product("sokmil-1", "SOKMIL", "Gamma Listing", maker_code="SSIS-865")
        other = catalog.product("mgs-2", "MGS", "Delta Listing", maker_code="ABP-001")

        stats = resolve_identities(db_conn, _ctx(db_url, workers=2))

        assert stats.errors == 0
        group = group_manager.get_product_group(db_conn, fanza)
        assert group.member_count == 3
        assert group_manager.get_product_group(db_conn, mgs).id == group.id
        assert group_manager.get_product_group(db_conn, sokmil).id == group.id
        assert group_manager.get_product_group(db_conn, other).id != group.id

    def test_worker_pool_title_pair_single_group(self, db_url, db_conn, catalog) -> None:
        """Codeless matches can land on different workers; they still end up in one group."""
        fanza = catalog.product("fanza-summer-edition", "FANZA", TITLE, release_date=RELEASE)
        mgs = catalog.product("mgs-summer-special", "MGS", TITLE, release_date=RELEASE)

        stats = resolve_identities(db_conn, _ctx(db_url, workers=2))

        assert stats.errors == 0
        assert catalog.scalar("SELECT count(*) FROM identity_groups") == 1
        group = group_manager.get_product_group(db_conn, fanza)
        assert group.member_count == 2
        assert group_manager.get_product_group(db_conn, mgs).id == group.id


class TestConsolidation:
    def test_groups_sharing_code_merged(self, db_conn, catalog) -> None:
        a = catalog.product("fanza-a", "FANZA", "A", maker_code="SSIS-865")
        b = catalog.product("mgs-b", "MGS", "B", maker_code="ssis00865")
        ga = group_manager.create_group(db_conn, db.fetch_record(db_conn, a))
        group_manager.create_group(db_conn, db.fetch_record(db_conn, b))

        assert consolidate_code_groups(db_conn, _ctx()) == 1
        assert group_manager.get_product_group(db_conn, b).id == ga
