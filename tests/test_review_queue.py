"""
Review queue projector tests.

Tests cover:
  - Department queue: stage filter, terminal forms excluded, urgency order
  - SLA derived at read time (as-of timestamps)
  - Packaging list: region / SLA filters, packaged forms excluded
  - Dashboard counts by status, stage and SLA bucket
"""
from datetime import datetime, timedelta, timezone

import pytest

from isnad.core.exceptions import ValidationError
from isnad.services import isnad_form_service as forms
from isnad.services import package_service as packages
from isnad.services import review_queue


class TestStageQueue:
    def test_unknown_stage(self):
        with pytest.raises(ValidationError):
            review_queue.queue_for("legal_review")

    def test_most_urgent_first(self, form_at_stage, backdate):
        fresh = form_at_stage("finance_review")
        late = form_at_stage("finance_review")
        warned = form_at_stage("finance_review")
        backdate(late["id"], 6)
        backdate(warned["id"], 3)
        form_at_stage("school_planning_review")

        items, total = review_queue.queue_for("finance_review")
        assert total == 3
        assert [i["form_id"] for i in items] == [late["id"], warned["id"], fresh["id"]]
        assert [i["sla_status"] for i in items] == ["overdue", "warning", "on_time"]
        assert items[0]["days_pending"] >= 6
        assert items[0]["department"] == "finance"
        assert items[0]["asset"]["asset_code"].startswith("AST-")

    def test_terminal_forms_excluded(self, form_at_stage):
        form = form_at_stage("school_planning_review")
        form_at_stage("school_planning_review")
        forms.cancel_form(form["id"], "Asset withdrawn")
        items, total = review_queue.queue_for("school_planning_review")
        assert total == 1
        assert items[0]["form_id"] != form["id"]

    def test_as_of_timestamp(self, form_at_stage):
        form_at_stage("ip_secondary_review")
        later = datetime.now(timezone.utc) + timedelta(days=3, hours=1)
        items, _ = review_queue.queue_for("ip_secondary_review", now=later)
        assert items[0]["sla_status"] == "overdue"

    def test_pagination(self, form_at_stage):
        for _ in range(3):
            form_at_stage("finance_review")
        items, total = review_queue.queue_for("finance_review", page=2, limit=2)
        assert total == 3
        assert len(items) == 1


class TestPackagingList:
    def test_region_filter(self, form_at_stage, make_asset):
        east = form_at_stage("investment_agency_review", asset=make_asset(region="Eastern"), valuation=700_000)
        form_at_stage("investment_agency_review", asset=make_asset(region="Riyadh"))
        items, total = review_queue.forms_for_packaging(region="Eastern")
        assert total == 1
        assert items[0]["form_id"] == east["id"]
        assert items[0]["current_valuation"] == pytest.approx(700_000)

    def test_sla_filter(self, form_at_stage, backdate):
        late = form_at_stage("investment_agency_review")
        form_at_stage("investment_agency_review")
        backdate(late["id"], 10)
        items, total = review_queue.forms_for_packaging(sla="overdue")
        assert total == 1
        assert items[0]["form_id"] == late["id"]

    def test_bad_sla_filter(self):
        with pytest.raises(ValidationError):
            review_queue.forms_for_packaging(sla="red")

    def test_packaged_forms_excluded(self, form_at_stage):
        a = form_at_stage("investment_agency_review")
        b = form_at_stage("investment_agency_review")
        packages.create_package("Batch", [a["id"]], duration_years=1)
        items, total = review_queue.forms_for_packaging()
        assert total == 1
        assert items[0]["form_id"] == b["id"]


class TestDashboard:
    def test_counts(self, form_at_stage, backdate):
        form_at_stage()
        late = form_at_stage("finance_review")
        backdate(late["id"], 6)
        form_at_stage("investment_agency_review")
        cancelled = form_at_stage("school_planning_review")
        forms.cancel_form(cancelled["id"], "Asset withdrawn")

        stats = review_queue.dashboard_stats()
        assert stats["total"] == 4
        assert stats["drafts"] == 1
        assert stats["in_review"] == 1
        assert stats["ready_for_packaging"] == 1
        assert stats["cancelled"] == 1
        assert stats["by_stage"]["finance_review"] == 1
        assert stats["by_stage"]["school_planning_review"] == 0
        assert stats["sla"]["overdue"] == 1
        assert sum(stats["sla"].values()) == 3
