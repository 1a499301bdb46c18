"""
ISNAD package aggregator: service-level tests.

Tests cover:
  - Create: valuation snapshot, member forms claimed, packaged log rows
  - Eligibility: non-verified or unknown forms refuse the whole package
  - A form can be held by only one live package
  - Input validation (name, priority, duration, form list)
  - CEO → Minister chain, auto-advance to pending_minister, audit trail
  - Minister approval completes forms and makes assets investable
  - Rejections need comments and close member forms as rejected
  - Stats, listing, optimistic version check
  - Two threads racing for the same form on a shared database
"""
import threading

import pytest

from isnad import create_app
from isnad.config import TestingConfig
from isnad.config import config as config_map
from isnad.core.exceptions import (
    ConcurrentUpdateError,
    FormNotEligible,
    InvalidTransition,
    ValidationError,
)
from isnad.models import db
from isnad.models.asset import Asset
from isnad.models.isnad import IsnadForm
from isnad.services import isnad_form_service as forms
from isnad.services import package_service as packages
from isnad.services import review_queue


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture()
def verified(form_at_stage):
    """Factory: a form sitting at the packaging stage (verified_filled)."""

    def _make(valuation=1_000_000, expected_returns=50_000):
        return form_at_stage(
            "investment_agency_review", valuation=valuation, expected_returns=expected_returns,
        )

    return _make


def _create(form_ids, name="Riyadh schools batch", **kw):
    kw.setdefault("duration_years", 2)
    return packages.create_package(name, form_ids, **kw)


def _history_actions(package_id):
    return [h["action"] for h in packages.get_package_history(package_id)]


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════


class TestCreatePackage:
    def test_totals_are_snapshotted(self, verified):
        a = verified(1_000_000, 50_000)
        b = verified(2_500_000.5, 120_000)
        pkg = _create([a["id"], b["id"]], priority="high", actor="agency.lead")

        assert pkg["status"] == "draft"
        assert pkg["package_code"].startswith("PKG-")
        assert pkg["package_code"].endswith("-001")
        assert pkg["total_assets"] == 2
        assert pkg["total_valuation"] == pytest.approx(3_500_000.5)
        assert pkg["expected_revenue"] == pytest.approx(170_000)
        assert pkg["form_ids"] == [a["id"], b["id"]]
        assert [m["position"] for m in pkg["members"]] == [0, 1]
        assert pkg["members"][1]["valuation_snapshot"] == pytest.approx(2_500_000.5)
        assert pkg["created_by"] == "agency.lead"

    def test_member_forms_move_to_in_package(self, verified):
        a = verified()
        _create([a["id"]])
        form = forms.get_form(a["id"])
        assert form["status"] == "in_package"
        assert form["version"] > a["version"]
        last = forms.get_approval_history(a["id"])[-1]
        assert last["action"] == "packaged"
        assert last["stage"] == "investment_agency_review"

    def test_snapshot_survives_later_valuation_change(self, verified):
        a = verified(1_000_000)
        pkg = _create([a["id"]])
        row = db.session.get(IsnadForm, a["id"])
        row.financial_analysis = {"currentValuation": 9_999_999}
        db.session.commit()
        again = packages.get_package(pkg["id"])
        assert again["total_valuation"] == pytest.approx(1_000_000)
        assert again["members"][0]["valuation_snapshot"] == pytest.approx(1_000_000)

    def test_create_is_audited(self, verified):
        pkg = _create([verified()["id"]], actor="agency.lead")
        history = packages.get_package_history(pkg["id"])
        assert [h["action"] for h in history] == ["isnad_package.create"]
        assert history[0]["actor"] == "agency.lead"


class TestEligibility:
    def test_non_verified_form_refuses_whole_package(self, verified, form_at_stage):
        good = verified()
        draft = form_at_stage()
        with pytest.raises(FormNotEligible) as exc:
            _create([good["id"], draft["id"]])
        assert exc.value.form_ids == [draft["id"]]
        assert packages.get_package_stats()["total"] == 0
        assert forms.get_form(good["id"])["status"] == "verified_filled"

    def test_unknown_form(self, verified):
        good = verified()
        with pytest.raises(FormNotEligible) as exc:
            _create([good["id"], "missing-form"])
        assert exc.value.form_ids == ["missing-form"]

    def test_form_cannot_join_two_packages(self, verified):
        a = verified()
        b = verified()
        _create([a["id"]])
        with pytest.raises(FormNotEligible) as exc:
            _create([b["id"], a["id"]], name="Second batch")
        assert exc.value.form_ids == [a["id"]]
        assert packages.get_package_stats()["total"] == 1
        assert forms.get_form(b["id"])["status"] == "verified_filled"

    def test_eligible_listing_excludes_packaged(self, verified):
        a = verified()
        b = verified()
        _create([a["id"]])
        ids = [f["id"] for f in packages.list_eligible_forms()]
        assert ids == [b["id"]]


class TestValidation:
    @pytest.mark.parametrize("kwargs,field", [
        ({"name": "  "}, "package_name"),
        ({"priority": "urgent"}, "priority"),
        ({"duration_years": 0, "duration_months": 0}, "duration"),
        ({"duration_months": 12}, "duration_months"),
        ({"duration_years": -1}, "duration_years"),
    ])
    def test_bad_input(self, verified, kwargs, field):
        form = verified()
        with pytest.raises(ValidationError) as exc:
            _create([form["id"]], **kwargs)
        assert field in exc.value.details

    def test_empty_form_list(self):
        with pytest.raises(ValidationError) as exc:
            _create([])
        assert "form_ids" in exc.value.details

    def test_duplicate_form_ids(self, verified):
        form = verified()
        with pytest.raises(ValidationError) as exc:
            _create([form["id"], form["id"]])
        assert "form_ids" in exc.value.details

    def test_months_only_duration_is_fine(self, verified):
        pkg = _create([verified()["id"]], duration_years=0, duration_months=6)
        assert pkg["duration_months"] == 6


# ═════════════════════════════════════════════════════════════════════════
# APPROVAL CHAIN
# ═════════════════════════════════════════════════════════════════════════


class TestApprovalChain:
    def test_submit_moves_forms_to_final_stage(self, verified):
        a = verified()
        pkg = _create([a["id"]])
        pkg = packages.submit_to_ceo(pkg["id"], "agency.lead")
        assert pkg["status"] == "pending_ceo"
        assert pkg["submitted_at"] is not None

        form = forms.get_form(a["id"])
        assert form["status"] == "pending_ceo"
        assert form["current_stage"] == "tbc_final_approval"
        assert form["current_step_index"] == 7
        statuses = [s["status"] for s in form["workflow_steps"]]
        assert statuses == ["approved"] * 7 + ["current"]

    def test_full_chain(self, verified):
        a = verified(1_000_000)
        b = verified(2_000_000)
        pkg = _create([a["id"], b["id"]])
        packages.submit_to_ceo(pkg["id"])

        pkg = packages.review_ceo(pkg["id"], "approve", "ceo", comments="Proceed")
        assert pkg["status"] == "pending_minister"
        assert pkg["ceo_decided_by"] == "ceo"
        assert forms.get_form(a["id"])["status"] == "pending_minister"

        pkg = packages.review_minister(pkg["id"], "approve", "minister")
        assert pkg["status"] == "minister_approved"
        assert pkg["completed_at"] is not None
        assert _history_actions(pkg["id"]) == [
            "isnad_package.create",
            "isnad_package.submit_to_ceo",
            "isnad_package.ceo_approve",
            "isnad_package.advance_to_minister",
            "isnad_package.minister_approve",
        ]

        for form_id in (a["id"], b["id"]):
            form = forms.get_form(form_id)
            assert form["status"] == "approved"
            assert form["workflow_steps"][7]["status"] == "approved"
            assert form["approval_progress"] == 100
            last = forms.get_approval_history(form_id)[-1]
            assert (last["stage"], last["action"], last["actor"]) == ("tbc_final_approval", "approved", "minister")
            asset = db.session.get(Asset, form["asset_id"])
            assert asset.visible_to_investors is True
            assert asset.investable_at is not None
            assert asset.has_active_isnad is False

        stats = packages.get_package_stats()
        assert stats["approved"] == 1
        assert stats["total_value_approved"] == pytest.approx(3_000_000)

    def test_ceo_reject_needs_comments(self, verified):
        pkg = _create([verified()["id"]])
        packages.submit_to_ceo(pkg["id"])
        with pytest.raises(ValidationError):
            packages.review_ceo(pkg["id"], "reject", "ceo")

    def test_ceo_reject_closes_member_forms(self, verified, form_at_stage):
        a = verified()
        pkg = _create([a["id"]])
        packages.submit_to_ceo(pkg["id"])
        pkg = packages.review_ceo(pkg["id"], "reject", "ceo", comments="Valuations too optimistic")
        assert pkg["status"] == "rejected_ceo"
        assert pkg["rejection_reason"] == "Valuations too optimistic"
        assert packages.get_package_stats()["rejected"] == 1

        form = forms.get_form(a["id"])
        assert form["status"] == "rejected"
        assert form["completed_at"] is not None
        assert form["available_actions"] == []
        assert form["workflow_steps"][7]["status"] == "rejected"
        last = forms.get_approval_history(a["id"])[-1]
        assert (last["stage"], last["action"], last["actor"]) == ("tbc_final_approval", "rejected", "ceo")
        assert last["comments"] == "Valuations too optimistic"

        asset = db.session.get(Asset, form["asset_id"])
        assert asset.has_active_isnad is False
        assert asset.visible_to_investors is False
        assert review_queue.queue_for("tbc_final_approval")[1] == 0
        assert packages.list_eligible_forms() == []

        again = form_at_stage(asset=asset)
        assert again["status"] == "draft"

    def test_minister_reject(self, verified):
        a = verified()
        pkg = _create([a["id"]])
        packages.submit_to_ceo(pkg["id"])
        packages.review_ceo(pkg["id"], "approve", "ceo")
        pkg = packages.review_minister(pkg["id"], "reject", "minister", comments="Budget freeze")
        assert pkg["status"] == "rejected_minister"
        assert pkg["minister_comments"] == "Budget freeze"
        form = forms.get_form(a["id"])
        assert form["status"] == "rejected"
        assert forms.get_approval_history(a["id"])[-1]["actor_role"] == "minister"
        assert db.session.get(Asset, form["asset_id"]).has_active_isnad is False

    def test_out_of_order_decisions(self, verified):
        pkg = _create([verified()["id"]])
        with pytest.raises(InvalidTransition):
            packages.review_ceo(pkg["id"], "approve", "ceo")
        with pytest.raises(InvalidTransition):
            packages.review_minister(pkg["id"], "approve", "minister")
        packages.submit_to_ceo(pkg["id"])
        with pytest.raises(InvalidTransition):
            packages.submit_to_ceo(pkg["id"])
        with pytest.raises(InvalidTransition):
            packages.review_minister(pkg["id"], "approve", "minister")

    def test_unknown_decision(self, verified):
        pkg = _create([verified()["id"]])
        with pytest.raises(ValidationError):
            packages.review_ceo(pkg["id"], "defer", "ceo")

    def test_stale_version(self, verified):
        pkg = _create([verified()["id"]])
        with pytest.raises(ConcurrentUpdateError):
            packages.submit_to_ceo(pkg["id"], expected_version=pkg["version"] - 1)
        assert packages.get_package(pkg["id"])["status"] == "draft"


class TestListing:
    def test_filter_by_status(self, verified):
        first = _create([verified()["id"]], priority="low")
        _create([verified()["id"]], name="Second batch")
        packages.submit_to_ceo(first["id"])

        items, total = packages.list_packages(status="pending_ceo")
        assert total == 1
        assert items[0]["id"] == first["id"]
        assert "members" not in items[0]

        items, total = packages.list_packages(priority="medium")
        assert total == 1
        assert items[0]["package_name"] == "Second batch"


# ═════════════════════════════════════════════════════════════════════════
# CONCURRENT CLAIMS
# ═════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """A second app on a file-backed SQLite database shared across threads."""

    class FileDbConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'claims.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}

    monkeypatch.setitem(config_map, "file_db", FileDbConfig)
    app = create_app("file_db")
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


class TestConcurrentClaim:
    def test_two_packages_race_for_one_form(self, file_app, form_at_stage):
        with file_app.app_context():
            shared = form_at_stage("investment_agency_review")["id"]
            own = [form_at_stage("investment_agency_review")["id"] for _ in range(2)]

        barrier = threading.Barrier(2)
        created, refused = [], []

        def _claim(own_id, name):
            with file_app.app_context():
                barrier.wait()
                try:
                    created.append(_create([shared, own_id], name=name))
                except FormNotEligible as exc:
                    refused.append(exc)

        threads = [
            threading.Thread(target=_claim, args=(own_id, f"Batch {n}"))
            for n, own_id in enumerate(own)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert len(created) == 1
        assert len(refused) == 1
        assert refused[0].form_ids == [shared]

        winner = created[0]
        loser_own = next(i for i in own if i not in winner["form_ids"])
        with file_app.app_context():
            assert packages.get_package_stats()["total"] == 1
            assert forms.get_form(shared)["status"] == "in_package"
            assert forms.get_form(loser_own)["status"] == "verified_filled"
            assert [f["id"] for f in packages.list_eligible_forms()] == [loser_own]
