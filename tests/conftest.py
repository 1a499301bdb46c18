"""
Shared pytest fixtures for the ISNAD workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_asset: factory for registered assets
    - asset: one pre-created, registration-complete asset
    - form_at_stage: factory driving a new form up to a given stage
    - backdate: factory moving a form's stage clock into the past
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from isnad import create_app
from isnad.models import db as _db
from isnad.models.asset import Asset
from isnad.models.isnad import IsnadForm
from isnad.services import isnad_form_service as forms
from isnad.services import stage_graph

_asset_seq = itertools.count(1)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def make_asset():
    """Factory: create and return a committed Asset."""

    def _make(status="completed", region="Riyadh", city="Riyadh", name=None):
        n = next(_asset_seq)
        a = Asset(
            asset_code=f"AST-{n:05d}",
            name=name or f"School building {n}",
            region=region,
            city=city,
            status=status,
        )
        _db.session.add(a)
        _db.session.commit()
        return a

    return _make


@pytest.fixture()
def asset(make_asset):
    return make_asset()


@pytest.fixture()
def form_at_stage(make_asset):
    """Factory: new form for a fresh asset, approved forward until *stage*.

    ``stage="ip_initiation"`` returns the draft.  Any later stage submits the
    form and approves each review step until the form sits at *stage*.
    """

    def _make(stage=stage_graph.IP_INITIATION, *, asset=None, valuation=None, expected_returns=None):
        target = asset or make_asset()
        financial = None
        if valuation is not None or expected_returns is not None:
            financial = {
                "currentValuation": valuation or 0,
                "expectedReturns": expected_returns or 0,
            }
        form = forms.create_form(target.id, "ip.officer", financial_analysis=financial)
        if stage == stage_graph.IP_INITIATION:
            return form
        form = forms.submit_form(form["id"], "ip.officer")
        while form["current_stage"] != stage:
            form = forms.review_form(form["id"], "approve", f"{form['current_stage']}.lead")
        return form

    return _make


@pytest.fixture()
def backdate():
    """Factory: move a form's stage clock *days* into the past and commit."""

    def _backdate(form_id, days):
        form = _db.session.get(IsnadForm, form_id)
        form.stage_entered_at = datetime.now(timezone.utc) - timedelta(days=days)
        _db.session.commit()
        return form

    return _backdate
