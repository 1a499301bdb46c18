"""
ISNAD Form Blueprint.

Routes (all under /api/v1):
  POST   /isnad/forms                          – open a draft form for an asset
  GET    /isnad/forms                          – list forms (status, stage, asset_id, search, page, limit)
  GET    /isnad/forms/<id>                     – form snapshot
  PUT    /isnad/forms/<id>                     – edit analysis blocks (initiator only)
  POST   /isnad/forms/<id>/submit              – submit / resubmit for review
  PUT    /isnad/forms/<id>/sections/<section>  – save a department section
  POST   /isnad/forms/<id>/review              – approve | reject | return | request_info
  POST   /isnad/forms/<id>/provide-info        – answer an information request
  POST   /isnad/forms/<id>/cancel              – withdraw the form
  GET    /isnad/forms/<id>/approvals           – approval history, oldest first
  GET    /isnad/forms/<id>/actions             – actions legal right now
  GET    /isnad/stages                         – the stage graph
  GET    /isnad/queue/<stage>                  – department review queue
  GET    /isnad/packaging/forms                – verified forms ready for packaging
  GET    /isnad/dashboard                      – counts by status / stage / SLA

Layer contract:
    - Blueprint: parse input, call service, return JSON.
    - NO db.session calls here; all writes owned by isnad_form_service.
    - The acting user comes from the X-User header (no auth enforcement).
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from isnad.blueprints import (
    body_value,
    current_user,
    expected_version,
    json_body,
    register_error_handlers,
    text_value,
)
from isnad.core.exceptions import ValidationError
from isnad.services import isnad_form_service as forms
from isnad.services import review_queue, stage_graph
from isnad.utils.errors import E, api_error
from isnad.utils.helpers import page_envelope, parse_datetime, parse_pagination

logger = logging.getLogger(__name__)

isnad_bp = Blueprint("isnad", __name__, url_prefix="/api/v1")
register_error_handlers(isnad_bp)


def _pagination():
    return parse_pagination(
        request.args,
        default_limit=current_app.config.get("ISNAD_PAGE_SIZE", 25),
        max_limit=current_app.config.get("ISNAD_MAX_PAGE_SIZE", 100),
    )


def _as_of():
    """Optional ``as_of`` query param for SLA projections; defaults to now."""
    raw = request.args.get("as_of")
    if not raw:
        return None
    when = parse_datetime(raw)
    if when is None:
        raise ValidationError("as_of must be an ISO-8601 timestamp", details={"as_of": raw})
    return when


def _analysis_blocks(data: dict) -> dict:
    return {
        "financial_analysis": body_value(data, "financial_analysis", "financialAnalysis"),
        "investment_criteria": body_value(data, "investment_criteria", "investmentCriteria"),
        "technical_assessment": body_value(data, "technical_assessment", "technicalAssessment"),
    }


# ═════════════════════════════════════════════════════════════════════════════
# FORMS
# ═════════════════════════════════════════════════════════════════════════════


@isnad_bp.route("/isnad/forms", methods=["POST"])
def create_form():
    """Open a draft form.

    Body: { asset_id, financial_analysis?, investment_criteria?, technical_assessment? }
    """
    data = json_body()
    asset_id = body_value(data, "asset_id", "assetId")
    if not asset_id:
        return api_error(E.VALIDATION_REQUIRED, "asset_id is required")
    form = forms.create_form(str(asset_id), current_user(data), **_analysis_blocks(data))
    return jsonify(form), 201


@isnad_bp.route("/isnad/forms", methods=["GET"])
def list_forms():
    page, limit = _pagination()
    items, total = forms.list_forms(
        status=request.args.get("status"),
        stage=request.args.get("stage"),
        asset_id=request.args.get("asset_id"),
        search=request.args.get("search"),
        page=page,
        limit=limit,
    )
    return jsonify(page_envelope(items, total, page, limit))


@isnad_bp.route("/isnad/forms/<form_id>", methods=["GET"])
def get_form(form_id):
    return jsonify(forms.get_form(form_id))


@isnad_bp.route("/isnad/forms/<form_id>", methods=["PUT"])
def update_form(form_id):
    """Merge edits into the analysis blocks while the form is with the initiator."""
    data = json_body()
    form = forms.update_form_details(
        form_id, current_user(data),
        expected_version=expected_version(data),
        **_analysis_blocks(data),
    )
    return jsonify(form)


@isnad_bp.route("/isnad/forms/<form_id>/submit", methods=["POST"])
def submit_form(form_id):
    data = json_body()
    form = forms.submit_form(form_id, current_user(data), expected_version=expected_version(data))
    return jsonify(form)


@isnad_bp.route("/isnad/forms/<form_id>/sections/<section>", methods=["PUT"])
def save_section(form_id, section):
    """Save a department section.

    Body: { data: {...}, is_complete?: bool }
    """
    data = json_body()
    section_data = data.get("data")
    if not isinstance(section_data, dict):
        return api_error(E.VALIDATION_INVALID, "data must be an object")
    form = forms.save_section(
        form_id,
        section,
        section_data,
        is_complete=bool(body_value(data, "is_complete", "isComplete", False)),
        actor=current_user(data),
        expected_version=expected_version(data),
    )
    return jsonify(form)


@isnad_bp.route("/isnad/forms/<form_id>/review", methods=["POST"])
def review_form(form_id):
    """Reviewer decision on the current stage.

    Body: { action: approve|reject|return|request_info, comments?,
            rejection_reason?, rejection_justification?, actor_role? }
    """
    data = json_body()
    action = (text_value(data, "action") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    form = forms.review_form(
        form_id,
        action,
        current_user(data),
        comments=data.get("comments"),
        rejection_reason=body_value(data, "rejection_reason", "rejectionReason"),
        rejection_justification=body_value(data, "rejection_justification", "rejectionJustification"),
        actor_role=body_value(data, "actor_role", "actorRole"),
        expected_version=expected_version(data),
    )
    return jsonify(form)


@isnad_bp.route("/isnad/forms/<form_id>/provide-info", methods=["POST"])
def provide_info(form_id):
    data = json_body()
    form = forms.provide_info(
        form_id,
        data.get("comments") or "",
        current_user(data),
        expected_version=expected_version(data),
    )
    return jsonify(form)


@isnad_bp.route("/isnad/forms/<form_id>/cancel", methods=["POST"])
def cancel_form(form_id):
    data = json_body()
    form = forms.cancel_form(
        form_id,
        data.get("reason") or "",
        current_user(data),
        expected_version=expected_version(data),
    )
    return jsonify(form)


@isnad_bp.route("/isnad/forms/<form_id>/approvals", methods=["GET"])
def approval_history(form_id):
    return jsonify(forms.get_approval_history(form_id))


@isnad_bp.route("/isnad/forms/<form_id>/actions", methods=["GET"])
def available_actions(form_id):
    return jsonify(forms.get_available_actions(form_id))


# ═════════════════════════════════════════════════════════════════════════════
# STAGES, QUEUES, DASHBOARD
# ═════════════════════════════════════════════════════════════════════════════


@isnad_bp.route("/isnad/stages", methods=["GET"])
def list_stages():
    return jsonify(stage_graph.describe())


@isnad_bp.route("/isnad/queue/<stage>", methods=["GET"])
def stage_queue(stage):
    """Forms waiting at *stage*, most urgent first."""
    page, limit = _pagination()
    items, total = review_queue.queue_for(stage, page=page, limit=limit, now=_as_of())
    return jsonify(page_envelope(items, total, page, limit))


@isnad_bp.route("/isnad/packaging/forms", methods=["GET"])
def packaging_forms():
    page, limit = _pagination()
    items, total = review_queue.forms_for_packaging(
        region=request.args.get("region"),
        sla=request.args.get("sla"),
        page=page,
        limit=limit,
        now=_as_of(),
    )
    return jsonify(page_envelope(items, total, page, limit))


@isnad_bp.route("/isnad/dashboard", methods=["GET"])
def dashboard():
    return jsonify(review_queue.dashboard_stats(_as_of()))
