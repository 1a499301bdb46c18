"""
ISNAD Package Blueprint.

Routes (all under /api/v1):
  GET    /isnad/packages                       – list packages (status, priority, page, limit)
  POST   /isnad/packages                       – bundle verified forms into a draft package
  GET    /isnad/packages/stats                 – counts by status, approved value
  GET    /isnad/packages/eligible-forms        – forms that may be packaged right now
  GET    /isnad/packages/<id>                  – package with members
  POST   /isnad/packages/<id>/submit           – draft → pending_ceo
  POST   /isnad/packages/<id>/ceo-review       – { action: approve|reject, comments? }
  POST   /isnad/packages/<id>/minister-review  – { action: approve|reject, comments? }
  GET    /isnad/packages/<id>/history          – audit trail, oldest first
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
from isnad.services import package_service
from isnad.utils.errors import E, api_error
from isnad.utils.helpers import page_envelope, parse_pagination

logger = logging.getLogger(__name__)

package_bp = Blueprint("package", __name__, url_prefix="/api/v1")
register_error_handlers(package_bp)


@package_bp.route("/isnad/packages", methods=["GET"])
def list_packages():
    page, limit = parse_pagination(
        request.args,
        default_limit=current_app.config.get("ISNAD_PAGE_SIZE", 25),
        max_limit=current_app.config.get("ISNAD_MAX_PAGE_SIZE", 100),
    )
    items, total = package_service.list_packages(
        status=request.args.get("status"),
        priority=request.args.get("priority"),
        page=page,
        limit=limit,
    )
    return jsonify(page_envelope(items, total, page, limit))


@package_bp.route("/isnad/packages", methods=["POST"])
def create_package():
    """Create a draft package.

    Body: { package_name, form_ids: [...], description?, investment_strategy?,
            priority?: low|medium|high, duration_years?, duration_months? }
    """
    data = json_body()
    pkg = package_service.create_package(
        body_value(data, "package_name", "packageName", ""),
        body_value(data, "form_ids", "formIds", []),
        description=data.get("description"),
        investment_strategy=body_value(data, "investment_strategy", "investmentStrategy"),
        priority=data.get("priority") or "medium",
        duration_years=body_value(data, "duration_years", "durationYears", 0),
        duration_months=body_value(data, "duration_months", "durationMonths", 0),
        actor=current_user(data),
    )
    return jsonify(pkg), 201


@package_bp.route("/isnad/packages/stats", methods=["GET"])
def package_stats():
    return jsonify(package_service.get_package_stats())


@package_bp.route("/isnad/packages/eligible-forms", methods=["GET"])
def eligible_forms():
    return jsonify(package_service.list_eligible_forms())


@package_bp.route("/isnad/packages/<package_id>", methods=["GET"])
def get_package(package_id):
    return jsonify(package_service.get_package(package_id))


@package_bp.route("/isnad/packages/<package_id>/submit", methods=["POST"])
def submit_package(package_id):
    data = json_body()
    pkg = package_service.submit_to_ceo(
        package_id, current_user(data), expected_version=expected_version(data),
    )
    return jsonify(pkg)


def _decision(review_fn, package_id):
    data = json_body()
    action = (text_value(data, "action") or "").strip()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    pkg = review_fn(
        package_id,
        action,
        current_user(data),
        comments=data.get("comments"),
        expected_version=expected_version(data),
    )
    return jsonify(pkg)


@package_bp.route("/isnad/packages/<package_id>/ceo-review", methods=["POST"])
def ceo_review(package_id):
    return _decision(package_service.review_ceo, package_id)


@package_bp.route("/isnad/packages/<package_id>/minister-review", methods=["POST"])
def minister_review(package_id):
    return _decision(package_service.review_minister, package_id)


@package_bp.route("/isnad/packages/<package_id>/history", methods=["GET"])
def package_history(package_id):
    return jsonify(package_service.get_package_history(package_id))
