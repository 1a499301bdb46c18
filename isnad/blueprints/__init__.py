"""
ISNAD Workflow Engine
Blueprint registry and request helpers shared by the API blueprints.
"""

import logging

from flask import jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from isnad.core.exceptions import (
    ConcurrentUpdateError,
    ConflictError,
    DuplicateActiveForm,
    FormNotEligible,
    InvalidTransition,
    NotFoundError,
    SectionNotEditable,
    ValidationError,
)
from isnad.models import db
from isnad.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Request JSON object; any other JSON value is a ValidationError."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "must be an object"})
    return data


def current_user(data: dict | None = None) -> str:
    """Acting user: X-User header, then body ``actor``, then "system"."""
    return (
        request.headers.get("X-User", "").strip()
        or str((data or {}).get("actor") or "").strip()
        or "system"
    )


def body_value(data: dict, snake: str, camel: str | None = None, default=None):
    """Read a body field that clients may send as snake_case or camelCase."""
    if snake in data:
        return data[snake]
    if camel and camel in data:
        return data[camel]
    return default


def text_value(data: dict, snake: str, camel: str | None = None) -> str | None:
    """Like body_value, but anything other than a string or null is a ValidationError."""
    value = body_value(data, snake, camel)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{snake} must be a string", details={snake: "must be a string"})
    return value


def expected_version(data: dict | None = None) -> int | None:
    """Optimistic-lock version from the If-Match header or body ``version``."""
    raw = request.headers.get("If-Match")
    if raw:
        raw = raw.strip()
        if raw.startswith("W/"):
            raw = raw[2:]
        raw = raw.strip('"')
    else:
        raw = (data or {}).get("version")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Version must be an integer", details={"version": str(raw)}) from None


def register_error_handlers(bp) -> None:
    """Map engine exceptions to JSON error responses on *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(InvalidTransition)
    def _handle_invalid_transition(error: InvalidTransition):
        return api_error(E.CONFLICT_STATE, str(error), details={
            "action": error.action,
            "current_status": error.current_status,
        })

    @bp.errorhandler(SectionNotEditable)
    def _handle_section_not_editable(error: SectionNotEditable):
        return api_error(E.FORBIDDEN, str(error), details={
            "section": error.section,
            "stage": error.stage,
        })

    @bp.errorhandler(DuplicateActiveForm)
    def _handle_duplicate_form(error: DuplicateActiveForm):
        return api_error(E.CONFLICT_DUPLICATE, str(error), details={
            "asset_id": error.asset_id,
            "existing_form_code": error.existing_form_code,
        })

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(FormNotEligible)
    def _handle_not_eligible(error: FormNotEligible):
        return api_error(E.CONFLICT_STATE, str(error), details={
            "form_ids": error.form_ids,
            "reason": error.reason,
        })

    @bp.errorhandler(ConcurrentUpdateError)
    def _handle_concurrent_update(error: ConcurrentUpdateError):
        details = {"resource_id": error.resource_id}
        if error.actual_version is not None:
            details["current_version"] = error.actual_version
        return api_error(E.CONFLICT_VERSION, str(error), details=details)

    @bp.errorhandler(SQLAlchemyError)
    def _handle_database(error: SQLAlchemyError):
        db.session.rollback()
        logger.error("Database error in %s endpoint=%s: %s", bp.name, request.endpoint, error)
        return api_error(E.DATABASE, "Database error")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description}), error.code
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
