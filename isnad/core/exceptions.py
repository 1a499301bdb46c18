"""
Engine-wide exception hierarchy.

Services raise these; blueprints register one handler per type and map it to
an HTTP status and error code (see isnad.utils.errors).  None of them is ever
retried automatically.

Usage:
    from isnad.core.exceptions import InvalidTransition, NotFoundError

    raise NotFoundError(resource="IsnadForm", resource_id=form_id)
    raise InvalidTransition("IsnadForm", form.form_code, "approve", form.status)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "IsnadForm", "Asset").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.  Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate something that must be unique.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class DuplicateActiveForm(ConflictError):
    """The asset already has an ISNAD form that is not approved, rejected or cancelled."""

    def __init__(self, asset_id: str, existing_form_code: str | None = None) -> None:
        super().__init__("IsnadForm", "asset_id", asset_id)
        self.asset_id = asset_id
        self.existing_form_code = existing_form_code


class InvalidTransition(Exception):
    """Action is not legal from the entity's current status or stage.

    Always recoverable: the caller picks a legal action (see the form's
    ``available_actions``).
    """

    def __init__(
        self,
        resource: str,
        code: str,
        action: str,
        current: str,
        reason: str | None = None,
    ) -> None:
        msg = f"Cannot '{action}' {resource} {code} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.resource = resource
        self.code = code
        self.action = action
        self.current_status = current
        self.reason = reason


class SectionNotEditable(Exception):
    """Write attempted on a section the current stage does not own.

    Permission-shaped: retrying without a stage change will fail again.
    """

    def __init__(self, form_code: str, section: str, stage: str, status: str | None = None) -> None:
        msg = f"Section '{section}' of {form_code} is not editable at stage '{stage}'"
        if status:
            msg += f" (status={status})"
        super().__init__(msg)
        self.form_code = form_code
        self.section = section
        self.stage = stage
        self.status = status


class FormNotEligible(Exception):
    """One or more forms cannot be bundled into a package."""

    def __init__(self, form_ids: list[str], reason: str | None = None) -> None:
        self.form_ids = list(form_ids)
        self.reason = reason or "not in verified_filled status or already packaged"
        super().__init__(f"{len(self.form_ids)} form(s) not eligible for packaging: {self.reason}")


class ConcurrentUpdateError(Exception):
    """Another writer changed the row between read and write."""

    def __init__(
        self,
        resource: str,
        resource_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected_version is not None and actual_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
