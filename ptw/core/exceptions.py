"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
get consistent HTTP status codes and machine-readable ``code`` values
everywhere. None of them is fatal to the process: every one of them is a
recoverable outcome surfaced to the requesting user or operator.

Usage:
    from ptw.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="Permit", resource_id=42)
    raise InvalidStateError(permit, "activate", expected=("approved",))
"""

from ptw.utils.errors import E


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-company access
    attempts, so a caller cannot probe for permits of another company.

    Args:
        resource: Human-readable model/entity name (e.g. "Permit", "Area").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        company_id: Optional. The scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        company_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.company_id = company_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if company_id is not None:
            msg += f" (company={company_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ═════════════════════════════════════════════════════════════════════════════
# Permit workflow failures
# ═════════════════════════════════════════════════════════════════════════════


class PermitWorkflowError(Exception):
    """Base class for typed permit transition failures.

    Attributes:
        code: Machine-readable ``E.*`` constant.
        http_status: Status the blueprint handler responds with.
        details: Structured context (permit id, status, step ...).
    """

    code = E.CONFLICT_STATE
    http_status = 409

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(PermitWorkflowError):
    """Transition is not legal from the permit's current status."""

    code = E.INVALID_STATE
    http_status = 409

    def __init__(self, permit, action: str, expected=()) -> None:
        self.permit_id = permit.id
        self.status = permit.status
        self.action = action
        expected = tuple(expected)
        msg = f"Cannot {action} permit {permit.permit_number} in status '{permit.status}'"
        if expected:
            msg += f" (requires {' or '.join(expected)})"
        super().__init__(msg, details={
            "permit_id": permit.id,
            "status": permit.status,
            "action": action,
            "expected": list(expected),
        })


class UnauthorizedError(PermitWorkflowError):
    """Caller lacks the role or identity required for this step."""

    code = E.FORBIDDEN
    http_status = 403


class PolicyViolationError(PermitWorkflowError):
    """Request is authorised in principle but breaks a policy bound."""

    code = E.POLICY_VIOLATION
    http_status = 422


class AlreadyDecidedError(PermitWorkflowError):
    """The step the caller tried to decide already carries a decision."""

    code = E.ALREADY_DECIDED
    http_status = 409

    def __init__(self, permit_id: int, step: int, status: str, flow: str = "approval") -> None:
        self.permit_id = permit_id
        self.step = step
        super().__init__(
            f"{flow.capitalize()} step {step} of permit {permit_id} is already {status}",
            details={"permit_id": permit_id, "flow": flow, "step": step, "status": status},
        )


class VersionConflictError(PermitWorkflowError):
    """A concurrent write won the race; retry with a fresh read."""

    code = E.VERSION_CONFLICT
    http_status = 409

    def __init__(self, permit_id: int, expected_version: int | None = None,
                 actual_version: int | None = None) -> None:
        self.permit_id = permit_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Permit {permit_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg, details={
            "permit_id": permit_id,
            "expected_version": expected_version,
            "actual_version": actual_version,
        })


class UnresolvedApproverError(PermitWorkflowError):
    """A required step has no concrete approver.

    Warning type: transitions never raise it. It describes the condition in
    logs and notifications while the permit stays inspectable and can be
    repaired through administrative reassignment.
    """

    code = E.UNRESOLVED_APPROVER
    http_status = 200

    def __init__(self, permit_id: int, step: int, role: str, flow: str = "approval") -> None:
        self.permit_id = permit_id
        self.step = step
        self.role = role
        super().__init__(
            f"No approver configured for {flow} step {step} ({role}) of permit {permit_id}",
            details={"permit_id": permit_id, "flow": flow, "step": step, "role": role},
        )
