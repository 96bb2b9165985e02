"""코디네이터 예외 계층."""

from __future__ import annotations


class CoordinatorError(RuntimeError):
    """코디네이터 동작 중 발생한 예외."""

    code = "coordinator_error"
    http_status = 500


class InvalidDefinition(CoordinatorError):
    code = "invalid_definition"
    http_status = 400


class UnknownAgent(CoordinatorError):
    code = "unknown_agent"
    http_status = 401


class NotOwner(CoordinatorError):
    code = "not_owner"
    http_status = 409


class DuplicateIdentity(CoordinatorError):
    code = "duplicate_identity"
    http_status = 409


class InvalidTransition(CoordinatorError):
    code = "invalid_transition"
    http_status = 409


class NotFound(CoordinatorError):
    code = "not_found"
    http_status = 404
