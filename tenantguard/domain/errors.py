from __future__ import annotations


class AccessControlError(Exception):
    pass


class NotFoundError(AccessControlError):
    pass


class ConflictError(AccessControlError):
    pass


class InvalidOperationError(AccessControlError):
    pass


class InvalidArgumentError(InvalidOperationError):
    pass


class CrossTenantViolationError(InvalidArgumentError):
    pass


class EvaluationError(AccessControlError):
    """Raised by condition evaluators. Never surfaces from ``authorize``."""
