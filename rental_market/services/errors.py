from __future__ import annotations

from datetime import date


class RentalEngineError(RuntimeError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationError(RentalEngineError):
    pass


class InvalidRangeError(ValidationError):
    pass


class ConflictError(RentalEngineError):
    def __init__(self, reason: str, conflicting_dates: list[date] | None = None):
        super().__init__(reason)
        self.conflicting_dates = list(conflicting_dates or [])


class IllegalTransitionError(RentalEngineError):
    def __init__(self, current: str, target: str, reason: str | None = None):
        super().__init__(reason or f"Invalid state transition: {current} -> {target}")
        self.current = current
        self.target = target


class AuthorizationError(RentalEngineError):
    pass


class PolicyError(RentalEngineError):
    pass


class RecordNotFoundError(RentalEngineError):
    pass
