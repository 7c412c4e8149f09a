"""Errors raised by emergency coordination operations."""

from typing import Iterable, Optional


class EmergencyError(Exception):
    """Base class for emergency coordination errors"""
    pass


class InvalidTransition(EmergencyError):
    """Operation not permitted from the emergency's current state"""

    def __init__(self, operation: str, current: Optional[str] = None,
                 allowed: Iterable[str] = (), detail: Optional[str] = None):
        allowed = list(allowed)
        message = f"Cannot {operation}"
        if current is not None:
            message += f" from status '{current}'"
        if allowed:
            message += f" (allowed from: {', '.join(allowed)})"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.operation = operation
        self.current = current
        self.allowed = allowed


class NotAuthenticated(EmergencyError):
    """No current actor"""
    pass


class NotFound(EmergencyError):
    """Emergency does not exist"""

    def __init__(self, emergency_id: str):
        super().__init__(f"Emergency {emergency_id} not found")
        self.emergency_id = emergency_id
