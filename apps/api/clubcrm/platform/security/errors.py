from __future__ import annotations


class AuthorizationError(Exception):
    """Raised when an actor may not perform a mutation."""

    def __init__(self, resource: str, action: str, reason: str) -> None:
        self.resource = resource
        self.action = action
        self.reason = reason
        super().__init__(f"{action} on '{resource}' not allowed: {reason}")
