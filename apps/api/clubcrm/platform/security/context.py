from __future__ import annotations

from dataclasses import dataclass

from clubcrm.crm.constants import Branch, Role


@dataclass(slots=True)
class Actor:
    """The acting user as reported by the directory service."""

    id: str
    name: str
    email: str
    role: Role
    branch: Branch
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_manager(self) -> bool:
        return self.role in {Role.ADMIN, Role.MANAGER}

    def with_correlation_id(self, correlation_id: str | None) -> Actor:
        return Actor(
            id=self.id,
            name=self.name,
            email=self.email,
            role=self.role,
            branch=self.branch,
            correlation_id=correlation_id,
        )
