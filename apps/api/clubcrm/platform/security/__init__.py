from clubcrm.platform.security.context import Actor
from clubcrm.platform.security.errors import AuthorizationError
from clubcrm.platform.security.visibility import (
    can_view,
    require_admin,
    require_assignable,
    require_branch,
    require_manager,
    require_writer,
    visible,
)

__all__ = [
    "Actor",
    "AuthorizationError",
    "can_view",
    "require_admin",
    "require_assignable",
    "require_branch",
    "require_manager",
    "require_writer",
    "visible",
]
