from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    PRO = "pro"
    ADMIN = "admin"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    pro_id: str | None = None
    email: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    @property
    def is_admin(self) -> bool:
        return self.principal_type == PrincipalType.ADMIN


PRO_SCOPES = {"assignments:respond", "jobs:read:own"}
ADMIN_SCOPES = {"assignments:respond", "offers:write", "jobs:read", "schema:read", "reconcile:write"}
