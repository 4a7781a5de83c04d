"""
Acting-user value passed explicitly into every workflow operation.

Nothing in the service layer reads ambient request state; blueprints build
an ``ActingUser`` once (from the verified token) and hand it down.
"""

from dataclasses import dataclass

ROLES = (
    "requestor",
    "department_approver",
    "it_manager",
    "service_desk",
    "super_administrator",
)


@dataclass(frozen=True)
class ActingUser:
    id: int
    role: str
    department_id: int | None = None

    @classmethod
    def from_claims(cls, payload: dict) -> "ActingUser":
        department_id = payload.get("department_id")
        return cls(
            id=int(payload["sub"]),
            role=payload.get("role") or "requestor",
            department_id=int(department_id) if department_id is not None else None,
        )

    @classmethod
    def from_user(cls, user) -> "ActingUser":
        return cls(id=user.id, role=user.role, department_id=user.department_id)

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_administrator"
