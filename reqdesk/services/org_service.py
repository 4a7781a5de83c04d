"""
Org Service — departments and users provisioned for the approval engine.
"""

import logging

from email_validator import EmailNotValidError, validate_email

from reqdesk.core.exceptions import ConflictError, NotFoundError, PermissionDenied, ValidationError
from reqdesk.models import db
from reqdesk.models.org import Department, User
from reqdesk.services.identity import ROLES
from reqdesk.services.transactions import atomic
from reqdesk.utils.helpers import clean_text, is_choice, is_int

logger = logging.getLogger(__name__)


def _require_admin(actor, action: str) -> None:
    if not actor.is_super_admin:
        raise PermissionDenied(
            "Only super administrators can manage departments and users", user_id=actor.id, action=action,
        )


# ═══════════════════════════════════════════════════════════════
# Departments
# ═══════════════════════════════════════════════════════════════
def list_departments(include_inactive: bool = False) -> list[Department]:
    q = Department.query
    if not include_inactive:
        q = q.filter_by(is_active=True)
    return q.order_by(Department.name).all()


def create_department(actor, data: dict) -> Department:
    _require_admin(actor, "create_department")
    name = clean_text(data.get("name"))
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if Department.query.filter(db.func.lower(Department.name) == name.lower()).first():
        raise ConflictError("Department", "name", name)

    dept = Department(
        name=name,
        description=data.get("description"),
        is_active=bool(data.get("is_active", True)),
    )
    with atomic():
        db.session.add(dept)
    logger.info("Department created: %s", name, extra={"user_id": actor.id, "action": "create_department"})
    return dept


# ═══════════════════════════════════════════════════════════════
# Users
# ═══════════════════════════════════════════════════════════════
def list_users(role: str | None = None, department_id: int | None = None):
    q = User.query
    if role:
        q = q.filter_by(role=role)
    if department_id is not None:
        q = q.filter_by(department_id=department_id)
    return q.order_by(User.id)


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def create_user(actor, data: dict) -> User:
    """Create a user. Body: { username, email, role, department_id?, first_name?, last_name?, title? }"""
    _require_admin(actor, "create_user")
    errors = {}
    username = clean_text(data.get("username"))
    role = data.get("role") or "requestor"
    department_id = data.get("department_id")
    email = data.get("email") if isinstance(data.get("email"), str) else ""

    if not username:
        errors["username"] = "username is required"
    try:
        email = validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        errors["email"] = f"Invalid email: {e}"
    if not is_choice(role, ROLES):
        errors["role"] = f"role must be one of {list(ROLES)}"
    if department_id is not None and (not is_int(department_id) or db.session.get(Department, department_id) is None):
        errors["department_id"] = f"department {department_id} does not exist"
    if errors:
        raise ValidationError("Invalid user", details=errors)
    if User.query.filter_by(username=username).first():
        raise ConflictError("User", "username", username)

    user = User(
        username=username,
        email=email,
        first_name=data.get("first_name"),
        last_name=data.get("last_name"),
        title=data.get("title"),
        role=role,
        department_id=department_id,
        is_active=bool(data.get("is_active", True)),
    )
    with atomic():
        db.session.add(user)
    logger.info("User created: %s (%s)", username, role, extra={"user_id": actor.id, "action": "create_user"})
    return user
