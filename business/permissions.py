"""角色与权限规则"""

ROLE_CASHIER = "cashier"
ROLE_ADMIN = "admin"
ROLE_SUPERADMIN = "superadmin"

ROLES = (ROLE_CASHIER, ROLE_ADMIN, ROLE_SUPERADMIN)
ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPERADMIN)


def is_admin(role: str) -> bool:
    return role in ADMIN_ROLES


def require_admin(role: str, action: str = "perform this action") -> None:
    """非管理员抛出 PermissionError。"""
    if not is_admin(role):
        raise PermissionError(f"Only admins can {action}")


def can_manage_user(actor_role: str, target_role: str) -> bool:
    """管理员可管理收银员与管理员，只有超级管理员可管理超级管理员。"""
    if actor_role == ROLE_SUPERADMIN:
        return True
    if actor_role == ROLE_ADMIN:
        return target_role != ROLE_SUPERADMIN
    return False


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}, expected one of {', '.join(ROLES)}")
    return role
