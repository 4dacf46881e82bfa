from fastapi import HTTPException, status

from growthengine.crm.service import ActorUser

ALL_ROLES = ("admin", "manager", "rep", "intern")
DEAL_WRITERS = ("admin", "manager", "rep")
MANAGERS = ("admin", "manager")
ADMINS = ("admin",)


def require_roles(user: ActorUser, *roles: str) -> None:
    if user.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{user.role}' is not allowed; requires one of: {', '.join(roles)}",
        )
