from enum import Enum

from fastapi import Depends, HTTPException, Request

from agentflow.deps.auth import require_auth


class Role(Enum):
    ADMIN = "ADMIN"
    OPERATOR = "OPERATOR"
    WORKER = "WORKER"


_RANK = {
    Role.WORKER: 1,
    Role.OPERATOR: 2,
    Role.ADMIN: 3,
}


def require_role(role: Role):
    def dependency(request: Request, claims: dict = Depends(require_auth)):
        claim_role = claims.get("role") or Role.WORKER.value

        try:
            user_role = Role(str(claim_role).upper())
        except ValueError as exc:
            raise HTTPException(status_code=403, detail="Invalid role claim") from exc

        if _RANK[user_role] < _RANK[role]:
            raise HTTPException(status_code=403, detail="Insufficient role")

        request.state.role = user_role.value
        return user_role

    return dependency
