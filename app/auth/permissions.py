import logging

from fastapi import Depends

from app.auth.dependencies import get_current_user
from app.users.models import UserRole
from app.utils.errors import PermissionDeniedError

logger = logging.getLogger(__name__)


def require_role(*roles: str):
    allowed = {r.value if isinstance(r, UserRole) else r for r in roles}

    def wrapper(user: dict = Depends(get_current_user)):
        if user.get("role") not in allowed:
            logger.warning(f"⛔ Rôle {user.get('role')} refusé (requis : {sorted(allowed)})")
            raise PermissionDeniedError("Accès interdit (rôle requis)")
        return user
    return wrapper


require_admin = require_role(UserRole.ADMIN)
require_conducteur = require_role(UserRole.CONDUCTEUR)
require_expediteur = require_role(UserRole.EXPEDITEUR)
