import logging

from fastapi import Depends

from storefront.errors import PermissionDenied
from storefront.models.user import User
from storefront.utils.token import get_current_user

logger = logging.getLogger(__name__)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Only store staff may manage orders, run reconciliation or send refunds."""
    if not (current_user.is_admin and current_user.can_login):
        logger.warning(f"User {current_user.id} denied access to admin order tools")
        raise PermissionDenied("Admin access required")
    return current_user
