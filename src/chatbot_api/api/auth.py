"""Identity lookup at the API boundary.

Authentication happens upstream; this module only reads the identity it
established. Override ``get_current_user_id`` to plug in another source.
"""

from typing import Optional

from fastapi import Depends, Request

from ..config import get_settings
from ..domain.errors import AuthError


def get_current_user_id(request: Request) -> Optional[str]:
    """Returns the caller's user id, or None if the request is anonymous"""
    user_id = request.headers.get(get_settings().USER_ID_HEADER, "").strip()
    return user_id or None


def require_user_id(user_id: Optional[str] = Depends(get_current_user_id)) -> str:
    """Returns the caller's user id or rejects the request"""
    if not user_id:
        raise AuthError()
    return user_id
