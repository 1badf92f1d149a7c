"""Authentication helpers shared by the API routers."""

from .core import (
    UserInfo,
    create_access_token,
    get_current_user,
    get_user_from_authorization,
    verify_token,
)

__all__ = [
    "UserInfo",
    "create_access_token",
    "get_current_user",
    "get_user_from_authorization",
    "verify_token",
]
