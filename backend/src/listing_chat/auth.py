"""Authenticated identity accessor.

The fronting auth proxy verifies the user and forwards the id in X-User-ID.
Request bodies never carry the acting user.
"""

from fastapi import Header

from listing_chat.config import settings
from listing_chat.errors import NotAuthenticated

DEV_USER_ID = "local-dev-user"


def get_user_id(x_user_id: str | None = Header(None, alias="X-User-ID")) -> str:
    """Return the verified user id for the request."""
    if x_user_id:
        return x_user_id
    if settings.allow_dev_user:
        return DEV_USER_ID
    raise NotAuthenticated()
