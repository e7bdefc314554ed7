"""Authentication dependencies."""
from .internal import verify_cron_secret, verify_internal_secret
from .user import AuthenticatedUser, create_user_token, verify_user

__all__ = [
    "AuthenticatedUser",
    "create_user_token",
    "verify_cron_secret",
    "verify_internal_secret",
    "verify_user",
]
