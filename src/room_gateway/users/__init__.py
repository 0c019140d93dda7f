"""User accounts: records, password hashing and the credential store."""

from room_gateway.users.models import PasswordHash, Role, Scope, User, UserSource
from room_gateway.users.store import BootstrapAccount, CredentialStore

__all__ = [
    "BootstrapAccount",
    "CredentialStore",
    "PasswordHash",
    "Role",
    "Scope",
    "User",
    "UserSource",
]
