from .vault_api import VaultApi
from .auth_api import AuthApi

__all__ = ["VaultApi", "AuthApi"]
