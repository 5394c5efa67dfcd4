from .google_auth import AccountDirectory, authorize_account, load_account_credentials

__all__ = ["AccountDirectory", "authorize_account", "load_account_credentials"]
