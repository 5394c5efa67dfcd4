"""Google OAuth2 credentials for every connected account."""

import logging
from pathlib import Path
from typing import Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from ..clients.gcal import GoogleCalendarClient
from ..config import Settings
from ..errors import InvalidIdentifierError
from ..services.registry import validate_account_id

logger = logging.getLogger(__name__)

# Scopes required for Google Calendar read/write
SCOPES = ["https://www.googleapis.com/auth/calendar"]


def _token_path(accounts_dir: Path, account_id: str) -> Path:
    return accounts_dir / f"{account_id}.json"


def _load_token(token_path: Path) -> Optional[Credentials]:
    """Load a saved token, refreshing and re-saving it if it has expired."""
    creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
    if creds.valid:
        return creds
    if creds.expired and creds.refresh_token:
        creds.refresh(Request())
        token_path.write_text(creds.to_json())
        return creds
    return None


def load_account_credentials(accounts_dir: Path) -> dict[str, Credentials]:
    """
    Load credentials for every ``<account_id>.json`` token in ``accounts_dir``.

    Files with an invalid account id, unreadable content, or a token that can
    no longer be refreshed are skipped with a warning; run
    ``multi-calendar-mcp auth <account_id>`` to re-authorize them.
    """
    loaded: dict[str, Credentials] = {}
    if not accounts_dir.is_dir():
        logger.warning("Accounts directory %s does not exist; no accounts loaded", accounts_dir)
        return loaded

    for token_path in sorted(accounts_dir.glob("*.json")):
        account_id = token_path.stem
        try:
            validate_account_id(account_id)
            creds = _load_token(token_path)
        except InvalidIdentifierError as e:
            logger.warning("Skipping %s: %s", token_path.name, e)
            continue
        except (GoogleAuthError, ValueError, OSError) as e:
            logger.warning("Skipping account %s: could not load token: %s", account_id, e)
            continue
        if creds is None:
            logger.warning("Skipping account %s: token is invalid and cannot be refreshed", account_id)
            continue
        loaded[account_id] = creds
    return loaded


def authorize_account(account_id: str, settings: Settings) -> Path:
    """
    Run the browser OAuth consent flow for one account and save its token.

    Returns:
        Path of the saved token file.

    Raises:
        FileNotFoundError: If the OAuth client credentials file does not exist.
        InvalidIdentifierError: If ``account_id`` is not a valid account id.
    """
    validate_account_id(account_id)
    if not settings.credentials_file.exists():
        raise FileNotFoundError(
            f"Google credentials file not found at {settings.credentials_file}. "
            "Download it from Google Cloud Console → APIs & Services → Credentials."
        )

    flow = InstalledAppFlow.from_client_secrets_file(str(settings.credentials_file), SCOPES)
    creds = flow.run_local_server(port=0)

    token_path = _token_path(settings.accounts_dir, account_id)
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
    return token_path


class AccountDirectory:
    """
    The set of connected accounts, each with its own Calendar client.

    Clients are rebuilt on ``reload()``; callers holding a registry must clear
    its cache when ``reload()`` reports a change.
    """

    def __init__(self, accounts_dir: Path, client_factory=GoogleCalendarClient):
        self.accounts_dir = accounts_dir
        self._client_factory = client_factory
        self._clients: dict[str, GoogleCalendarClient] = {}
        self._tokens: dict[str, str] = {}

    def accounts(self) -> dict[str, GoogleCalendarClient]:
        return dict(self._clients)

    def reload(self) -> bool:
        """Re-read tokens from disk. Returns True if any account was added, removed, or re-authorized."""
        credentials = load_account_credentials(self.accounts_dir)
        tokens = {account_id: creds.to_json() for account_id, creds in credentials.items()}
        changed = tokens != self._tokens
        self._clients = {
            account_id: self._client_factory(account_id, creds)
            for account_id, creds in credentials.items()
        }
        self._tokens = tokens
        logger.info("Loaded %d account(s): %s", len(self._clients), ", ".join(self._clients) or "none")
        return changed
