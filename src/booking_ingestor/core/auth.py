"""OAuth 2.0 authentication with token caching for the Gmail API."""

from __future__ import annotations

import logging
from pathlib import Path

import httplib2
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from booking_ingestor.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# modify is needed to add the processed label and clear UNREAD
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]


def authenticate(
    credentials_path: Path,
    token_path: Path,
    *,
    interactive: bool = False,
) -> Credentials:
    """Authenticate with the Gmail API, using the cached token if available.

    The background worker never opens a browser: without a usable cached
    token it fails with AuthenticationError, and ``interactive=True``
    (the ``authorize`` CLI command) is required to run the consent flow.

    Args:
        credentials_path: Path to OAuth 2.0 client credentials JSON.
        token_path: Path to store/load the OAuth token.
        interactive: Allow the local-server consent flow.

    Returns:
        Valid Google OAuth2 credentials.

    Raises:
        AuthenticationError: If authentication fails.
    """
    creds: Credentials | None = None

    if token_path.exists():
        try:
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
        except Exception as e:
            logger.warning("Failed to load cached token: %s", e)
            creds = None

    if creds and creds.valid:
        return creds

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
            _save_token(creds, token_path)
            return creds
        except Exception as e:
            logger.warning("Token refresh failed: %s", e)

    if not interactive:
        raise AuthenticationError(
            f"No valid Gmail token at {token_path}. Run the 'authorize' command first."
        )

    if not credentials_path.exists():
        raise AuthenticationError(
            f"Credentials file not found: {credentials_path}. "
            "Download it from Google Cloud Console."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
        _save_token(creds, token_path)
        logger.info("Authentication successful, token cached at %s", token_path)
        return creds
    except Exception as e:
        raise AuthenticationError(f"OAuth flow failed: {e}") from e


def build_gmail_service(creds: Credentials, timeout_seconds: float = 30.0) -> Resource:
    """Build a Gmail API service resource whose HTTP calls time out.

    Args:
        creds: Valid Google OAuth2 credentials.
        timeout_seconds: Socket timeout applied to every API request.

    Returns:
        Gmail API service resource.
    """
    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout_seconds))
    return build("gmail", "v1", http=http, cache_discovery=False)


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
