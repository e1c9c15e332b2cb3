"""Helpers for turning a stored OAuth refresh token into Google credentials."""

from __future__ import annotations

from typing import Dict, Sequence

from google.oauth2.credentials import Credentials

__all__ = [
    "CredentialsMissingError",
    "SCOPES",
    "TOKEN_URI",
    "build_user_credentials",
]


SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)
TOKEN_URI = "https://oauth2.googleapis.com/token"


class CredentialsMissingError(Exception):
    """Raised when the OAuth client settings or refresh token are blank."""


def _validate(fields: Dict[str, str]) -> Dict[str, str]:
    missing = [name for name, value in fields.items() if not (value or "").strip()]
    if missing:
        raise CredentialsMissingError(f"Missing Google credentials: {', '.join(sorted(missing))}")
    return {name: value.strip() for name, value in fields.items()}


def build_user_credentials(refresh_token: str, client_id: str, client_secret: str) -> Credentials:
    """Return refreshable user credentials scoped to the Sheets API.

    No access token is attached; the Google client refreshes one on the first
    request.
    """

    data = _validate(
        {
            "refresh_token": refresh_token,
            "google_client_id": client_id,
            "google_client_secret": client_secret,
        }
    )
    return Credentials(
        token=None,
        refresh_token=data["refresh_token"],
        client_id=data["google_client_id"],
        client_secret=data["google_client_secret"],
        token_uri=TOKEN_URI,
        scopes=list(SCOPES),
    )
