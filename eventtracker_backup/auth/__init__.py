"""
eventtracker_backup.auth - Dropbox OAuth2 (PKCE) authentication
"""

from eventtracker_backup.auth.dropbox_auth import (
    AuthenticationError,
    DropboxAuth,
    OAuthTokenSet,
    PkceChallenge,
    TokenFailure,
    code_challenge_s256,
)

__all__ = [
    "AuthenticationError",
    "DropboxAuth",
    "OAuthTokenSet",
    "PkceChallenge",
    "TokenFailure",
    "code_challenge_s256",
]
