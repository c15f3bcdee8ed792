"""
OAuth2 authentication module for Dropbox backups.

Provides OAuth 2.0 authorization code flow with PKCE for a public client:
- PKCE verifier/challenge generation (S256)
- Browser-based authorization with offline (refresh token) access
- Redirect handling and code exchange
- Single-flight access token refresh
- Token storage in the encrypted credential store
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import time
import webbrowser
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import requests

from eventtracker_backup.config.settings import APP_KEY_PLACEHOLDER, BackupSettings
from eventtracker_backup.storage.secure_store import SecureCredentialStore

AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
TOKEN_URL = "https://api.dropbox.com/oauth2/token"

# Credential store keys
PREF_REFRESH_TOKEN = "dropbox_refresh_token"
PREF_ACCESS_TOKEN = "dropbox_access_token"
PREF_EXPIRES_AT_MS = "dropbox_expires_at_ms"
PREF_CODE_VERIFIER = "dropbox_code_verifier"

TOKEN_KEYS = (PREF_REFRESH_TOKEN, PREF_ACCESS_TOKEN, PREF_EXPIRES_AT_MS)

# Access tokens closer than this to expiry are refreshed
EXPIRY_SAFETY_MARGIN_MS = 60_000

# Random bytes behind the PKCE verifier (43 characters once encoded)
VERIFIER_BYTES = 32

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication cannot proceed (e.g. the app is not configured)."""

    pass


class TokenFailure(Enum):
    """Why the last access token request produced no token."""

    NOT_LINKED = "not_linked"
    # Token endpoint refused the grant (4xx other than 429)
    REJECTED = "rejected"
    # Connection error, timeout or 429
    NETWORK = "network"
    # 5xx or an unusable 2xx body
    SERVER = "server"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PkceChallenge:
    """PKCE verifier and its S256 challenge."""

    code_verifier: str
    code_challenge: str

    @classmethod
    def generate(cls) -> PkceChallenge:
        """Create a fresh verifier from a CSPRNG and compute its challenge."""
        verifier = _b64url(secrets.token_bytes(VERIFIER_BYTES))
        return cls(code_verifier=verifier, code_challenge=code_challenge_s256(verifier))


def code_challenge_s256(verifier: str) -> str:
    """Compute base64url(SHA-256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class OAuthTokenSet:
    """
    Access/refresh token pair with the access token's expiry.

    Attributes:
        access_token: Short-lived bearer token
        refresh_token: Long-lived token; its presence means "linked"
        expires_at_ms: Access token expiry, epoch milliseconds
    """

    access_token: str
    refresh_token: str
    expires_at_ms: int

    def is_fresh(self, now_ms: int) -> bool:
        """True if the access token is usable for more than the safety margin."""
        return bool(self.access_token) and (
            self.expires_at_ms > now_ms + EXPIRY_SAFETY_MARGIN_MS
        )

    def to_prefs(self) -> dict[str, str]:
        return {
            PREF_ACCESS_TOKEN: self.access_token,
            PREF_REFRESH_TOKEN: self.refresh_token,
            PREF_EXPIRES_AT_MS: str(self.expires_at_ms),
        }


class DropboxAuth:
    """
    OAuth2 (PKCE) token manager for the Dropbox backup account.

    Handles the authorization flow, redirect handling, and access token
    lifecycle. All state lives in a SecureCredentialStore; refreshes are
    serialized on the store's ``refresh_lock`` so concurrent callers trigger
    at most one refresh request.

    Usage:
        auth = DropboxAuth(settings, SecureCredentialStore(settings.config_dir))

        url = auth.start_link()          # opens the browser
        auth.handle_redirect(redirected) # URL the browser landed on

        token = auth.get_valid_access_token()
    """

    def __init__(
        self,
        settings: BackupSettings,
        store: SecureCredentialStore,
        session: requests.Session | None = None,
    ):
        """
        Initialize the token manager.

        Args:
            settings: Backup settings (app key, redirect URI, HTTP timeout)
            store: Encrypted credential store for tokens and the PKCE verifier
            session: Optional requests session (defaults to the requests module)
        """
        self.app_key = settings.app_key.strip()
        self.redirect_uri = settings.redirect_uri.strip()
        self.timeout = settings.http_timeout
        self.store = store
        self._http: Any = session or requests
        self._last_failure: TokenFailure | None = None

    # =========================================================================
    # State
    # =========================================================================

    def is_configured(self) -> bool:
        """True if a real Dropbox app key is configured."""
        return bool(self.app_key) and self.app_key != APP_KEY_PLACEHOLDER

    def is_linked(self) -> bool:
        """True if a refresh token is stored."""
        refresh = self.store.get(PREF_REFRESH_TOKEN)
        return bool(refresh and refresh.strip())

    def _load_token_set(self) -> OAuthTokenSet | None:
        refresh = self.store.get(PREF_REFRESH_TOKEN)
        if not refresh or not refresh.strip():
            return None

        try:
            expires_at = int(self.store.get(PREF_EXPIRES_AT_MS) or 0)
        except ValueError:
            expires_at = 0

        return OAuthTokenSet(
            access_token=self.store.get(PREF_ACCESS_TOKEN) or "",
            refresh_token=refresh,
            expires_at_ms=expires_at,
        )

    # =========================================================================
    # Authorization flow
    # =========================================================================

    def build_authorize_url(self, challenge: PkceChallenge) -> str:
        """Build the Dropbox authorization URL for a PKCE challenge."""
        params = {
            "client_id": self.app_key,
            "response_type": "code",
            "token_access_type": "offline",
            "code_challenge_method": "S256",
            "code_challenge": challenge.code_challenge,
            "redirect_uri": self.redirect_uri,
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def start_link(self, open_browser: bool = True) -> str:
        """
        Start linking a Dropbox account.

        Generates a new PKCE pair, stores the verifier (replacing any
        unconsumed one, so only one attempt is ever in flight), and opens the
        authorization page.

        Args:
            open_browser: Open the URL in the default browser

        Returns:
            The authorization URL

        Raises:
            AuthenticationError: If no app key is configured
        """
        if not self.is_configured():
            raise AuthenticationError(
                "Dropbox app key is not configured. Set 'app_key' in config.yaml."
            )

        challenge = PkceChallenge.generate()
        self.store.put(PREF_CODE_VERIFIER, challenge.code_verifier)

        url = self.build_authorize_url(challenge)
        logger.info("Starting Dropbox authorization")

        if open_browser:
            try:
                webbrowser.open(url)
            except webbrowser.Error as e:
                logger.warning(f"Could not open browser: {e}")

        return url

    def handle_redirect(self, uri: str) -> bool:
        """
        Complete linking from the redirect URI.

        Exchanges the authorization code for tokens using the stored
        verifier. Any failure leaves the stored state untouched.

        Args:
            uri: Full redirect URI containing the ``code`` query parameter

        Returns:
            True if tokens were obtained and stored, False otherwise
        """
        code = parse_qs(urlparse(uri).query).get("code", [""])[0]
        if not code:
            logger.warning("Redirect URI has no authorization code")
            return False

        verifier = self.store.get(PREF_CODE_VERIFIER)
        if not verifier:
            logger.warning("No pending authorization; run link first")
            return False

        payload = self._post_token_request(
            {
                "code": code,
                "grant_type": "authorization_code",
                "client_id": self.app_key,
                "redirect_uri": self.redirect_uri,
                "code_verifier": verifier,
            }
        )
        if payload is None:
            return False

        access_token = payload.get("access_token") or ""
        refresh_token = payload.get("refresh_token") or ""
        if not refresh_token.strip():
            logger.error("Token response did not include a refresh token")
            return False
        if not access_token:
            logger.error("Token response did not include an access token")
            return False

        token_set = OAuthTokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at_ms=_now_ms() + self._expires_in_ms(payload),
        )
        self.store.put_all(token_set.to_prefs(), remove=(PREF_CODE_VERIFIER,))

        logger.info("Dropbox account linked")
        return True

    @staticmethod
    def redirect_error(uri: str) -> str | None:
        """
        Describe an error returned on the redirect URI, if any.

        Returns:
            Human readable message, or None if the redirect has no error
        """
        params = parse_qs(urlparse(uri).query)
        error = params.get("error", [""])[0]
        if not error:
            return None
        if error == "access_denied":
            return "Dropbox connection was cancelled"
        description = params.get("error_description", [""])[0]
        return description or f"Dropbox authorization failed: {error}"

    def unlink(self) -> bool:
        """
        Forget all Dropbox tokens and any pending verifier.

        Returns:
            True if an account was linked before
        """
        was_linked = self.is_linked()
        with self.store.refresh_lock:
            self.store.put_all({}, remove=(*TOKEN_KEYS, PREF_CODE_VERIFIER))
        if was_linked:
            logger.info("Dropbox account unlinked")
        return was_linked

    # =========================================================================
    # Access tokens
    # =========================================================================

    def get_valid_access_token(self) -> str | None:
        """
        Get an access token valid for more than one minute.

        Returns the cached token when fresh; otherwise refreshes it once
        (concurrent callers wait for that refresh and reuse its result).

        Returns:
            Access token, or None if unlinked or the refresh failed
            (``token_failure()`` tells which)
        """
        tokens = self._load_token_set()
        if tokens is not None and tokens.is_fresh(_now_ms()):
            self._last_failure = None
            return tokens.access_token

        with self.store.refresh_lock:
            self._last_failure = None
            # Another caller may have refreshed while we waited
            tokens = self._load_token_set()
            if tokens is None:
                logger.debug("No refresh token stored; account not linked")
                self._last_failure = TokenFailure.NOT_LINKED
                return None
            if tokens.is_fresh(_now_ms()):
                return tokens.access_token

            return self._refresh(tokens)

    def token_failure(self) -> TokenFailure | None:
        """
        Reason the last ``get_valid_access_token`` call returned None.

        Returns:
            The failure category, or None if the last call produced a token
        """
        return self._last_failure

    def _refresh(self, tokens: OAuthTokenSet) -> str | None:
        logger.debug("Refreshing Dropbox access token")
        payload = self._post_token_request(
            {
                "refresh_token": tokens.refresh_token,
                "grant_type": "refresh_token",
                "client_id": self.app_key,
            }
        )
        if payload is None:
            return None

        access_token = payload.get("access_token") or ""
        if not access_token:
            logger.error("Refresh response did not include an access token")
            self._last_failure = TokenFailure.SERVER
            return None

        # Dropbox does not rotate refresh tokens, but keep one if it is sent
        refreshed = OAuthTokenSet(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or tokens.refresh_token,
            expires_at_ms=_now_ms() + self._expires_in_ms(payload),
        )
        self.store.put_all(refreshed.to_prefs())
        logger.debug("Access token refreshed")
        return refreshed.access_token

    def _post_token_request(self, form: dict[str, str]) -> dict[str, Any] | None:
        """
        POST a form to the token endpoint.

        Returns:
            Parsed JSON body for a 2xx response, None on any failure (the
            failure category is recorded for ``token_failure()``)
        """
        grant_type = form.get("grant_type")
        try:
            response = self._http.post(TOKEN_URL, data=form, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Token request ({grant_type}) failed: {e}")
            self._last_failure = TokenFailure.NETWORK
            return None

        status = response.status_code
        if not 200 <= status < 300:
            logger.warning(
                f"Token request ({grant_type}) rejected with status {status}"
            )
            if status == 429:
                self._last_failure = TokenFailure.NETWORK
            elif status >= 500:
                self._last_failure = TokenFailure.SERVER
            else:
                self._last_failure = TokenFailure.REJECTED
            return None

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Token response is not valid JSON: {e}")
            self._last_failure = TokenFailure.SERVER
            return None

        if not isinstance(payload, dict):
            logger.warning("Token response is not a JSON object")
            self._last_failure = TokenFailure.SERVER
            return None
        return payload

    @staticmethod
    def _expires_in_ms(payload: dict[str, Any]) -> int:
        try:
            return int(payload.get("expires_in", 0)) * 1000
        except (TypeError, ValueError):
            return 0

    def token_status(self) -> dict[str, object]:
        """
        Describe the stored authorization state (never includes tokens).

        Returns:
            Dictionary with configured/linked flags and access token expiry
        """
        tokens = self._load_token_set()
        now = _now_ms()
        return {
            "configured": self.is_configured(),
            "linked": tokens is not None,
            "access_token_fresh": tokens is not None and tokens.is_fresh(now),
            "expires_at_ms": tokens.expires_at_ms if tokens else None,
            "pending_authorization": self.store.get(PREF_CODE_VERIFIER) is not None,
        }
