"""
Session handling and the connection guard.

`GraphSession` is the token provider handed to `GraphClient`. It never
prompts on its own: when no token can be produced silently it raises
`NoSessionError`, and only `ensure_connection` decides to call `login()`.

Token sources (first match wins):
  1) a pre-acquired access token from configuration
  2) confidential client (client secret) -> client-credentials flow
  3) public client + persisted token cache -> silent, else device-code prompt
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import msal

from .config import GraphSection
from .graph_client import GraphClient, GraphError


class NoSessionError(RuntimeError):
    """No usable session exists; an interactive login is required."""


class AuthError(RuntimeError):
    """Credential acquisition failed."""


class ConnectionGuardError(RuntimeError):
    """The service is unreachable or the session cannot be established."""


def _token_error(result: Dict[str, Any]) -> str:
    return str(result.get("error_description") or result.get("error") or "unknown error")


class GraphSession:
    """Token provider for one run."""

    def __init__(
        self,
        cfg: GraphSection,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
        prompt: Callable[[str], None] = print,
        app: Any = None,
    ) -> None:
        self.cfg = cfg
        self.log = logger or logging.getLogger("licsync.session")
        self.prompt = prompt
        self._token: Optional[str] = cfg.access_token or None
        self._cache: Optional[msal.SerializableTokenCache] = None
        self._app = app

    # ---------------- msal plumbing ----------------
    @property
    def confidential(self) -> bool:
        return bool(self.cfg.client_secret)

    def _cache_path(self) -> Path:
        return Path(os.path.expanduser(self.cfg.token_cache))

    def _load_cache(self) -> msal.SerializableTokenCache:
        if self._cache is None:
            cache = msal.SerializableTokenCache()
            path = self._cache_path()
            if path.is_file():
                cache.deserialize(path.read_text(encoding="utf-8"))
            self._cache = cache
        return self._cache

    def _save_cache(self) -> None:
        if self._cache is None or not self._cache.has_state_changed:
            return
        path = self._cache_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self._cache.serialize(), encoding="utf-8")
        try:
            os.chmod(path, 0o600)
        except OSError:
            self.log.debug("Could not restrict permissions on %s", path)

    def _get_app(self) -> Any:
        if self._app is None:
            if self.confidential:
                self._app = msal.ConfidentialClientApplication(
                    self.cfg.client_id,
                    authority=self.cfg.authority,
                    client_credential=self.cfg.client_secret,
                )
            else:
                self._app = msal.PublicClientApplication(
                    self.cfg.client_id,
                    authority=self.cfg.authority,
                    token_cache=self._load_cache(),
                )
        return self._app

    def _scopes(self) -> list:
        return [s for s in self.cfg.scopes if s]

    # ---------------- public API ----------------
    def token(self) -> str:
        """Return a bearer token without prompting.

        Raises:
            NoSessionError: when no token can be obtained silently.
            AuthError: when the identity platform rejects the request.
        """
        if self._token:
            return self._token

        app = self._get_app()
        if self.confidential:
            result = app.acquire_token_for_client(scopes=self._scopes())
            if "access_token" not in result:
                raise AuthError(f"Client-credentials token acquisition failed: {_token_error(result)}")
            return result["access_token"]

        accounts = app.get_accounts()
        if not accounts:
            raise NoSessionError("No cached account; sign-in required")
        result = app.acquire_token_silent(self._scopes(), account=accounts[0])
        self._save_cache()
        if not result or "access_token" not in result:
            raise NoSessionError("Cached session expired; sign-in required")
        return result["access_token"]

    def login(self) -> None:
        """Prompt for credentials (device-code flow) and establish a session.

        Raises:
            AuthError: when the prompt fails or is declined.
        """
        if self.cfg.access_token:
            raise AuthError("The configured access token was rejected; acquire a new one")
        if self.confidential:
            # Nothing to prompt for: the secret is the credential
            self.token()
            return

        app = self._get_app()
        flow = app.initiate_device_flow(scopes=self._scopes())
        if "user_code" not in flow:
            raise AuthError(f"Could not start device-code sign-in: {_token_error(flow)}")
        self.prompt(flow["message"])
        self.log.info("Waiting for device-code sign-in to complete")
        result = app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            raise AuthError(f"Sign-in failed: {_token_error(result)}")
        self._save_cache()
        self._token = result["access_token"]
        self.log.info("Signed in as %s", (result.get("id_token_claims") or {}).get("preferred_username", "?"))


def ensure_connection(client: GraphClient, session: GraphSession, logger: logging.LoggerAdapter) -> None:
    """Verify (or establish) a session before any work. Single attempt, fail fast.

    Raises:
        ConnectionGuardError: on any failure other than a missing session,
            or when establishing the session fails.
    """
    try:
        client.ping()
        logger.info("Connected to %s", client.base_url)
        return
    except NoSessionError as exc:
        logger.info("No active session (%s); prompting for credentials", exc)
    except GraphError as exc:
        if exc.status != 401:
            raise ConnectionGuardError(f"Service check failed: {exc}") from exc
        logger.info("Service rejected the current session; prompting for credentials")
    except AuthError as exc:
        raise ConnectionGuardError(str(exc)) from exc

    try:
        session.login()
        client.ping()
    except (AuthError, NoSessionError) as exc:
        raise ConnectionGuardError(f"Sign-in failed: {exc}") from exc
    except GraphError as exc:
        raise ConnectionGuardError(f"Service check failed after sign-in: {exc}") from exc
    logger.info("Connected to %s", client.base_url)
