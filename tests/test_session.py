import pytest

from licsync.core.config import GraphSection
from licsync.core.graph_client import GraphError
from licsync.core.session import (
    AuthError,
    ConnectionGuardError,
    GraphSession,
    NoSessionError,
    ensure_connection,
)


class _Client:
    base_url = "https://graph.example/v1.0"

    def __init__(self, *outcomes):
        # each outcome: None (ok) or an exception to raise
        self.outcomes = list(outcomes)
        self.pings = 0

    def ping(self):
        self.pings += 1
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome


class _Session:
    def __init__(self, fail=None):
        self.logins = 0
        self.fail = fail

    def login(self):
        self.logins += 1
        if self.fail is not None:
            raise self.fail


def _err(status):
    return GraphError(status=status, url="https://graph.example/v1.0/organization")


def test_live_session_is_used_without_prompt(log):
    client, session = _Client(None), _Session()
    ensure_connection(client, session, log)
    assert (client.pings, session.logins) == (1, 0)


def test_missing_session_prompts_once(log):
    client, session = _Client(NoSessionError("none"), None), _Session()
    ensure_connection(client, session, log)
    assert (client.pings, session.logins) == (2, 1)


def test_rejected_session_prompts_once(log):
    client, session = _Client(_err(401), None), _Session()
    ensure_connection(client, session, log)
    assert session.logins == 1


def test_other_service_failure_is_fatal_without_prompt(log):
    client, session = _Client(_err(503)), _Session()
    with pytest.raises(ConnectionGuardError):
        ensure_connection(client, session, log)
    assert session.logins == 0


def test_declined_prompt_is_fatal(log):
    client, session = _Client(NoSessionError("none")), _Session(fail=AuthError("declined"))
    with pytest.raises(ConnectionGuardError) as exc:
        ensure_connection(client, session, log)
    assert "declined" in str(exc.value)


def test_failure_after_sign_in_is_fatal(log):
    client, session = _Client(NoSessionError("none"), _err(401)), _Session()
    with pytest.raises(ConnectionGuardError):
        ensure_connection(client, session, log)
    assert client.pings == 2


class _App:
    """Stands in for an msal public client application."""

    def __init__(self, accounts=(), silent=None, flow=None, device_result=None):
        self.accounts = list(accounts)
        self.silent = silent
        self.flow = flow or {"user_code": "ABC", "message": "Go to https://microsoft.com/devicelogin"}
        self.device_result = device_result or {"access_token": "fresh"}

    def get_accounts(self):
        return self.accounts

    def acquire_token_silent(self, scopes, account):
        return self.silent

    def initiate_device_flow(self, scopes):
        return self.flow

    def acquire_token_by_device_flow(self, flow):
        return self.device_result


def _cfg(tmp_path, **kw):
    return GraphSection(tenant_id="t", client_id="c", token_cache=str(tmp_path / "cache.json"), **kw)


def test_configured_access_token_wins(tmp_path):
    session = GraphSession(_cfg(tmp_path, access_token="PRESET"), app=_App())
    assert session.token() == "PRESET"
    with pytest.raises(AuthError):
        session.login()


def test_no_cached_account_raises_no_session(tmp_path):
    session = GraphSession(_cfg(tmp_path), app=_App())
    with pytest.raises(NoSessionError):
        session.token()


def test_cached_account_is_used_silently(tmp_path):
    session = GraphSession(_cfg(tmp_path), app=_App(accounts=[{"username": "u"}], silent={"access_token": "cached"}))
    assert session.token() == "cached"


def test_expired_cache_raises_no_session(tmp_path):
    session = GraphSession(_cfg(tmp_path), app=_App(accounts=[{"username": "u"}], silent=None))
    with pytest.raises(NoSessionError):
        session.token()


def test_device_code_login_sets_token(tmp_path):
    shown = []
    session = GraphSession(_cfg(tmp_path), app=_App(), prompt=shown.append)
    session.login()
    assert session.token() == "fresh"
    assert "devicelogin" in shown[0]


def test_device_code_failure_raises_auth_error(tmp_path):
    app = _App(device_result={"error": "authorization_declined", "error_description": "user said no"})
    session = GraphSession(_cfg(tmp_path), app=app, prompt=lambda m: None)
    with pytest.raises(AuthError) as exc:
        session.login()
    assert "user said no" in str(exc.value)
