"""
GraphClient: JSON-first HTTP client for the Microsoft Graph licensing surface.

This module provides a single client with:
  * Consistent JSON helpers (`get_json`, `post_json`, `patch_json`)
  * The licensing operations the reconciler consumes (SKU catalog, user
    license state, usage location, assign/remove/update SKU)
  * Explicit error reporting through :class:`GraphError`

Every call is a single attempt: no retries, no backoff. A bearer token is
obtained from the injected ``token_provider`` before each request, so a
session established mid-run is picked up by the next call.

Example:
    client = GraphClient(base_url, token_provider=session.token)
    skus = client.list_subscribed_skus()
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from urllib.parse import quote

import requests

JSON = Union[Dict[str, Any], List[Any]]

_LOG_PREVIEW = 600
_REDACT_KEYS = {"token", "authorization", "password", "access_token", "client_secret"}

# Live provisioning states counted as "feature currently enabled"
ENABLED_STATUSES = frozenset({"success", "pendingactivation", "pendinginput"})


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(obj, ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, list):
        return [_redact(x) for x in obj]
    return obj


@dataclass
class GraphError(Exception):
    """HTTP/transport error with context. ``status`` is 0 for transport failures."""
    status: int
    url: str
    body: str = ""
    message: str = ""

    def __str__(self) -> str:
        base = f"GraphError(status={self.status}, url={self.url})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base


class UserNotFoundError(LookupError):
    """Raised when a principal name does not resolve to a directory user."""

    def __init__(self, upn: str) -> None:
        super().__init__(f"User not found: {upn}")
        self.upn = upn


@dataclass(frozen=True)
class AssignedPlan:
    plan_id: str
    name: str
    provisioning_status: str

    @property
    def enabled(self) -> bool:
        return self.provisioning_status.strip().lower() in ENABLED_STATUSES


@dataclass(frozen=True)
class AssignedSku:
    sku_id: str
    part_number: str
    plans: tuple


@dataclass(frozen=True)
class DirectoryUser:
    """Live license state of one account."""
    id: str
    upn: str
    usage_location: str
    skus: tuple


class GraphClient:
    """High-level HTTP client for Microsoft Graph licensing calls.

    Args:
        base_url: Graph root, e.g. ``https://graph.microsoft.com/v1.0``.
        token_provider: Callable returning a bearer token. May raise to signal
            that no session exists.
        timeout_sec: Per-request timeout (seconds). A hung call fails after this.
        verify_tls: If False, certificate verification is disabled.
        logger: Run logger; defaults to a module logger.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str],
        *,
        timeout_sec: int = 60,
        verify_tls: bool = True,
        logger: Optional[logging.LoggerAdapter] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = float(timeout_sec)
        self.verify_tls = verify_tls
        self.log = logger or logging.getLogger("licsync.graph")
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "licsync/GraphClient",
        })

    # ---------------- low-level ----------------
    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _req(self, method: str, path: str, *, json_body: Optional[Dict[str, Any]] = None) -> JSON:
        """Perform one HTTP request and return the JSON response (or empty dict).

        Raises:
            GraphError: on transport failures (status 0) and non-2xx responses.
        """
        url = self._url(path)
        headers = {"Authorization": f"Bearer {self.token_provider()}"}
        if json_body is not None:
            self.log.debug("HTTP %s %s body=%s", method, url, _short_json(_redact(json_body)))
        try:
            resp = self.session.request(
                method=method.upper(),
                url=url,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
                verify=self.verify_tls,
            )
        except requests.RequestException as exc:
            self.log.debug("HTTP %s %s failed: %s", method, url, exc)
            raise GraphError(status=0, url=url, message=str(exc)) from exc

        if resp.status_code >= 400:
            snippet = resp.text[:_LOG_PREVIEW]
            self.log.debug("HTTP %s %s -> %s: %s", method, url, resp.status_code, snippet)
            raise GraphError(status=resp.status_code, url=url, body=snippet, message=self._error_message(resp))

        self.log.debug("HTTP %s %s -> %s", method, url, resp.status_code)
        if resp.status_code == 204 or not resp.text:
            return {}
        try:
            return resp.json()
        except ValueError:
            self.log.warning("Non-JSON response from %s %s, returning empty dict", method, url)
            return {}

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        """Extract Graph's ``error.message`` when present."""
        try:
            data = resp.json()
        except ValueError:
            return resp.reason or ""
        err = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict):
            code = err.get("code") or ""
            msg = err.get("message") or ""
            return f"{code}: {msg}".strip(": ")
        return resp.reason or ""

    def get_json(self, path: str) -> JSON:
        return self._req("GET", path)

    def post_json(self, path: str, data: Dict[str, Any]) -> JSON:
        return self._req("POST", path, json_body=data)

    def patch_json(self, path: str, data: Dict[str, Any]) -> JSON:
        return self._req("PATCH", path, json_body=data)

    def get_all(self, path: str) -> List[Dict[str, Any]]:
        """GET a collection, following ``@odata.nextLink`` pages."""
        items: List[Dict[str, Any]] = []
        next_path: Optional[str] = path
        while next_path:
            page = self.get_json(next_path)
            if not isinstance(page, dict):
                break
            items.extend(v for v in page.get("value") or [] if isinstance(v, dict))
            next_path = page.get("@odata.nextLink")
        return items

    @staticmethod
    def user_path(upn: str) -> str:
        return f"users/{quote(upn, safe='@')}"

    # ---------------- licensing operations ----------------
    def ping(self) -> None:
        """Lightweight read used to prove a working session."""
        self.get_json("organization?$select=id")

    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        """Return the tenant's subscribed SKUs (raw Graph objects)."""
        return self.get_all("subscribedSkus")

    def get_user(self, upn: str) -> DirectoryUser:
        """Return the live license state of *upn*.

        Raises:
            UserNotFoundError: when Graph answers 404 for the principal name.
            GraphError: on any other failure.
        """
        base = self.user_path(upn)
        try:
            user = self.get_json(f"{base}?$select=id,userPrincipalName,usageLocation")
            details = self.get_all(f"{base}/licenseDetails")
        except GraphError as exc:
            if exc.status == 404:
                raise UserNotFoundError(upn) from exc
            raise

        skus = []
        for d in details:
            plans = tuple(
                AssignedPlan(
                    plan_id=str(p.get("servicePlanId") or ""),
                    name=str(p.get("servicePlanName") or ""),
                    provisioning_status=str(p.get("provisioningStatus") or ""),
                )
                for p in d.get("servicePlans") or []
            )
            skus.append(AssignedSku(
                sku_id=str(d.get("skuId") or ""),
                part_number=str(d.get("skuPartNumber") or ""),
                plans=plans,
            ))
        return DirectoryUser(
            id=str(user.get("id") or ""),
            upn=str(user.get("userPrincipalName") or upn),
            usage_location=str(user.get("usageLocation") or ""),
            skus=tuple(skus),
        )

    def set_usage_location(self, upn: str, location: str) -> None:
        self.patch_json(self.user_path(upn), {"usageLocation": location})

    def assign_license(
        self,
        upn: str,
        *,
        add: Iterable[Dict[str, Any]] = (),
        remove: Iterable[str] = (),
    ) -> JSON:
        body = {"addLicenses": list(add), "removeLicenses": list(remove)}
        return self.post_json(f"{self.user_path(upn)}/assignLicense", body)

    def add_sku(self, upn: str, sku_id: str, disabled_plans: Iterable[str] = ()) -> JSON:
        return self.assign_license(upn, add=[{"skuId": sku_id, "disabledPlans": list(disabled_plans)}])

    def remove_sku(self, upn: str, sku_id: str) -> JSON:
        return self.assign_license(upn, remove=[sku_id])

    def update_sku_options(self, upn: str, sku_id: str, disabled_plans: Iterable[str]) -> JSON:
        # Re-adding a held SKU replaces its disabled-plan set
        return self.assign_license(upn, add=[{"skuId": sku_id, "disabledPlans": list(disabled_plans)}])
