import copy
import itertools
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import unquote, urlparse

import pytest

from licsync.core.catalog import LicenseCatalog
from licsync.core.logging_setup import RunLogger

# Tenant used across tests: E3 (EXCHANGE, TEAMS) and F1 (EXCHANGE)
SKUS = [
    {
        "skuId": "sku-e3",
        "skuPartNumber": "E3",
        "servicePlans": [
            {"servicePlanId": "plan-e3-exchange", "servicePlanName": "EXCHANGE"},
            {"servicePlanId": "plan-e3-teams", "servicePlanName": "TEAMS"},
        ],
    },
    {
        "skuId": "sku-f1",
        "skuPartNumber": "F1",
        "servicePlans": [
            {"servicePlanId": "plan-f1-exchange", "servicePlanName": "EXCHANGE"},
        ],
    },
]

TOKEN = "TEST"
_LOGGER_IDS = itertools.count()


class _GraphState:
    def __init__(self):
        self.skus = copy.deepcopy(SKUS)
        # upn -> {"id", "usageLocation", "licenses": {skuId: [disabled plan ids]}}
        self.users = {}
        self.calls = []
        self.fail_paths = {}

    def add_user(self, upn, usage_location="", licenses=None):
        self.users[upn.lower()] = {
            "id": f"id-{upn}",
            "userPrincipalName": upn,
            "usageLocation": usage_location,
            "licenses": dict(licenses or {}),
        }

    def mutations(self):
        return [c for c in self.calls if c[0] in ("POST", "PATCH")]

    def license_details(self, user):
        out = []
        for sku in self.skus:
            disabled = user["licenses"].get(sku["skuId"])
            if disabled is None:
                continue
            out.append({
                "skuId": sku["skuId"],
                "skuPartNumber": sku["skuPartNumber"],
                "servicePlans": [
                    {
                        "servicePlanId": p["servicePlanId"],
                        "servicePlanName": p["servicePlanName"],
                        "provisioningStatus": "Disabled" if p["servicePlanId"] in disabled else "Success",
                    }
                    for p in sku["servicePlans"]
                ],
            })
        return out


def _make_handler(state):
    class _Graph(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _send_json(self, status, obj=None):
            raw = b"" if obj is None else json.dumps(obj).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(raw)))
            self.end_headers()
            self.wfile.write(raw)

        def _error(self, status, code, message):
            self._send_json(status, {"error": {"code": code, "message": message}})

        def _body(self):
            length = int(self.headers.get("Content-Length", "0"))
            raw = self.rfile.read(length) if length else b""
            return json.loads(raw.decode("utf-8")) if raw else None

        def _route(self, method):
            parts = [p for p in unquote(urlparse(self.path).path).split("/") if p]
            if parts[:1] == ["v1.0"]:
                parts = parts[1:]
            path = "/" + "/".join(parts)
            body = self._body()
            state.calls.append((method, path, body))

            if self.headers.get("Authorization", "") != f"Bearer {TOKEN}":
                self._error(401, "InvalidAuthenticationToken", "Access token is empty.")
                return
            if (method, path) in state.fail_paths:
                status = state.fail_paths[(method, path)]
                self._error(status, "Request_BadRequest", "forced failure")
                return

            if method == "GET" and parts == ["organization"]:
                self._send_json(200, {"value": [{"id": "org-1"}]})
            elif method == "GET" and parts == ["subscribedSkus"]:
                self._send_json(200, {"value": state.skus})
            elif parts[:1] == ["users"] and len(parts) >= 2:
                user = state.users.get(parts[1].lower())
                if user is None:
                    self._error(404, "Request_ResourceNotFound", f"Resource '{parts[1]}' does not exist")
                    return
                self._user(method, parts[2:], user, body)
            else:
                self._error(404, "NotFound", path)

        def _user(self, method, rest, user, body):
            if method == "GET" and not rest:
                self._send_json(200, {k: v for k, v in user.items() if k != "licenses"})
            elif method == "GET" and rest == ["licenseDetails"]:
                self._send_json(200, {"value": state.license_details(user)})
            elif method == "PATCH" and not rest:
                user.update(body or {})
                self._send_json(204)
            elif method == "POST" and rest == ["assignLicense"]:
                for sku_id in body.get("removeLicenses") or []:
                    user["licenses"].pop(sku_id, None)
                for lic in body.get("addLicenses") or []:
                    user["licenses"][lic["skuId"]] = list(lic.get("disabledPlans") or [])
                self._send_json(200, {"id": user["id"]})
            else:
                self._error(405, "MethodNotAllowed", method)

        def do_GET(self):  # noqa: N802
            self._route("GET")

        def do_POST(self):  # noqa: N802
            self._route("POST")

        def do_PATCH(self):  # noqa: N802
            self._route("PATCH")

        def log_message(self, fmt, *args):  # silence server logs during tests
            return

    return _Graph


@pytest.fixture()
def graph():
    """In-process fake of the Graph licensing endpoints."""
    state = _GraphState()
    server = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(state))
    host, port = server.server_address
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    state.base_url = f"http://{host}:{port}/v1.0"
    yield state
    server.shutdown()
    server.server_close()
    thread.join(timeout=1.0)


@pytest.fixture()
def catalog():
    return LicenseCatalog.from_graph(SKUS)


@pytest.fixture()
def log():
    """A quiet run logger that writes nowhere but records what it was told."""
    records = []

    class _Capture(logging.Handler):
        def emit(self, record):
            records.append(record)

    base = logging.getLogger(f"licsync.test.{next(_LOGGER_IDS)}")
    base.setLevel(logging.DEBUG)
    base.propagate = False
    base.handlers = [_Capture()]
    adapter = RunLogger(base, {"run_id": "test"})
    adapter.records = records
    return adapter
