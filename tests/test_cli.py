import json
import re

import pytest

from licsync.cli import main

HEADER = "UserPrincipalName,UsageLocation,E3:EXCHANGE,E3:TEAMS,F1:EXCHANGE"


@pytest.fixture()
def env(graph, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LICSYNC_GRAPH__ACCESS_TOKEN", "TEST")
    monkeypatch.setenv("LICSYNC_GRAPH__BASE_URL", graph.base_url)
    return graph


def _write_input(tmp_path, *lines, name="LicenseInfo.csv"):
    (tmp_path / name).write_text("\n".join((HEADER,) + lines) + "\n", encoding="utf-8")


def test_reconcile_converges_users(env, tmp_path, capsys):
    env.add_user("alice@contoso.com", "US")
    env.add_user("bob@contoso.com", "US", {"sku-e3": []})
    env.add_user("carol@contoso.com", "", {"sku-f1": []})
    _write_input(
        tmp_path,
        "alice@contoso.com,US,1,1,",
        "bob@contoso.com,US,1,0,",
        "carol@contoso.com,BE,,,0",
        "ghost@contoso.com,US,1,1,1",
    )

    rc = main([])

    assert rc == 0
    assert env.users["alice@contoso.com"]["licenses"] == {"sku-e3": []}
    assert env.users["bob@contoso.com"]["licenses"] == {"sku-e3": ["plan-e3-teams"]}
    assert env.users["carol@contoso.com"]["licenses"] == {}
    assert env.users["carol@contoso.com"]["usageLocation"] == "BE"
    assert not any("ghost" in path for _, path, _ in env.mutations())

    out = capsys.readouterr().out
    assert "ghost@contoso.com" in out and "user not found" in out

    logs = list((tmp_path / "logs").glob("reconcile_*.log"))
    assert len(logs) == 1
    assert re.fullmatch(r"reconcile_\d{8}-\d{6}-[0-9a-f]{6}\.log", logs[0].name)
    text = logs[0].read_text(encoding="utf-8")
    assert "Summary: added=1 | updated=2 | removed=1" in text
    assert "Run completed" in text


def test_input_file_alias_and_dry_run(env, tmp_path, capsys):
    env.add_user("alice@contoso.com", "US")
    _write_input(tmp_path, "alice@contoso.com,US,1,1,1", name="other.csv")

    rc = main(["--InputFilePath", "other.csv", "--dry-run", "--format", "json"])

    assert rc == 0
    assert env.mutations() == []
    rows = json.loads(capsys.readouterr().out)
    assert {r["result"] for r in rows} == {"planned"}
    assert {r["sku"] for r in rows} == {"E3", "F1"}


def test_header_mismatch_is_fatal(env, tmp_path):
    env.add_user("alice@contoso.com", "US")
    (tmp_path / "LicenseInfo.csv").write_text(
        "UserPrincipalName,UsageLocation,E3:EXCHANGE\nalice@contoso.com,US,1\n", encoding="utf-8"
    )
    assert main([]) == 3
    assert env.mutations() == []


def test_plan_header_match_accepts_wrong_sku_prefix(env, tmp_path):
    (tmp_path / "LicenseInfo.csv").write_text(
        "UserPrincipalName,UsageLocation,X:EXCHANGE,X:TEAMS\n", encoding="utf-8"
    )
    assert main(["--header-match", "plan"]) == 0
    assert main([]) == 3


def test_missing_input_file(env):
    assert main(["-i", "absent.csv"]) == 3


def test_bad_cells_do_not_change_exit_code(env, tmp_path, capsys):
    env.add_user("alice@contoso.com", "US")
    _write_input(tmp_path, "alice@contoso.com,US,maybe,1,1", ",US,1,1,1")
    assert main([]) == 0
    assert env.mutations() == []
    assert capsys.readouterr().out.count("error") >= 2


def test_generate_writes_template_once(env, tmp_path):
    assert main(["--GenerateCSVFile"]) == 0
    template = tmp_path / "LicenseTemplate.csv"
    assert template.read_text(encoding="utf-8").splitlines() == [HEADER]
    assert env.mutations() == []

    assert main(["-g"]) == 3
    assert template.read_text(encoding="utf-8").splitlines() == [HEADER]


def test_generate_to_custom_path(env, tmp_path):
    assert main(["-g", "--template-file", "custom.csv"]) == 0
    assert (tmp_path / "custom.csv").exists()
    assert not (tmp_path / "LicenseTemplate.csv").exists()


def test_rejected_token_fails_connection_guard(env, tmp_path, monkeypatch):
    monkeypatch.setenv("LICSYNC_GRAPH__ACCESS_TOKEN", "WRONG")
    _write_input(tmp_path, "alice@contoso.com,US,1,1,1")
    assert main([]) == 5
    assert [path for _, path, _ in env.calls] == ["/organization"]


def test_unreachable_service_fails_connection_guard(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LICSYNC_GRAPH__ACCESS_TOKEN", "TEST")
    monkeypatch.setenv("LICSYNC_GRAPH__BASE_URL", "http://127.0.0.1:9/v1.0")
    monkeypatch.setenv("LICSYNC_GRAPH__TIMEOUT_SEC", "2")
    assert main(["-g"]) == 5


def test_missing_configuration(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("LICSYNC_GRAPH__ACCESS_TOKEN", "LICSYNC_GRAPH__TENANT_ID", "LICSYNC_GRAPH__CLIENT_ID"):
        monkeypatch.delenv(key, raising=False)
    assert main([]) == 2
    assert list((tmp_path / "logs").glob("reconcile_*.log"))


def test_missing_config_file(env):
    assert main(["--config", "nope.yml"]) == 2
