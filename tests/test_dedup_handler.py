import json
from typing import Any, Dict, List

import pytest

from sepm_dedup import dedup_handler
from sepm_dedup.dedup_handler import DedupSettings, run_dedup
from sepm_dedup.errors import AuthenticationFailure, DeletionFailure, FetchFailure, LogoutFailure


def _computer(uid: str, name: str, ts: int) -> Dict[str, Any]:
    return {"uniqueId": uid, "computerName": name, "hardwareKey": f"HW-{uid}", "lastUpdateTime": ts}


INVENTORY = [
    _computer("a1", "HOST-A", 100),
    _computer("b1", "HOST-B", 5),
    _computer("a2", "HOST-A", 300),
    _computer("a3", "HOST-A", 200),
    _computer("b2", "HOST-B", 6),
]


class _FakeClient:
    def __init__(self, inventory=None, auth_error=None, fetch_error=None, fail_delete=None, logout_error=None):
        self.inventory = list(inventory or [])
        self.auth_error = auth_error
        self.fetch_error = fetch_error
        self.fail_delete = fail_delete
        self.logout_error = logout_error
        self.events: List[str] = []
        self.deleted: List[str] = []

    def authenticate(self):
        self.events.append("auth")
        if self.auth_error:
            raise self.auth_error

    def list_all_computers(self):
        self.events.append("fetch")
        if self.fetch_error:
            raise self.fetch_error
        return self.inventory

    def delete_computer(self, unique_id):
        self.events.append(f"delete:{unique_id}")
        if unique_id == self.fail_delete:
            raise DeletionFailure(f"Delete failed for id={unique_id}: HTTP 500 Server Error")
        self.deleted.append(unique_id)

    def logout(self):
        self.events.append("logout")
        if self.logout_error:
            raise self.logout_error


def _settings(**kw) -> DedupSettings:
    base = dict(host="sepm.example", username="admin", password="pw", delete_delay_seconds=0)
    base.update(kw)
    return DedupSettings(**base)


def test_live_run_deletes_older_host_a_records():
    client = _FakeClient(INVENTORY)
    result = run_dedup(client, _settings(dry_run=False))
    assert client.deleted == ["a3", "a1"]
    assert result.groups_found == 1
    assert result.deleted == 2
    assert client.events[0] == "auth" and client.events[-1] == "logout"


def test_dry_run_reports_without_deleting():
    client = _FakeClient(INVENTORY)
    result = run_dedup(client, _settings())
    assert client.deleted == []
    assert not any(e.startswith("delete:") for e in client.events)
    assert len(result.outcomes) == 3
    assert [o.record.unique_id for o in result.by_action("retained")] == ["a2"]
    assert client.events[-1] == "logout"


def test_no_duplicates_still_logs_out():
    client = _FakeClient([_computer("b1", "HOST-B", 1), _computer("b2", "HOST-B", 2)])
    result = run_dedup(client, _settings(dry_run=False))
    assert result.groups_found == 0
    assert result.outcomes == []
    assert client.events == ["auth", "fetch", "logout"]


def test_auth_failure_aborts_before_fetch():
    client = _FakeClient(INVENTORY, auth_error=AuthenticationFailure("Login failed: HTTP 401 Unauthorized"))
    with pytest.raises(AuthenticationFailure):
        run_dedup(client, _settings())
    assert client.events == ["auth"]


def test_fetch_failure_aborts_before_grouping():
    client = _FakeClient(INVENTORY, fetch_error=FetchFailure("Page 2 request failed: HTTP 503"))
    with pytest.raises(FetchFailure):
        run_dedup(client, _settings(dry_run=False))
    assert client.deleted == []
    assert client.events == ["auth", "fetch", "logout"]


def test_delete_failure_stops_run_and_logs_out():
    client = _FakeClient(INVENTORY, fail_delete="a3")
    with pytest.raises(DeletionFailure):
        run_dedup(client, _settings(dry_run=False))
    assert client.events == ["auth", "fetch", "delete:a3", "logout"]


def test_logout_failure_is_only_a_warning():
    client = _FakeClient(INVENTORY, logout_error=LogoutFailure("Logout failed: timed out"))
    result = run_dedup(client, _settings(dry_run=False))
    assert result.deleted == 2


def test_settings_from_env_with_secret(monkeypatch):
    monkeypatch.setenv("SEPM_HOST", "env-host")
    monkeypatch.setenv("SEPM_DRY_RUN", "false")
    monkeypatch.setenv("SEPM_DUP_THRESHOLD", "3")
    monkeypatch.delenv("SEPM_PORT", raising=False)
    settings = DedupSettings.from_env({"username": "svc", "password": "s3cret", "domain": "corp"})
    assert settings.host == "env-host"
    assert settings.port == 8446
    assert settings.username == "svc"
    assert settings.domain == "corp"
    assert settings.dry_run is False
    assert settings.threshold == 3
    assert "s3cret" not in repr(settings)


def test_settings_default_to_dry_run(monkeypatch):
    monkeypatch.setenv("SEPM_HOST", "h")
    monkeypatch.delenv("SEPM_DRY_RUN", raising=False)
    assert DedupSettings.from_env({"username": "u", "password": "p"}).dry_run is True


def test_lambda_handler_uses_secret(monkeypatch):
    monkeypatch.setenv("SEPM_API_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:1:secret:sepm")
    monkeypatch.setenv("SEPM_HOST", "sepm.example")
    monkeypatch.setenv("SEPM_DELETE_DELAY_SECONDS", "0")
    monkeypatch.delenv("SEPM_DRY_RUN", raising=False)
    monkeypatch.setattr(dedup_handler, "_get_secret_cached", lambda arn: {"username": "svc", "password": "pw"})
    fake = _FakeClient(INVENTORY)
    seen = {}

    def build(settings):
        seen["settings"] = settings
        return fake

    monkeypatch.setattr(dedup_handler, "build_client", build)

    resp = dedup_handler.lambda_handler({"dry_run": False}, None)

    assert resp["statusCode"] == 200
    body = json.loads(resp["body"])
    assert body["deleted"] == 2
    assert body["dry_run"] is False
    assert seen["settings"].username == "svc"


def test_lambda_handler_reports_stage_on_failure(monkeypatch):
    monkeypatch.delenv("SEPM_API_SECRET_ARN", raising=False)
    monkeypatch.setenv("SEPM_HOST", "sepm.example")
    monkeypatch.setenv("SEPM_USERNAME", "svc")
    fake = _FakeClient(INVENTORY, fetch_error=FetchFailure("Page 1 request failed: HTTP 500"))
    monkeypatch.setattr(dedup_handler, "build_client", lambda settings: fake)

    resp = dedup_handler.lambda_handler({}, None)

    assert resp["statusCode"] == 500
    body = json.loads(resp["body"])
    assert body["stage"] == "fetch"
    assert "HTTP 500" in body["error"]


@pytest.mark.parametrize("flag,expected", [("false", False), ("False", False), ("0", False),
                                           ("true", True), (False, False), (True, True)])
def test_lambda_event_dry_run_parsing(monkeypatch, flag, expected):
    monkeypatch.delenv("SEPM_API_SECRET_ARN", raising=False)
    monkeypatch.setenv("SEPM_HOST", "sepm.example")
    monkeypatch.setenv("SEPM_USERNAME", "svc")
    monkeypatch.setenv("SEPM_DELETE_DELAY_SECONDS", "0")
    fake = _FakeClient(INVENTORY)
    monkeypatch.setattr(dedup_handler, "build_client", lambda settings: fake)

    resp = dedup_handler.lambda_handler({"dry_run": flag}, None)

    body = json.loads(resp["body"])
    assert body["dry_run"] is expected
    assert fake.deleted == ([] if expected else ["a3", "a1"])


def test_lambda_handler_secret_error_returns_500(monkeypatch):
    monkeypatch.setenv("SEPM_API_SECRET_ARN", "arn:aws:secretsmanager:us-east-1:1:secret:sepm")

    class _ClientError(Exception):
        pass

    def no_access(arn):
        raise _ClientError("AccessDeniedException when calling GetSecretValue")

    monkeypatch.setattr(dedup_handler, "_get_secret_cached", no_access)

    resp = dedup_handler.lambda_handler({}, None)

    assert resp["statusCode"] == 500
    assert "AccessDenied" in json.loads(resp["body"])["error"]
