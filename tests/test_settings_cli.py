import cli
from plb.__main__ import main
from plb.settings import Settings, _env_bool, _env_float, _env_int


def test_scope_paths():
    s = Settings(zk_host="zk", zk_port="2181", scope="batman", namespace="/service/")
    assert s.zk_hosts == "zk:2181"
    assert s.scope_path == "/service/batman"
    assert s.leader_path == "/service/batman/leader"
    assert s.missing_required() == []


def test_missing_required_env(caplog):
    s = Settings(zk_host="zk", zk_port=None, scope="")
    assert s.missing_required() == ["ZOOKEEPER_PORT", "PATRONI_SCOPE"]
    with caplog.at_level("ERROR"):
        assert main([], s=s) == 1
    assert "PATRONI_SCOPE environment variable is not specified" in caplog.text


def test_env_parsing(monkeypatch):
    monkeypatch.setenv("PLB_MAXCONN", "250")
    monkeypatch.setenv("PLB_VALIDATE_CONFIG", "yes")
    monkeypatch.setenv("PLB_BACKOFF_BASE_S", "not-a-number")
    monkeypatch.delenv("PLB_API_PORT", raising=False)
    assert _env_int("PLB_MAXCONN", 100) == 250
    assert _env_bool("PLB_VALIDATE_CONFIG") is True
    assert _env_float("PLB_BACKOFF_BASE_S", 0.5) == 0.5
    assert _env_int("PLB_API_PORT", 8008) == 8008


class _Resp:
    def __init__(self, payload, ok=True, text=""):
        self._payload = payload
        self.ok = ok
        self.text = text

    def json(self):
        return self._payload


def test_cli_status(monkeypatch, capsys):
    status = {
        "scope": "batman",
        "state": "idle",
        "leader": "node1",
        "primary": {"id": "postgresql_10.0.0.1_5433", "host": "10.0.0.1:5433"},
        "replicas": [{"id": "postgresql_10.0.0.2_5433", "host": "10.0.0.2:5433"}],
        "pid": 4242,
        "restarts": 0,
        "applies": 3,
        "last_applied_at": "2026-01-01T00:00:00Z",
        "last_error": None,
    }
    seen = []

    def fake_get(url, params=None, timeout=None):
        seen.append(url)
        return _Resp(status)

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["--api", "http://lb:8008/", "status"]) == 0
    out = capsys.readouterr().out
    assert seen == ["http://lb:8008/status"]
    assert "primary:  postgresql_10.0.0.1_5433 10.0.0.1:5433" in out
    assert "  - postgresql_10.0.0.2_5433 10.0.0.2:5433" in out
    assert "pid 4242" in out


def test_cli_config_not_applied(monkeypatch, capsys):
    monkeypatch.setattr(
        cli.requests, "get", lambda url, params=None, timeout=None: _Resp({"detail": "No config applied yet"}, ok=False)
    )
    assert cli.main(["config"]) == 1
    assert "No config applied yet" in capsys.readouterr().err
