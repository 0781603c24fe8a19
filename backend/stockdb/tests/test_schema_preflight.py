import pytest

from stockdb import main


class _FakeResult:
    def __init__(self, versions):
        self._versions = versions

    def fetchall(self):
        return [(v,) for v in self._versions]


class _FakeSession:
    def __init__(self, versions):
        self._versions = versions

    def execute(self, _query):
        return _FakeResult(self._versions)

    def close(self):
        pass


def test_schema_preflight_noop_when_not_strict(monkeypatch):
    monkeypatch.setenv("SCHEMA_STRICT", "0")
    monkeypatch.setattr(main, "WriteSessionLocal", lambda: pytest.fail("database must not be queried"))

    main._enforce_schema_head_sync_if_configured()


def test_schema_preflight_raises_when_behind_head(monkeypatch):
    monkeypatch.setenv("SCHEMA_STRICT", "1")
    monkeypatch.setattr(main, "WriteSessionLocal", lambda: _FakeSession(["0000_previous"]))

    with pytest.raises(RuntimeError):
        main._enforce_schema_head_sync_if_configured()


def test_schema_preflight_passes_at_shipped_head(monkeypatch):
    monkeypatch.setenv("SCHEMA_STRICT", "true")
    monkeypatch.setattr(main, "WriteSessionLocal", lambda: _FakeSession(["8b3f2d6a4c11"]))

    main._enforce_schema_head_sync_if_configured()


def test_schema_preflight_rejects_the_revision_before_push_support(monkeypatch):
    monkeypatch.setenv("SCHEMA_STRICT", "1")
    monkeypatch.setattr(main, "WriteSessionLocal", lambda: _FakeSession(["5e1a7c3d9b20"]))

    with pytest.raises(RuntimeError):
        main._enforce_schema_head_sync_if_configured()
