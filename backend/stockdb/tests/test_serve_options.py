from stockdb import serve


def test_defaults_run_a_single_worker_without_tls(monkeypatch):
    for name in ("HOST", "PORT", "RELOAD", "WEB_WORKERS", "SSL_CERTFILE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    options = serve.uvicorn_options()

    assert options["host"] == "0.0.0.0"
    assert options["port"] == 8000
    assert options["log_config"] is None
    assert "workers" not in options
    assert "ssl_certfile" not in options


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("WEB_WORKERS", "3")
    monkeypatch.setenv("SSL_CERTFILE", "/etc/stockdb/cert.pem")
    monkeypatch.delenv("SSL_KEYFILE", raising=False)
    monkeypatch.delenv("RELOAD", raising=False)

    options = serve.uvicorn_options()

    assert options["port"] == 9100
    assert options["workers"] == 3
    assert options["ssl_certfile"] == "/etc/stockdb/cert.pem"
    assert options["ssl_keyfile"] is None


def test_reload_wins_over_workers(monkeypatch):
    monkeypatch.setenv("RELOAD", "yes")
    monkeypatch.setenv("WEB_WORKERS", "4")

    options = serve.uvicorn_options()

    assert options["reload"] is True
    assert "workers" not in options


def test_main_hands_the_app_path_to_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(serve.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(serve, "configure_logging", lambda level: None)
    monkeypatch.delenv("RELOAD", raising=False)

    serve.main()

    assert calls[0][0] == "stockdb.main:app"
