"""Run the stockdb API under uvicorn, configured from the environment."""

import os
from typing import Any, Dict

import uvicorn

from stockdb.logging_config import configure_logging

APP_PATH = "stockdb.main:app"


def _flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in {"1", "true", "yes", "on"}


def uvicorn_options() -> Dict[str, Any]:
    """Keyword arguments for ``uvicorn.run``.

    Sync runs use worker threads inside the process, so more than one
    uvicorn worker is only worth it when the database is PostgreSQL.
    """
    options: Dict[str, Any] = {
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": int(os.getenv("PORT", "8000")),
        "log_level": os.getenv("LOG_LEVEL", "info").lower(),
        # Our handler is installed by configure_logging; keep uvicorn's off.
        "log_config": None,
        "proxy_headers": True,
        "forwarded_allow_ips": os.getenv("FORWARDED_ALLOW_IPS", "*"),
        "timeout_keep_alive": int(os.getenv("KEEPALIVE_SECONDS", "5")),
    }
    if _flag("RELOAD"):
        options["reload"] = True
    else:
        workers = int(os.getenv("WEB_WORKERS", "1"))
        if workers > 1:
            options["workers"] = workers

    certfile = os.getenv("SSL_CERTFILE")
    if certfile:
        options["ssl_certfile"] = certfile
        options["ssl_keyfile"] = os.getenv("SSL_KEYFILE") or None
    return options


def main() -> None:
    options = uvicorn_options()
    configure_logging(options["log_level"])
    uvicorn.run(APP_PATH, **options)


if __name__ == "__main__":
    main()
