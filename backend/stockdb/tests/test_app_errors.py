import asyncio
import json

from stockdb import main
from stockdb.errors import FormatError, InsufficientStockError, NetworkError


def test_stock_errors_render_code_and_details():
    exc = InsufficientStockError(item_id=7, sku="HB-7", available=1, requested=3)

    response = asyncio.run(main.stock_error_handler(None, exc))

    assert response.status_code == 409
    body = json.loads(response.body)
    assert body["code"] == "INSUFFICIENT_STOCK"
    assert body["details"]["available"] == 1
    assert body["details"]["requested"] == 3


def test_adapter_errors_keep_their_status():
    assert asyncio.run(main.stock_error_handler(None, FormatError("bad csv"))).status_code == 422
    assert NetworkError("down").retryable is True
    assert FormatError("bad").retryable is False


def test_routers_are_mounted():
    paths = {route.path for route in main.app.routes}

    assert "/health" in paths
    assert "/inventory/items/{item_id}/deduct" in paths
    assert "/sync/webhooks/{source_key}" in paths
    assert main.health() == {"status": "ok"}


def test_cors_origins_are_opt_in(monkeypatch):
    monkeypatch.delenv("CORS_ALLOWED_ORIGINS", raising=False)
    assert main._cors_origins() == []

    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://backoffice.example.com, ,https://ops.example.com")
    assert main._cors_origins() == ["https://backoffice.example.com", "https://ops.example.com"]
