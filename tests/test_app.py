import os
import subprocess
import sys

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import app as app_module
from app import app
from stock_errors import StorageWriteError, UpstreamError, ValidationError
from stock_store import CollectionStore, JsonFileStorage, MemoryStorage, ProgressBroker


def _record(symbol, name="Sample Corp"):
    return {"Symbol": symbol, "Name": name, "Development": {"1 Month": "1.00%"}}


@pytest.fixture()
def client():
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def _use_store(monkeypatch, storage, enrich=None):
    store = CollectionStore(storage, enrich=enrich or (lambda symbol, **kwargs: _record(symbol.upper())))
    monkeypatch.setattr(app_module, "store", store)
    return store


def test_get_stocks_without_storage_returns_404(client, monkeypatch):
    _use_store(monkeypatch, MemoryStorage())
    response = client.get("/api/stocks")
    assert response.status_code == 404
    assert "error" in response.get_json()


def test_get_stocks_returns_collection(client, monkeypatch):
    _use_store(monkeypatch, MemoryStorage([_record("AAPL"), _record("MSFT")]))
    response = client.get("/api/stocks")
    assert response.status_code == 200
    assert [item["Symbol"] for item in response.get_json()] == ["AAPL", "MSFT"]


def test_get_stocks_corrupt_file_returns_500(client, monkeypatch, tmp_path):
    path = tmp_path / "stocks.json"
    path.write_text("{not json", encoding="utf-8")
    _use_store(monkeypatch, JsonFileStorage(str(path), use_orjson=False))
    response = client.get("/api/stocks")
    assert response.status_code == 500
    assert "error" in response.get_json()


def test_get_stocks_sets_etag(client, monkeypatch):
    monkeypatch.setattr(app_module, "ENABLE_HTTP_CACHE", True)
    _use_store(monkeypatch, MemoryStorage([_record("AAPL")]))
    response = client.get("/api/stocks")
    assert response.status_code == 200
    assert response.headers.get("ETag")


def test_add_requires_symbol(client, monkeypatch):
    _use_store(monkeypatch, MemoryStorage())
    response = client.post("/api/stocks/add", json={})
    assert response.status_code == 400
    response = client.post("/api/stocks/add", json={"symbol": "   "})
    assert response.status_code == 400


@pytest.mark.parametrize("body", ['["AAPL"]', '"AAPL"', "42"])
def test_add_rejects_non_object_body(client, monkeypatch, body):
    storage = MemoryStorage()
    _use_store(monkeypatch, storage)
    response = client.post("/api/stocks/add", data=body, content_type="application/json")
    assert response.status_code == 400
    assert "error" in response.get_json()
    assert storage.records is None


def test_add_persists_and_returns_stock(client, monkeypatch):
    storage = MemoryStorage()
    _use_store(monkeypatch, storage)
    response = client.post("/api/stocks/add", json={"symbol": "aapl"})
    assert response.status_code == 200
    data = response.get_json()
    assert data["message"] == "Stock added/updated"
    assert data["stock"]["Symbol"] == "AAPL"
    assert [item["Symbol"] for item in storage.records] == ["AAPL"]


def test_add_passes_market(client, monkeypatch):
    calls = []

    def fake_enrich(symbol, market=None):
        calls.append((symbol, market))
        return _record("VOLV-B.ST")

    _use_store(monkeypatch, MemoryStorage(), enrich=fake_enrich)
    response = client.post("/api/stocks/add", json={"symbol": "volv b", "market": "SE"})
    assert response.status_code == 200
    assert calls == [("volv b", "SE")]


def test_add_upstream_failure_returns_500(client, monkeypatch):
    def failing(symbol, **kwargs):
        raise UpstreamError("Historical data not available. Please try again later.")

    _use_store(monkeypatch, MemoryStorage(), enrich=failing)
    response = client.post("/api/stocks/add", json={"symbol": "AAPL"})
    assert response.status_code == 500
    assert response.get_json()["error"].startswith("Historical data not available")


def test_add_validation_error_returns_400(client, monkeypatch):
    def invalid(symbol, **kwargs):
        raise ValidationError("symbol is required")

    _use_store(monkeypatch, MemoryStorage(), enrich=invalid)
    response = client.post("/api/stocks/add", json={"symbol": "-"})
    assert response.status_code == 400


def test_add_unexpected_error_hides_details(client, monkeypatch):
    def broken(symbol, **kwargs):
        raise KeyError("internal detail")

    _use_store(monkeypatch, MemoryStorage(), enrich=broken)
    response = client.post("/api/stocks/add", json={"symbol": "AAPL"})
    assert response.status_code == 500
    assert "internal detail" not in response.get_data(as_text=True)


def test_add_write_failure_returns_500(client, monkeypatch):
    storage = MemoryStorage()

    def failing_write(records):
        raise StorageWriteError("disk full")

    monkeypatch.setattr(storage, "write", failing_write)
    _use_store(monkeypatch, storage)
    response = client.post("/api/stocks/add", json={"symbol": "AAPL"})
    assert response.status_code == 500


def test_update_reports_partial_failures(client, monkeypatch):
    def fake_enrich(symbol, **kwargs):
        if symbol == "MSFT":
            raise UpstreamError("Failed to fetch stock data for MSFT.")
        return _record(symbol, name="Refreshed")

    storage = MemoryStorage([_record("AAPL"), _record("MSFT"), _record("TSLA")])
    _use_store(monkeypatch, storage, enrich=fake_enrich)
    messages = []
    monkeypatch.setattr(app_module.progress_broker, "notify", messages.append)

    response = client.post("/api/stocks/update")
    assert response.status_code == 200
    data = response.get_json()
    assert data["updated"] == ["AAPL", "TSLA"]
    assert data["failed"][0]["symbol"] == "MSFT"
    assert [item["Name"] for item in storage.records] == ["Refreshed", "Sample Corp", "Refreshed"]
    assert len(messages) == 4


def test_update_write_failure_returns_500(client, monkeypatch):
    storage = MemoryStorage([_record("AAPL")])

    def failing_write(records):
        raise StorageWriteError("read-only")

    monkeypatch.setattr(storage, "write", failing_write)
    _use_store(monkeypatch, storage)
    response = client.post("/api/stocks/update")
    assert response.status_code == 500


def test_open_json_success(client, monkeypatch):
    _use_store(monkeypatch, MemoryStorage(folder="/tmp/stocks"))
    commands = []

    def fake_run(command, **kwargs):
        commands.append(command)
        return subprocess.CompletedProcess(command, 0)

    monkeypatch.setattr(app_module.subprocess, "run", fake_run)
    response = client.get("/api/stocks/open-json")
    assert response.status_code == 200
    assert response.get_json()["message"] == "Folder opened successfully"
    assert commands[0][-1] == "/tmp/stocks"


def test_open_json_failure_is_not_fatal(client, monkeypatch):
    _use_store(monkeypatch, MemoryStorage())

    def fake_run(command, **kwargs):
        raise FileNotFoundError("xdg-open")

    monkeypatch.setattr(app_module.subprocess, "run", fake_run)
    response = client.get("/api/stocks/open-json")
    assert response.status_code == 200
    assert "error" in response.get_json()


@pytest.mark.parametrize(
    "platform, expected",
    [("win32", "explorer"), ("darwin", "open"), ("linux", "xdg-open")],
)
def test_open_folder_command_per_platform(platform, expected):
    assert app_module._open_folder_command("/data", platform) == [expected, "/data"]


def test_progress_stream_delivers_events(client, monkeypatch):
    broker = ProgressBroker()
    monkeypatch.setattr(app_module, "progress_broker", broker)
    monkeypatch.setattr(app_module, "SSE_KEEPALIVE_SECONDS", 1)

    response = client.get("/api/stocks/progress", buffered=False)
    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    assert broker.subscriber_count == 1

    broker.notify("Updated AAPL (1/1)")
    chunks = response.iter_encoded()
    frames = []
    for _ in range(3):
        frame = next(chunks).decode("utf-8")
        frames.append(frame)
        if frame.startswith("event:"):
            break
    assert frames[0] == ": connected\n\n"
    assert frames[-1] == 'event: stockUpdateProgress\ndata: {"message": "Updated AAPL (1/1)"}\n\n'

    response.close()
    assert broker.subscriber_count == 0


def test_format_sse_uses_progress_event():
    frame = app_module._format_sse("Updated AAPL (1/2)")
    assert frame == 'event: stockUpdateProgress\ndata: {"message": "Updated AAPL (1/2)"}\n\n'
