from __future__ import annotations

import hashlib
import importlib
import json
import logging
import os
import queue
import subprocess
import sys
import time
from typing import Any, Dict, Iterator, List, Optional

from flask import Flask, Response, g, jsonify, request, stream_with_context

from stock_errors import StorageWriteError, UpstreamError, ValidationError
from stock_store import CollectionStore, JsonFileStorage, ProgressBroker

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL", "INFO") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

app = Flask(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_ROOT_ENV = os.getenv("STOCKS_PATH")
if DATA_ROOT_ENV:
    DATA_ROOT = os.path.abspath(DATA_ROOT_ENV)
else:
    DATA_ROOT = os.path.join(BASE_DIR, "data")
DATA_FILE = os.path.join(DATA_ROOT, "stocks.json")

USE_ORJSON_ENV = (os.getenv("USE_ORJSON", "auto") or "auto").strip().lower()
USE_ORJSON = USE_ORJSON_ENV != "false"

ENABLE_HTTP_CACHE = (os.getenv("ENABLE_HTTP_CACHE", "true") or "true").strip().lower() not in {"0", "false", "no"}

PROGRESS_EVENT = "stockUpdateProgress"


def _resolve_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _resolve_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


REFRESH_PAUSE_SECONDS = max(0.0, _resolve_float_env("REFRESH_PAUSE_SECONDS", 0.0))
SSE_KEEPALIVE_SECONDS = max(1, _resolve_int_env("SSE_KEEPALIVE_SECONDS", 15))


def _stock_api_module():
    # Lazy import to avoid pulling heavy dependencies (pandas, numpy, yfinance) during tests
    return importlib.import_module("stock_api")


def enrich_stock(*args, **kwargs):
    return _stock_api_module().enrich_stock(*args, **kwargs)


store = CollectionStore(
    JsonFileStorage(DATA_FILE, use_orjson=USE_ORJSON),
    enrich=lambda *args, **kwargs: enrich_stock(*args, **kwargs),
    refresh_pause=REFRESH_PAUSE_SECONDS,
)
progress_broker = ProgressBroker()


def _json_error(message: str, status: int = 400):
    return jsonify({"error": message}), status


def _make_etag_token(*parts: Any) -> str:
    raw = ":".join(str(part) for part in parts)
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()
    return digest


def _maybe_set_cache_headers(response, *etag_parts: Any):
    if not ENABLE_HTTP_CACHE:
        return response
    token = _make_etag_token(*etag_parts)
    response.set_etag(token, weak=True)
    response.headers["Cache-Control"] = "no-cache"
    return response


def _format_sse(message: str, event: str = PROGRESS_EVENT) -> str:
    payload = json.dumps({"message": message}, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def _open_folder_command(folder: str, platform: Optional[str] = None) -> List[str]:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return ["explorer", folder]
    if platform == "darwin":
        return ["open", folder]
    return ["xdg-open", folder]


@app.before_request
def _start_timer():
    g.request_started = time.perf_counter()


@app.after_request
def _log_request(response):
    started = getattr(g, "request_started", None)
    duration_ms = (time.perf_counter() - started) * 1000.0 if started else 0.0
    app.logger.info("%s %s %s %.1fms", request.method, request.path, response.status_code, duration_ms)
    return response


@app.route("/api/stocks", methods=["GET"])
def get_stocks():
    storage = store.storage
    if not storage.exists():
        return _json_error("Stock data not found", 404)
    try:
        stocks = storage.read()
        token = storage.stat_token()
    except OSError as exc:
        app.logger.error("Failed to read stock data: %s", exc)
        return _json_error("Something went wrong when getting stocks", 500)
    response = jsonify(stocks)
    return _maybe_set_cache_headers(response, "stocks", token)


@app.route("/api/stocks/add", methods=["POST"])
def add_stock():
    payload = request.get_json(force=True, silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}
    symbol = payload.get("symbol")
    market = payload.get("market")
    if not isinstance(symbol, str) or not symbol.strip():
        return _json_error("No stock symbol provided", 400)
    if market is not None and not isinstance(market, str):
        return _json_error("market must be a string", 400)

    app.logger.info("Fetching data for %s", symbol.strip())
    try:
        stock = store.add_symbol(symbol, market=market)
    except ValidationError as exc:
        return _json_error(str(exc), 400)
    except StorageWriteError as exc:
        app.logger.error("Failed to persist %s: %s", symbol, exc)
        return _json_error("Failed to save stock data.", 500)
    except UpstreamError as exc:
        app.logger.error("Upstream failure for %s: %s", symbol, exc)
        return _json_error(str(exc), 500)
    except Exception:
        app.logger.exception("Unexpected error while adding %s", symbol)
        return _json_error("Failed to fetch stock data.", 500)

    return jsonify({"message": "Stock added/updated", "stock": stock})


@app.route("/api/stocks/update", methods=["POST"])
def update_stocks():
    try:
        report = store.refresh_all(progress_broker)
    except StorageWriteError as exc:
        app.logger.error("Refresh aborted, could not save stock data: %s", exc)
        return _json_error("Failed to save updated stock data.", 500)
    except Exception:
        app.logger.exception("Refresh aborted")
        return _json_error("Failed to update stocks.", 500)
    body: Dict[str, Any] = {"message": "Stocks updated"}
    body.update(report.to_dict())
    return jsonify(body)


@app.route("/api/stocks/progress", methods=["GET"])
def stream_progress():
    subscriber = progress_broker.subscribe()

    def generate() -> Iterator[str]:
        try:
            yield ": connected\n\n"
            while True:
                try:
                    message = subscriber.get(timeout=SSE_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield _format_sse(message)
        finally:
            progress_broker.unsubscribe(subscriber)

    response = Response(stream_with_context(generate()), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@app.route("/api/stocks/open-json", methods=["GET"])
def open_json_folder():
    app.logger.info("Open JSON folder request received")
    folder = store.storage.folder
    command = _open_folder_command(folder)
    try:
        subprocess.run(command, check=True, capture_output=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as exc:
        app.logger.warning("Folder may have opened but the command reported an error: %s", exc)
        return jsonify({"message": "Folder opened, but command returned an error.", "error": str(exc)})
    return jsonify({"message": "Folder opened successfully"})


if __name__ == "__main__":
    os.makedirs(DATA_ROOT, exist_ok=True)
    app.run(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_resolve_int_env("PORT", 3000),
        debug=False,
        threaded=True,
    )
