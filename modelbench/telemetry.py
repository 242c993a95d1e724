from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .config import settings
from .errors import PersistenceFailure
from .models import BenchmarkRun, ModelResult

logger = logging.getLogger("modelbench.telemetry")


class TelemetryStore(Protocol):
    async def create(self, collection: str, record: Dict[str, Any]) -> None: ...


def _fmt(value: Optional[float]) -> str:
    return "0" if value is None else f"{value:.2f}"


def export_document(run: BenchmarkRun, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    """The client-facing JSON export of a run."""
    ts = timestamp or run.finished_at or datetime.now(timezone.utc)
    return {
        "device": run.device_id,
        "timestamp": ts.isoformat(),
        "results": [r.to_dict() for r in run.results],
    }


def build_summary_record(run: BenchmarkRun, model_ids: Sequence[str]) -> Dict[str, Any]:
    """Flatten a run into one row: per-artifact load/detection/accuracy plus the full blob."""
    by_id: Dict[str, ModelResult] = {}
    for r in run.results:
        by_id.setdefault(r.model_id, r)

    record: Dict[str, Any] = {"device": run.device_id}
    for model_id in model_ids:
        r = by_id.get(model_id)
        record[f"{model_id}_load_time"] = _fmt(r.load_latency_ms if r else None)
        record[f"{model_id}_avg_detection"] = _fmt(r.avg_detection_time_ms if r else None)
        record[f"{model_id}_avg_accuracy"] = _fmt(r.avg_score * 100 if r else None)
    record["fullData"] = json.dumps(export_document(run))
    return record


class NullTelemetryStore:
    async def create(self, collection: str, record: Dict[str, Any]) -> None:
        logger.info("Telemetry disabled, dropping %s record for %s", collection, record.get("device"))


SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS benchmark_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  collection TEXT NOT NULL,
  created_at REAL NOT NULL,
  device TEXT NOT NULL,
  fields_json TEXT NOT NULL,
  full_data TEXT
);

CREATE INDEX IF NOT EXISTS idx_records_collection ON benchmark_records(collection, created_at);
"""


class SqliteTelemetryStore:
    """Durable local store, one row per run."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or settings.sqlite_path
        self._lock = threading.Lock()
        self._initialised = False

    def connect(self) -> sqlite3.Connection:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        with self._lock:
            if self._initialised:
                return
            conn = self.connect()
            try:
                conn.executescript(SCHEMA)
                conn.commit()
            finally:
                conn.close()
            self._initialised = True

    def _insert(self, collection: str, record: Dict[str, Any]) -> None:
        self.init_db()
        fields = {k: v for k, v in record.items() if k not in ("device", "fullData")}
        with self._lock:
            conn = self.connect()
            try:
                conn.execute(
                    "INSERT INTO benchmark_records(collection,created_at,device,fields_json,full_data) VALUES(?,?,?,?,?)",
                    (collection, time.time(), str(record.get("device", "")), json.dumps(fields), record.get("fullData")),
                )
                conn.commit()
            finally:
                conn.close()

    async def create(self, collection: str, record: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._insert, collection, record)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"sqlite write failed: {e}") from e

    def list_records(self, collection: str, limit: int = 50) -> List[Dict[str, Any]]:
        self.init_db()
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM benchmark_records WHERE collection=? ORDER BY created_at DESC LIMIT ?",
                (collection, limit),
            ).fetchall()
        finally:
            conn.close()
        out = []
        for r in rows:
            d = {"id": r["id"], "created_at": r["created_at"], "device": r["device"]}
            d.update(json.loads(r["fields_json"]))
            d["fullData"] = r["full_data"]
            out.append(d)
        return out


class PocketBaseTelemetryStore:
    """Writes records into a PocketBase collection over its REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_s: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.pocketbase_url).rstrip("/")
        self.timeout = httpx.Timeout(timeout_s)
        self._transport = transport

    async def create(self, collection: str, record: Dict[str, Any]) -> None:
        url = f"{self.base_url}/api/collections/{collection}/records"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=record)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"PocketBase write to {collection} failed: {e}") from e


def build_store(backend: Optional[str] = None) -> TelemetryStore:
    backend = (backend or settings.telemetry_backend).lower()
    if backend == "sqlite":
        return SqliteTelemetryStore()
    if backend == "pocketbase":
        return PocketBaseTelemetryStore()
    if backend == "none":
        return NullTelemetryStore()
    raise ValueError(f"unknown telemetry backend: {backend}")
