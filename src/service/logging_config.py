from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")
vehicle_context: ContextVar[str] = ContextVar("vehicle_context", default="")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] cid=%(correlation_id)s vehicle=%(vehicle_id)s %(message)s"


def get_correlation_id() -> str:
    cid = correlation_id.get()
    if not cid:
        cid = uuid.uuid4().hex[:12]
        correlation_id.set(cid)
    return cid


@contextmanager
def bind_vehicle(vehicle_id: str) -> Iterator[None]:
    """Tag every log record emitted in this block with the vehicle being assessed."""
    token = vehicle_context.set(vehicle_id)
    try:
        yield
    finally:
        vehicle_context.reset(token)


class RequestContextFilter(logging.Filter):
    """Copies the request and vehicle context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("") or "-"
        record.vehicle_id = vehicle_context.get("") or "-"
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None) or correlation_id.get("")
        vehicle_id = getattr(record, "vehicle_id", None) or vehicle_context.get("")
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": "" if cid == "-" else cid,
        }
        if vehicle_id and vehicle_id != "-":
            entry["vehicle_id"] = vehicle_id
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_data"):
            entry["data"] = record.extra_data
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
    # APScheduler logs every job run at INFO.
    logging.getLogger("apscheduler").setLevel(max(root.level, logging.WARNING))
