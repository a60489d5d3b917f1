"""
gate.logger
~~~~~~~~~~~
Human-readable *and* JSON access logs with daily rotation.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

_ISO = "%Y-%m-%dT%H:%M:%SZ"


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


class _PlainFormatter(logging.Formatter):
    """ e.g. 2025-06-19T15:07:02Z alice 127.0.0.1 GET /admin/ DENIED """

    def format(self, record):  # type: ignore[override]
        if not isinstance(record.msg, dict) or record.levelno >= logging.ERROR:
            return super().format(record)
        d: Dict[str, Any] = record.msg

        parts = [
            d.get("ts", _now()),
            d.get("user", "-"),
            d.get("ip", "-"),
            d.get("method", "-"),
            d.get("url", "-"),
        ]
        event = d.get("event")
        if event == "deny":
            parts.append("DENIED")
        elif event == "auth_fail":
            parts.extend(["AUTH_FAIL", d.get("error", "")])
        elif event == "identity_error":
            parts.extend(["IDENTITY_ERROR", d.get("error", "")])
        elif event == "start":
            parts.append("->")
        else:  # end
            parts.extend(
                [
                    str(d.get("status", "-")),
                    f'{d.get("ms", 0)} ms',
                ]
            )
        return " ".join(parts)


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, separators=(",", ":"))
        return json.dumps({"event": "message", "ts": _now(), "msg": record.getMessage()})


class GateLogger:
    def __init__(self, basename: str | Path, console: bool = True):
        root = logging.getLogger("gate")
        root.setLevel(logging.INFO)
        root.propagate = False  # don't spam the root logger
        for old in list(root.handlers):
            root.removeHandler(old)
            old.close()

        basename = Path(basename).with_suffix("")  # gate
        jsonl_file = basename.with_suffix(".jsonl")

        # json lines
        h = logging.handlers.TimedRotatingFileHandler(
            jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
        )
        h.setFormatter(_JSONFormatter())
        root.addHandler(h)

        if console:
            s = logging.StreamHandler(sys.stderr)
            s.setFormatter(_PlainFormatter())
            root.addHandler(s)

        self.log = root
        self.path = jsonl_file

    def start(self, user: str, ip: str, method: str, url: str, ua: str):
        self.log.info(
            {
                "event": "start",
                "ts": _now(),
                "user": user,
                "ip": ip,
                "method": method,
                "url": url,
                "ua": ua,
            }
        )

    def end(self, user: str, method: str, url: str, status: int, duration_ms: int):
        self.log.info(
            {
                "event": "end",
                "ts": _now(),
                "user": user,
                "method": method,
                "url": url,
                "status": status,
                "ms": duration_ms,
            }
        )

    def deny(self, user: str, ip: str, method: str, url: str, status: int):
        self.log.info(
            {
                "event": "deny",
                "ts": _now(),
                "user": user,
                "ip": ip,
                "method": method,
                "url": url,
                "status": status,
            }
        )

    def auth_fail(self, ip: str, supplied_user: str, method: str, url: str, exc: Exception):
        self.log.info(
            {
                "event": "auth_fail",
                "ts": _now(),
                "ip": ip,
                "user": supplied_user or "-",
                "method": method,
                "url": url,
                "error": str(exc),
            }
        )

    def identity_error(self, ip: str, method: str, url: str, exc: Exception):
        self.log.warning(
            {
                "event": "identity_error",
                "ts": _now(),
                "ip": ip,
                "method": method,
                "url": url,
                "error": str(exc),
            }
        )

    def close(self) -> None:
        for h in list(self.log.handlers):
            self.log.removeHandler(h)
            h.close()
