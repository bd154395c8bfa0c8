from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Optional

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per record:
      { "t": 1700000000000, "lvl": "INFO", "name": "rio.optimization", "msg": "text" }
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: Optional[str] = None, json_format: bool = False) -> None:
    """
    Configure the root logger once.

    Level precedence:
      - explicit `level` arg
      - env RIO_LOG_LEVEL (DEBUG/INFO/WARNING/ERROR)
      - default INFO
    """
    root = logging.getLogger()
    if getattr(root, "_rio_configured", False):
        if level is not None:
            root.setLevel(_parse_level(level))
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT))

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_parse_level(level or os.environ.get("RIO_LOG_LEVEL") or "INFO"))
    root._rio_configured = True  # type: ignore[attr-defined]


def _parse_level(name: str) -> int:
    lvl = getattr(logging, str(name).upper(), None)
    return lvl if isinstance(lvl, int) else logging.INFO
