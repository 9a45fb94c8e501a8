"""JSON-lines log for an idlc project, written to ``.idlc/idlc.log``.

``setup_logging`` is called by the operator CLI and by
``Lifecycle.from_project``. It attaches one rotating file handler (5MB, 3
backups) to the ``idlc`` logger; every module logs through a child logger
(``idlc.engine``, ``idlc.automation``, ``idlc.actions`` and so on) and so
lands in the same file.

Engine code passes structured context through ``extra=``: the work item, the
automation rule and action, the event type, a duration and an error text.
Those keys become top-level fields of the entry. The ``thread`` field tells
dispatcher (``idlc-dispatch``), action (``idlc-action``) and evaluator work
apart when following an automation cascade.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

_LOG_FILENAME = "idlc.log"
_setup_lock = threading.Lock()
_MAX_BYTES = 5 * 1024 * 1024  # 5MB
_BACKUP_COUNT = 3

_EXTRA_FIELDS = ("item", "rule", "action", "event", "duration_ms", "error")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in _EXTRA_FIELDS if hasattr(record, key)})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def setup_logging(idlc_dir: Path) -> logging.Logger:
    """Point the ``idlc`` logger at ``idlc.log`` inside *idlc_dir*.

    Safe to call once per CLI invocation and once per Lifecycle: a second
    call for the same project keeps the existing handler, while a call for
    another project moves logging over to that project's file.
    """
    logger = logging.getLogger("idlc")
    log_path = idlc_dir / _LOG_FILENAME
    target_filename = os.path.abspath(str(log_path))

    with _setup_lock:
        for h in logger.handlers[:]:
            if not isinstance(h, RotatingFileHandler):
                continue
            if h.baseFilename == target_filename:
                return logger
            logger.removeHandler(h)
            h.close()

        handler = RotatingFileHandler(str(log_path), maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
        handler.setFormatter(_JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger
