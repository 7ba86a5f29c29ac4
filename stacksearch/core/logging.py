from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import sys

from stacksearch.core.config import get_settings


_CONFIGURED = False


class JsonLineFormatter(logging.Formatter):
    # One JSON object per line for log shippers.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def mask_key(value: str | None) -> str:
    # Stack keys identify tenants; keep only enough to correlate log lines.
    if not value:
        return "-"
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***{value[-4:]}"


def configure_logging(force: bool = False) -> None:
    global _CONFIGURED
    if _CONFIGURED and not force:
        return
    settings = get_settings()
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.lower() == "json":
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    # httpx logs every request at INFO, which includes tenant keys in URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _CONFIGURED = True
