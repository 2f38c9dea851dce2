import json
import logging
import os


CONTEXT_FIELDS = ("job_id", "provider", "strategy")


def setup_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level)
    if os.environ.get("JSON_LOGS", "0") == "1":
        logging.getLogger().handlers = [JSONLogHandler()]


class JSONLogHandler(logging.StreamHandler):
    def emit(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        try:
            msg = {
                "level": record.levelname,
                "logger": record.name,
                "thread": record.threadName,
                "message": record.getMessage(),
            }
            # extra={...} passed by the orchestration layer
            for key in CONTEXT_FIELDS:
                value = getattr(record, key, None)
                if value is not None:
                    msg[key] = value
            if record.exc_info:
                msg["exc_info"] = self.formatException(record.exc_info)
            self.stream.write(json.dumps(msg) + "\n")
        except Exception:
            super().emit(record)

    def formatException(self, exc_info) -> str:
        return logging.Formatter().formatException(exc_info)
