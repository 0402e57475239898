from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Protocol


class RetryLogger(Protocol):
    def log(self, message: str) -> None: ...


class LoggerFactory(Protocol):
    def create_logger(self) -> RetryLogger: ...


class StdoutLogger:
    """Writes progress lines to whatever ``sys.stdout`` is at call time."""

    def log(self, message: str) -> None:
        sys.stdout.write(message + "\n")
        sys.stdout.flush()


class FileLogger:
    def __init__(self, file_path: str | Path):
        self.file_path = Path(file_path)

    def log(self, message: str) -> None:
        with self.file_path.open("a", encoding="utf-8") as f:
            f.write(message + "\n")


class StdoutLoggerFactory:
    def create_logger(self) -> RetryLogger:
        return StdoutLogger()


class FileLoggerFactory:
    def __init__(self, file_path: str | Path):
        self.file_path = Path(file_path)

    def create_logger(self) -> RetryLogger:
        return FileLogger(self.file_path)


def logger_factory_for(log_file: str | Path | None) -> LoggerFactory:
    if log_file:
        return FileLoggerFactory(log_file)
    return StdoutLoggerFactory()


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(json_output: bool = False, level: int = logging.INFO) -> None:
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))

    root = logging.getLogger("retry_annotations")
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
