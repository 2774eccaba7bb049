"""
pulse-llm :: Structured Logging

Every record a generation emits carries its generation id and the
milliseconds since the prompt was handed over, so one reply can be
followed from prompt decode to the last sampled token.

  - JSONFormatter: one object per line, for log files and shippers
  - HumanFormatter: short console lines, coloured on a terminal
  - GenerationLogger: adapter that stamps the generation fields

INL - 2025
"""

import logging
import json
import time
import sys
from typing import Any, Dict, Optional

ROOT_LOGGER = "pulse_llm"

# Keyword arguments Logger._log understands; everything else is a field
_LOG_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})


def record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Generation id, elapsed time and call-site fields attached to a record."""
    fields: Dict[str, Any] = {}
    for name in ("generation_id", "elapsed_ms"):
        if hasattr(record, name):
            fields[name] = getattr(record, name)
    fields.update(getattr(record, "fields", None) or {})
    return fields


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(record_fields(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """`12:00:01 [   INFO] session: message [gen=3] key=value`"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[41m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:>7}]"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        source = record.name.removeprefix(ROOT_LOGGER + ".")
        msg = f"{self.formatTime(record, '%H:%M:%S')} {level} {source}: {record.getMessage()}"

        fields = record_fields(record)
        generation_id = fields.pop("generation_id", None)
        if generation_id is not None:
            msg += f" [gen={generation_id}]"
        if fields:
            msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info and record.exc_info[1]:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the pulse_llm logger tree.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON on the console instead of human lines
        log_file: also append JSON records to this file
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {level}")

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    if json_output:
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(HumanFormatter(color=sys.stderr.isatty()))
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(JSONFormatter())
        logger.addHandler(fh)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


class GenerationLogger(logging.LoggerAdapter):
    """
    Logger for one generation.

    Extra keyword arguments become fields of the record:
        log.info("Prompt encoded", prompt_tokens=42)
    """

    def __init__(self, generation_id: int, logger: Optional[logging.Logger] = None):
        super().__init__(logger or get_logger(), {"generation_id": generation_id})
        self.generation_id = generation_id
        self.start_time = time.perf_counter()

    def process(self, msg, kwargs):
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in _LOG_KWARGS}
        kwargs["extra"] = {
            **(kwargs.get("extra") or {}),
            "generation_id": self.generation_id,
            "elapsed_ms": round(self.elapsed_ms(), 2),
            "fields": fields,
        }
        return msg, kwargs

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000
