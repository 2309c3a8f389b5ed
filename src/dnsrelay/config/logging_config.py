"""Logging setup for dnsrelay.

Brief:
  Builds the root logger from the `logging` config section. Every handler
  shares one line shape, `<time> [level] dnsrelay.module: message`, except
  syslog, which stamps its own time and gets an identity prefix instead.

Inputs:
  - The `logging` mapping of the validated config

Outputs:
  - Configured root logger; formatter classes for reuse in tests
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .config_parser import parse_host_port

LOG_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"
SYSLOG_IDENT = "dnsrelay: "
SYSLOG_SOCKET = "/dev/log"
SYSLOG_PORT = 514

# name -> (level, tag); aliases share a tag with their canonical name.
_LEVELS = {
    "debug": (logging.DEBUG, "[debug]"),
    "info": (logging.INFO, "[info]"),
    "warn": (logging.WARNING, "[warn]"),
    "warning": (logging.WARNING, "[warn]"),
    "error": (logging.ERROR, "[error]"),
    "crit": (logging.CRITICAL, "[crit]"),
    "critical": (logging.CRITICAL, "[crit]"),
}
_TAG_BY_LEVEL = {level: tag for level, tag in _LEVELS.values()}

SyslogAddress = Union[str, Tuple[str, int]]


def level_tag(levelno: int) -> str:
    return _TAG_BY_LEVEL.get(levelno, f"[lvl{levelno}]")


def parse_level(value: Any, default: int = logging.INFO) -> int:
    """Map a level name such as 'warn' to its logging constant."""
    found = _LEVELS.get(str(value).strip().lower())
    return found[0] if found else default


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output without timestamps (syslog adds its own)."""

    def format(self, record):
        return f"{level_tag(record.levelno)} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Formatter that adds bracketed lowercase level tags and UTC timestamps."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = level_tag(record.levelno)
        return super().format(record)


def syslog_target(syslog_cfg: Any) -> Tuple[SyslogAddress, int]:
    """Brief: Resolve the syslog address and facility from config.

    Inputs:
      - syslog_cfg: True, or a mapping with optional 'address' and 'facility'.
        'address' may be a socket path, 'host:port', 'host', or [host, port].

    Outputs:
      - (address, facility): address is a path string or a (host, port) tuple.

    Example:
      >>> syslog_target({"address": "logs.example.test:1514"})[0]
      ('logs.example.test', 1514)
      >>> syslog_target(True)[0]
      '/dev/log'
    """

    SysLog = logging.handlers.SysLogHandler
    if not isinstance(syslog_cfg, dict):
        return SYSLOG_SOCKET, SysLog.LOG_USER

    facility_name = str(syslog_cfg.get("facility") or "user").strip().upper()
    facility = getattr(SysLog, f"LOG_{facility_name}", SysLog.LOG_USER)

    address = syslog_cfg.get("address") or SYSLOG_SOCKET
    if isinstance(address, (list, tuple)):
        return (str(address[0]), int(address[1])), facility
    if address.startswith("/"):
        return address, facility

    host, port = parse_host_port(address, what="syslog address")
    return (host, port or SYSLOG_PORT), facility


def _file_handler(file_path: str, formatter: logging.Formatter) -> logging.Handler:
    path = os.path.abspath(os.path.expanduser(file_path.strip()))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _build_handlers(cfg: Dict[str, Any]) -> Tuple[List[logging.Handler], List[str]]:
    """Brief: Create the handlers requested by cfg.

    Inputs:
      - cfg: `logging` config mapping.

    Outputs:
      - (handlers, problems): problems lists sinks that could not be opened.
    """

    formatter = BracketLevelFormatter(fmt=LOG_FORMAT)
    handlers: List[logging.Handler] = []
    problems: List[str] = []

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        handlers.append(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        handlers.append(_file_handler(file_path, formatter))

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            address, facility = syslog_target(syslog_cfg)
            syslog_handler = logging.handlers.SysLogHandler(
                address=address, facility=facility
            )
        except (OSError, ValueError) as e:  # pragma: no cover - environment-specific
            problems.append(f"syslog: {e}")
        else:
            syslog_handler.ident = SYSLOG_IDENT
            syslog_handler.setFormatter(SyslogFormatter())
            handlers.append(syslog_handler)

    return handlers, problems


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Replace the root logger's handlers with the ones cfg asks for.

    Args:
        cfg: `logging` section with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: log file path; parent directories are created
            - syslog: True for the local socket, or a dict with
                - address: socket path, 'host:port', or [host, port]
                - facility: syslog facility name (default: user)

    Example config:
        {"level": "debug", "file": "./dnsrelay.log", "syslog": {"facility": "daemon"}}
    """
    cfg = cfg or {}

    root = logging.getLogger()
    root.setLevel(parse_level(cfg.get("level", "info")))
    for h in list(root.handlers):
        root.removeHandler(h)

    handlers, problems = _build_handlers(cfg)
    for handler in handlers:
        root.addHandler(handler)
    for problem in problems:
        root.warning("Failed to configure log sink %s", problem)

    logging.captureWarnings(True)
