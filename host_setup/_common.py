from __future__ import annotations

import argparse
import logging
import os
import shutil
import subprocess
import sys

log = logging.getLogger("host_setup")

_COLORS = {
    logging.DEBUG: "\033[0;34m",
    logging.INFO: "\033[0;34m",
    logging.WARNING: "\033[0;33m",
    logging.ERROR: "\033[0;31m",
}
_NC = "\033[0m"


class SetupError(Exception):
    exit_code = 1


class ConfigError(SetupError):
    exit_code = 2


class NotRootError(SetupError):
    exit_code = 3


class VerificationError(SetupError):
    exit_code = 4


class _Formatter(logging.Formatter):
    def __init__(self, prog: str, color: bool) -> None:
        super().__init__()
        self.prog = prog
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        label = getattr(record, "label", record.levelname)
        prefix = f"[{self.prog}]"
        if self.color:
            prefix = f"{_COLORS.get(record.levelno, '')}{prefix}{_NC}"
        return f"{prefix} [{label}] {record.getMessage()}"


class _BelowWarning(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def setup_logging(prog: str, *, quiet: bool = False) -> None:
    """INFO and below to stdout, WARNING and above to stderr."""
    log.handlers.clear()
    log.propagate = False
    log.setLevel(logging.WARNING if quiet else logging.INFO)

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(_BelowWarning())
    out.setFormatter(_Formatter(prog, sys.stdout.isatty()))

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)
    err.setFormatter(_Formatter(prog, sys.stderr.isatty()))

    log.addHandler(out)
    log.addHandler(err)


def success(msg: str) -> None:
    log.info(msg, extra={"label": "OK"})


def dry_run_note(msg: str) -> None:
    log.info(msg, extra={"label": "DRY-RUN"})


def require_root() -> None:
    if os.geteuid() != 0:
        raise NotRootError("This script must be run as root or with sudo")


def have(name: str) -> bool:
    return shutil.which(name) is not None


def env_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


class ArgumentParser(argparse.ArgumentParser):
    # usage errors exit 1; 2 is reserved for missing configuration
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


class Runner:
    """Runs external commands; in dry-run mode only logs mutating ones.

    A command that cannot be started at all reports 127, as a shell would.
    """

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def run(self, cmd: list[str], *, check: bool = True) -> int:
        if self.dry_run:
            dry_run_note("Would execute: " + " ".join(cmd))
            return 0
        log.debug("+ %s", " ".join(cmd))
        try:
            return subprocess.run(cmd, check=check).returncode
        except OSError as e:
            if check:
                raise SetupError(f"Cannot run {cmd[0]}: {e.strerror or e}") from e
            log.debug(f"Cannot run {cmd[0]}: {e}")
            return 127

    def query(self, cmd: list[str]) -> subprocess.CompletedProcess:
        """Read-only commands run even in dry-run mode."""
        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            return subprocess.CompletedProcess(cmd, 127, stdout="", stderr=f"Cannot run {cmd[0]}: {e.strerror or e}")
