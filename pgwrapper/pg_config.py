"""Idempotent patching of ``postgresql.conf`` / ``postgresql.auto.conf``.

PostgreSQL reads its configuration files top to bottom and the **last**
assignment of a setting wins.  The helpers below exploit that property: they
never rewrite existing lines, they only *append* overriding directives and
guard every append with a presence check so that repeated container restarts
converge instead of piling up duplicates.

Only a narrow, line-oriented subset of the file format is understood - one
``name = value`` assignment per line.  Multi-line values and the ``name
value`` form (without ``=``) are not recognised by :pyfunc:`parse_directive`.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

__all__ = [
    "PRELOAD_LIBRARY",
    "LOG_FILENAME_MARKER",
    "JSON_LOGGING_BLOCK",
    "IDLE_TIMEOUT_BLOCK",
    "conf_file",
    "auto_conf_file",
    "json_log_file",
    "parse_directive",
    "read_directive",
    "defines_directive",
    "mentions",
    "add_preload_library",
    "ensure_preload_library",
    "ensure_json_logging",
    "ensure_idle_session_timeout",
    "reset_log_file",
    "configure_logging",
]

PRELOAD_LIBRARY = "pg_stat_statements"

# Exact line whose presence means the JSON logging block was already added
# by this wrapper.  Older images wrote ``postgresql.json`` instead.
LOG_FILENAME_MARKER = "log_filename = 'postgresql'"

JSON_LOGGING_BLOCK = """
# JSON structured logging (added by pgwrapper)
logging_collector = on
log_destination = 'jsonlog'
log_directory = 'log'
log_filename = 'postgresql'
log_rotation_age = 0
log_rotation_size = 1MB
log_truncate_on_rotation = on
log_min_duration_statement = 300

# Auto-disconnect idle sessions to allow serverless sleep
idle_session_timeout = '10min'
"""

IDLE_TIMEOUT_BLOCK = """
# Auto-disconnect idle sessions to allow serverless sleep (added by pgwrapper)
idle_session_timeout = '10min'
"""


def _log(message: str) -> None:
    print(f"[wrapper] {message}", file=sys.stderr)


# Config files may hold bytes that are not UTF-8 (e.g. Latin-1 comments);
# they must survive a read and a write unchanged.
_ERRORS = "surrogateescape"


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8", errors=_ERRORS)


def conf_file(pgdata: str | Path) -> Path:
    return Path(pgdata) / "postgresql.conf"


def auto_conf_file(pgdata: str | Path) -> Path:
    return Path(pgdata) / "postgresql.auto.conf"


def json_log_file(pgdata: str | Path) -> Path:
    """Return the file written by ``logging_collector`` with ``jsonlog``.

    PostgreSQL appends the ``.json`` suffix to ``log_filename`` on its own.
    """

    return Path(pgdata) / "log" / "postgresql.json"


# ---------------------------------------------------------------------------
#  Scanning helpers
# ---------------------------------------------------------------------------


def _strip_value(raw: str) -> str:
    value = raw.strip()
    if value[:1] in {"'", '"'}:
        value = value[1:]
        # Everything from the closing quote on (comments included) is noise.
        for idx, char in enumerate(value):
            if char in {"'", '"'}:
                value = value[:idx]
                break
    else:
        value = value.split("#", 1)[0]
    return value.strip()


def parse_directive(content: str, name: str) -> str | None:  # noqa: D401 - imperative mood
    """Return the value of the **last** ``name = value`` line in *content*.

    Rules:

    * lines whose first non-blank character is ``#`` are ignored;
    * a line matches when the text before its first ``=`` equals *name*
      once surrounding whitespace is removed;
    * later matches override earlier ones, mirroring the server semantics;
    * a leading single or double quote is dropped together with everything
      from the next quote on, unquoted values lose a trailing ``# comment``.

    ``None`` means the directive does not appear at all whereas an empty
    string means it is present but empty (``name = ''``).
    """

    found: str | None = None
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, _, raw = stripped.partition("=")
        if key.strip() != name:
            continue
        found = _strip_value(raw)
    return found


def read_directive(path: Path, name: str) -> str | None:
    """File based convenience wrapper around :pyfunc:`parse_directive`."""

    if not path.is_file():
        return None
    return parse_directive(_read_text(path), name)


def defines_directive(path: Path, name: str) -> bool:
    """Return *True* when *path* holds an uncommented assignment of *name*."""

    return read_directive(path, name) is not None


def mentions(path: Path, token: str) -> bool:
    """Return *True* when *token* appears anywhere in *path* (comments too)."""

    if not path.is_file():
        return False
    return token in _read_text(path)


def _has_line(path: Path, line: str) -> bool:
    text = _read_text(path)
    return any(candidate.rstrip("\r") == line for candidate in text.split("\n"))


def _has_line_prefix(path: Path, prefix: str) -> bool:
    text = _read_text(path)
    return any(candidate.startswith(prefix) for candidate in text.split("\n"))


def _append_text(path: Path, text: str) -> None:
    """Append *text* to *path* starting on a fresh line, then fsync."""

    data = text.encode("utf-8", errors=_ERRORS)
    with path.open("a+b") as fh:
        fh.seek(0, os.SEEK_END)
        if fh.tell() > 0:
            fh.seek(-1, os.SEEK_END)
            if fh.read(1) != b"\n":
                data = b"\n" + data
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())


# ---------------------------------------------------------------------------
#  shared_preload_libraries
# ---------------------------------------------------------------------------


def add_preload_library(path: Path, library: str = PRELOAD_LIBRARY) -> bool:  # noqa: D401
    """Append a ``shared_preload_libraries`` line that includes *library*.

    The current list is taken from the last assignment in *path*.  When it
    is non-empty the new line keeps every existing entry and adds *library*
    at the end, otherwise the new line lists *library* alone.

    Returns *False* (and leaves the file untouched) when *library* is
    already an element of the current list.
    """

    current = read_directive(path, "shared_preload_libraries") or ""
    entries = [item.strip() for item in current.split(",") if item.strip()]
    if library in entries:
        return False

    if current:
        line = f"shared_preload_libraries = '{current},{library}'\n"
    else:
        line = f"shared_preload_libraries = '{library}'\n"
    _append_text(path, line)
    return True


def ensure_preload_library(pgdata: str | Path, library: str = PRELOAD_LIBRARY) -> bool:  # noqa: D401
    """Make sure *library* is preloaded for an already initialised cluster.

    Databases created before the wrapper learnt about *library* lack the
    setting.  ``postgresql.auto.conf`` (written by ``ALTER SYSTEM``) is
    patched as well when it carries its own ``shared_preload_libraries``
    because that file would otherwise silently override the main one.

    Returns *True* when ``postgresql.conf`` was modified.
    """

    conf = conf_file(pgdata)
    if not conf.is_file() or mentions(conf, library):
        return False

    _log(f"Adding {library} to shared_preload_libraries...")
    changed = add_preload_library(conf, library)

    auto_conf = auto_conf_file(pgdata)
    if defines_directive(auto_conf, "shared_preload_libraries") and not mentions(auto_conf, library):
        _log(f"Adding {library} to shared_preload_libraries in {auto_conf.name}...")
        add_preload_library(auto_conf, library)
    return changed


# ---------------------------------------------------------------------------
#  JSON logging
# ---------------------------------------------------------------------------


def ensure_json_logging(conf: Path) -> bool:
    """Append :data:`JSON_LOGGING_BLOCK` unless the marker line is present."""

    if not conf.is_file() or _has_line(conf, LOG_FILENAME_MARKER):
        return False
    _log(f"Adding JSON logging configuration to {conf.name}...")
    _append_text(conf, JSON_LOGGING_BLOCK)
    return True


def ensure_idle_session_timeout(conf: Path) -> bool:
    """Append ``idle_session_timeout`` for configs logged by older wrappers."""

    if not conf.is_file() or _has_line_prefix(conf, "idle_session_timeout"):
        return False
    _log(f"Adding idle_session_timeout to {conf.name}...")
    _append_text(conf, IDLE_TIMEOUT_BLOCK)
    return True


def reset_log_file(log_file: Path) -> bool:
    """Truncate *log_file* so a restart never mixes text and JSON records."""

    if not log_file.is_file():
        return False
    _log("Clearing old log file for fresh JSON logging...")
    with log_file.open("w", encoding="utf-8"):
        pass
    return True


def configure_logging(pgdata: str | Path) -> None:
    conf = conf_file(pgdata)
    ensure_json_logging(conf)
    ensure_idle_session_timeout(conf)
    reset_log_file(json_log_file(pgdata))
