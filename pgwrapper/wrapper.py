#!/usr/bin/env python3
"""PostgreSQL container wrapper - **Python entry-point**
======================================================================

The image runs this module instead of the upstream
``docker-entrypoint.sh``.  It prepares the data directory, then starts the
upstream entry-point as a supervised child so that PostgreSQL's JSON log
file can be mirrored to the container's stderr.

```
Step | Concern                              | Python helper               | Module
-----+--------------------------------------+-----------------------------+-------------
1    | Gather & normalise env vars          | gather_env                  | wrapper
1    | Volume mount / PGDATA validation     | validate_deployment         | wrapper
2    | Certificate SAN / expiry / missing   | ensure_certificates         | certificates
3    | pg_stat_statements preload           | ensure_preload_library      | pg_config
3    | JSON logging + idle_session_timeout  | configure_logging           | pg_config
4    | Child environment (no PGHOST/PGPORT) | build_child_env             | wrapper
4    | Launch, follow logs, forward signals | Supervisor.run              | supervisor
Main | Overall container flow               | main                        | wrapper
```

Every step before 4 runs synchronously and must succeed: nothing is
patched while the database is running and a failure aborts the container
so that the orchestrator restarts it.  All patches are idempotent, a
restart therefore converges instead of duplicating state.
"""

from __future__ import annotations

import math
import os
import subprocess
import sys
from os import environ
from pathlib import Path
from typing import Mapping, Sequence, TypedDict

from pgwrapper import certificates, pg_config
from pgwrapper.supervisor import Supervisor, SupervisorConfig, exit_status

__all__ = [
    "EXPECTED_VOLUME_MOUNT_PATH",
    "DOCKER_ENTRYPOINT",
    "CHILD_ENV_BLOCKLIST",
    "WrapperEnv",
    "gather_env",
    "validate_volume_mount",
    "validate_pgdata",
    "validate_deployment",
    "build_child_env",
    "build_supervisor_config",
    "prepare_data_directory",
    "main",
]

EXPECTED_VOLUME_MOUNT_PATH = "/var/lib/postgresql/data"

DOCKER_ENTRYPOINT = "/usr/local/bin/docker-entrypoint.sh"

# PGHOST must not leak into the server so that local clients (psql in init
# scripts, the healthcheck) use the Unix socket.  PGPORT is validated by
# postgres itself and may be set but empty on the hosting platform.
CHILD_ENV_BLOCKLIST = ("PGHOST", "PGPORT")


def _log(message: str) -> None:
    print(f"[wrapper] {message}", file=sys.stderr)


class WrapperEnv(TypedDict):
    """Subset of the environment the wrapper itself reads.

    Every key is always present, :pyfunc:`gather_env` fills in defaults.
    """

    # Set by the hosting platform on every deployment
    RAILWAY_ENVIRONMENT: str
    RAILWAY_VOLUME_MOUNT_PATH: str

    # Set by the postgres base image
    PGDATA: str

    # Seconds between two checks for the JSON log file
    WRAPPER_LOG_POLL_INTERVAL: str


def gather_env(env: Mapping[str, str] | WrapperEnv | None = None) -> WrapperEnv:
    """Return a mapping holding *all* wrapper variables with defaults.

    Unknown keys are ignored so callers may pass ``os.environ`` directly.
    """

    src = environ if env is None else env

    def _get(key: str, default: str = "") -> str:
        return str(src.get(key, default))

    return WrapperEnv(
        RAILWAY_ENVIRONMENT=_get("RAILWAY_ENVIRONMENT"),
        RAILWAY_VOLUME_MOUNT_PATH=_get("RAILWAY_VOLUME_MOUNT_PATH"),
        PGDATA=_get("PGDATA"),
        WRAPPER_LOG_POLL_INTERVAL=_get("WRAPPER_LOG_POLL_INTERVAL", "1"),
    )


# ---------------------------------------------------------------------------
#  Preconditions
# ---------------------------------------------------------------------------


def validate_volume_mount(env: WrapperEnv) -> None:  # noqa: D401 - imperative mood
    """Abort when the platform volume is mounted anywhere but the data dir.

    The check only applies on the hosting platform, detected through
    ``RAILWAY_ENVIRONMENT``.  Elsewhere (local docker, CI) the mount path
    variable is meaningless and ignored.
    """

    if not env["RAILWAY_ENVIRONMENT"]:
        return
    actual = env["RAILWAY_VOLUME_MOUNT_PATH"]
    if actual != EXPECTED_VOLUME_MOUNT_PATH:
        _log(
            "Railway volume not mounted to the correct path, expected "
            f"{EXPECTED_VOLUME_MOUNT_PATH} but got {actual}"
        )
        _log("Please update the volume mount path to the expected path and redeploy the service")
        sys.exit(1)


def validate_pgdata(env: WrapperEnv) -> None:
    """Abort unless ``PGDATA`` lives on the persistent volume."""

    if not env["PGDATA"].startswith(EXPECTED_VOLUME_MOUNT_PATH):
        _log(
            "PGDATA variable does not start with the expected volume mount path, "
            f"expected to start with {EXPECTED_VOLUME_MOUNT_PATH}"
        )
        _log(
            "Please update the PGDATA variable to start with the expected volume "
            "mount path and redeploy the service"
        )
        sys.exit(1)


def validate_deployment(env: WrapperEnv | None = None) -> None:
    env = gather_env(env)
    validate_volume_mount(env)
    validate_pgdata(env)


# ---------------------------------------------------------------------------
#  Preparation & launch
# ---------------------------------------------------------------------------


def prepare_data_directory(env: WrapperEnv) -> None:
    """Bring certificates and configuration up to date before launch."""

    pgdata = Path(env["PGDATA"])
    certificates.ensure_certificates(pgdata)
    pg_config.ensure_preload_library(pgdata)
    pg_config.configure_logging(pgdata)


def build_child_env(src: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the environment block for the database child.

    A *copy* of *src* (``os.environ`` by default) without the variables in
    :data:`CHILD_ENV_BLOCKLIST`; the wrapper's own environment is untouched.
    """

    base = environ if src is None else src
    return {key: value for key, value in base.items() if key not in CHILD_ENV_BLOCKLIST}


def _poll_interval(env: WrapperEnv) -> float:
    raw = env["WRAPPER_LOG_POLL_INTERVAL"]
    try:
        interval = float(raw)
    except ValueError:
        interval = float("nan")
    # nan, inf and non-positive values would break or stall time.sleep().
    if not (math.isfinite(interval) and interval > 0):
        _log(f"WARNING: invalid WRAPPER_LOG_POLL_INTERVAL {raw!r}, using 1s")
        return 1.0
    return interval


def build_supervisor_config(
    args: Sequence[str],
    env: WrapperEnv,
    process_env: Mapping[str, str] | None = None,
) -> SupervisorConfig:
    """Assemble the supervisor configuration, *args* are passed verbatim."""

    return SupervisorConfig(
        command=[DOCKER_ENTRYPOINT, *args],
        env=build_child_env(process_env),
        log_file=pg_config.json_log_file(env["PGDATA"]),
        poll_interval=_poll_interval(env),
    )


def main(argv: Sequence[str] | None = None) -> None:
    """Run the whole container start-up sequence and exit like PostgreSQL.

    Never returns: the process exits with the database's status, with the
    generation script's status when certificates cannot be produced, or
    with ``1`` for any other failure during preparation.
    """

    args = list(sys.argv[1:] if argv is None else argv)
    env = gather_env()

    try:
        validate_deployment(env)
        prepare_data_directory(env)
        config = build_supervisor_config(args, env, os.environ)
        status = Supervisor(config).run()
    except SystemExit:
        raise
    except subprocess.CalledProcessError as exc:
        _log(f"FATAL: {exc}")
        sys.exit(exit_status(exc.returncode) or 1)
    except Exception as exc:
        _log(f"FATAL: {exc}")
        sys.exit(1)

    sys.exit(status)
