#!/usr/bin/env python3
"""
pg_healthcheck.py - Check that the local PostgreSQL server accepts TLS connections.

Used as the container HEALTHCHECK.  A single check is made by default; with
``--wait`` the check is retried until the server answers or the attempts run
out, which is handy in scripts that must block until the database is up.

The default SSL mode is ``require`` so a passing check also proves that the
server certificate managed by the wrapper is being served.
"""

import argparse
import os
import signal
import sys
import time
from types import FrameType
from typing import Optional

import psycopg2
from psycopg2 import OperationalError

# Default constants for script
DEFAULT_HOST: str = "localhost"
DEFAULT_PORT: int = 5432
DEFAULT_SSL_MODE: str = "require"
DEFAULT_MAX_ATTEMPTS: int = 60
DEFAULT_SLEEP_SECONDS: int = 2
CONNECT_TIMEOUT: int = 5


def check_postgres(
    user: str,
    password: str,
    host: str,
    port: int,
    dbname: str,
    ssl_mode: str,
) -> bool:
    """Attempt one connection and a trivial query.

    Args:
        user (str): The database user.
        password (str): The database password.
        host (str): The database host.
        port (int): The database port.
        dbname (str): The database name.
        ssl_mode (str): The SSL mode.

    Returns:
        bool: True when the server answered ``SELECT 1``.
    """
    try:
        conn = psycopg2.connect(
            dbname=dbname,
            user=user,
            password=password,
            host=host,
            port=port,
            sslmode=ssl_mode,
            connect_timeout=CONNECT_TIMEOUT,
        )
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        finally:
            # psycopg2's connection context manager only ends the transaction.
            conn.close()
    except OperationalError as e:
        print(f"PostgreSQL is not ready on {host}:{port}: {e}", file=sys.stderr)
        return False
    print(f"PostgreSQL is ready on {host}:{port} (sslmode={ssl_mode}).", file=sys.stderr)
    return True


def wait_for_postgres(
    user: str,
    password: str,
    host: str,
    port: int,
    dbname: str,
    ssl_mode: str,
    max_attempts: Optional[int] = None,
    sleep_seconds: Optional[int] = None,
) -> bool:
    """Retry :func:`check_postgres` until it succeeds.

    Args:
        max_attempts (Optional[int]): Maximum number of attempts. Defaults to DEFAULT_MAX_ATTEMPTS.
        sleep_seconds (Optional[int]): Seconds to sleep between attempts. Defaults to DEFAULT_SLEEP_SECONDS.

    Returns:
        bool: True when the server became available in time.
    """
    if max_attempts is None:
        max_attempts = DEFAULT_MAX_ATTEMPTS
    if sleep_seconds is None:
        sleep_seconds = DEFAULT_SLEEP_SECONDS

    for attempt in range(1, max_attempts + 1):
        if check_postgres(user, password, host, port, dbname, ssl_mode):
            return True
        if attempt < max_attempts:
            print(
                f"Attempt {attempt} of {max_attempts}: PostgreSQL is not up yet, waiting...",
                file=sys.stderr,
            )
            time.sleep(sleep_seconds)
    print(f"PostgreSQL is not up after {max_attempts} attempts, aborting.", file=sys.stderr)
    return False


def signal_handler(signum: int, frame: Optional[FrameType]) -> None:
    """Handle termination signals.

    Args:
        signum (int): The signal number.
        frame (Optional[FrameType]): The current stack frame.
    """
    print(f"Received signal {signum}, exiting.", file=sys.stderr)
    sys.exit(1)


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check that the local PostgreSQL server accepts connections."
    )
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Retry until the server is available (MAX_ATTEMPTS / SLEEP_SECONDS)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> None:
    """Main function, exits 0 when PostgreSQL is reachable and 1 otherwise."""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    args = parse_arguments(argv)

    user: str = os.getenv("POSTGRES_USER", "postgres")
    password: str = os.getenv("POSTGRES_PASSWORD", "")
    dbname: str = os.getenv("POSTGRES_DB", user)
    host: str = os.getenv("HEALTHCHECK_HOST", DEFAULT_HOST)
    port: int = int(os.getenv("HEALTHCHECK_PORT", str(DEFAULT_PORT)))
    ssl_mode: str = os.getenv("HEALTHCHECK_SSL_MODE", DEFAULT_SSL_MODE)

    if args.wait:
        max_attempts: int = int(os.getenv("MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS)))
        sleep_seconds: int = int(os.getenv("SLEEP_SECONDS", str(DEFAULT_SLEEP_SECONDS)))
        ok = wait_for_postgres(
            user, password, host, port, dbname, ssl_mode,
            max_attempts=max_attempts,
            sleep_seconds=sleep_seconds,
        )
    else:
        ok = check_postgres(user, password, host, port, dbname, ssl_mode)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
