"""TLS certificate lifecycle guard.

The certificate itself is produced by ``init-ssl.sh`` which ships with the
image and runs as an init script the very first time the cluster is
created.  On every later boot the wrapper only decides *whether* that script
must run again:

1. the existing certificate is not an x509v3 certificate carrying the
   ``DNS:localhost`` subject alternative name;
2. the existing certificate expires within :data:`CERT_EXPIRY_THRESHOLD`
   seconds;
3. the cluster was initialised (``postgresql.conf`` exists) by an image
   without TLS support so no certificate exists at all.

Inspection is delegated to the ``openssl`` binary.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

__all__ = [
    "SSL_DIR",
    "INIT_SSL_SCRIPT",
    "CERT_EXPIRY_THRESHOLD",
    "REQUIRED_SAN",
    "server_cert",
    "has_localhost_san",
    "expires_within",
    "regenerate_certificates",
    "ensure_certificates",
]

SSL_DIR = Path("/var/lib/postgresql/data/certs")
INIT_SSL_SCRIPT = Path("/docker-entrypoint-initdb.d/init-ssl.sh")

# 30 days
CERT_EXPIRY_THRESHOLD = 2592000

REQUIRED_SAN = "DNS:localhost"


def _log(message: str) -> None:
    print(f"[wrapper] {message}", file=sys.stderr)


def server_cert(ssl_dir: Path | None = None) -> Path:
    return (SSL_DIR if ssl_dir is None else ssl_dir) / "server.crt"


def has_localhost_san(cert: Path) -> bool:  # noqa: D401 - imperative mood
    """Return *True* when *cert* lists :data:`REQUIRED_SAN`.

    A certificate ``openssl`` cannot parse is treated as lacking the
    extension so that it gets regenerated.
    """

    result = subprocess.run(
        ["openssl", "x509", "-noout", "-text", "-in", str(cert)],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return False
    return REQUIRED_SAN in result.stdout


def expires_within(cert: Path, seconds: int = CERT_EXPIRY_THRESHOLD) -> bool:
    """Return *True* when *cert* has expired or will within *seconds*."""

    result = subprocess.run(
        ["openssl", "x509", "-checkend", str(seconds), "-noout", "-in", str(cert)],
        capture_output=True,
        text=True,
        check=False,
    )
    return result.returncode != 0


def regenerate_certificates(script: Path | None = None) -> None:
    """Run the certificate generation script and block until it finishes.

    A failing script raises :class:`subprocess.CalledProcessError` - the
    database must never start with a missing or stale certificate.
    """

    script = INIT_SSL_SCRIPT if script is None else script
    subprocess.run(["bash", str(script)], check=True)


def ensure_certificates(
    pgdata: str | Path,
    *,
    ssl_dir: Path | None = None,
    script: Path | None = None,
) -> int:
    """Regenerate the server certificate when required, return the run count.

    The three checks are evaluated in sequence against the current state of
    the file system.  They are not mutually exclusive on purpose: the
    generation script is idempotent so running it twice is harmless.
    """

    cert = server_cert(ssl_dir)
    conf = Path(pgdata) / "postgresql.conf"
    runs = 0

    if cert.is_file() and not has_localhost_san(cert):
        _log("Did not find a x509v3 certificate, regenerating certificates...")
        regenerate_certificates(script)
        runs += 1

    if cert.is_file() and expires_within(cert, CERT_EXPIRY_THRESHOLD):
        _log("Certificate has or will expire soon, regenerating certificates...")
        regenerate_certificates(script)
        runs += 1

    if conf.is_file() and not cert.is_file():
        _log("Database initialized without certificate, generating certificates...")
        regenerate_certificates(script)
        runs += 1

    return runs
