"""
autocertdns: CLI entry point.

Usage:
  python main.py --once                        # Load or issue the certificate, then exit
  python main.py --run                         # Keep it renewed until SIGINT/SIGTERM
  python main.py --once --domain www.example.com --email ops@example.com
  python main.py --once --staging              # Use the Let's Encrypt staging CA
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = structlog.get_logger("autocertdns")


# ── Manager construction ──────────────────────────────────────────────────────


def build_manager(args: argparse.Namespace):
    """Build a Manager from settings, with command-line overrides applied."""
    from autocert import Manager, ManagerConfig
    from autocert.acme_session import LETS_ENCRYPT_STAGING_URL
    from config import settings
    from dns01.factory import make_provisioner

    updates = {}
    if args.domain:
        updates["DOMAIN"] = args.domain.rstrip(".").lower()
    if args.email:
        updates["ACME_EMAIL"] = args.email
    if args.cache_dir:
        updates["CACHE_DIR"] = args.cache_dir
    if args.timeout:
        updates["ACME_TIMEOUT_SECONDS"] = args.timeout
    if args.staging:
        updates["CA_PROVIDER"] = "letsencrypt_staging"
        updates["ACME_DIRECTORY_URL"] = LETS_ENCRYPT_STAGING_URL
    effective = settings.model_copy(update=updates)

    logging.getLogger().setLevel(effective.LOG_LEVEL)

    config = ManagerConfig.from_settings(
        effective,
        make_provisioner(effective),
        logf=log.info,
        errorf=log.error,
        on_failure=_on_failure,
    )
    return Manager(config)


def _on_failure(exc: BaseException) -> None:
    log.error("Background renewal stopped; restart to retry", error=str(exc))


# ── Modes ─────────────────────────────────────────────────────────────────────


def run_once(args: argparse.Namespace) -> int:
    from autocert import AutocertError

    manager = build_manager(args)
    try:
        cert = manager.obtain()
    except AutocertError:
        return 1
    log.info(
        "Certificate ready",
        domain=cert.domain,
        not_after=cert.not_after.isoformat(),
        next_renewal=manager.next_renewal.isoformat(),
    )
    return 0


def run_forever(args: argparse.Namespace) -> int:
    from autocert import AutocertError, RenewalState

    stop = threading.Event()

    def handle_signal(signum, frame) -> None:
        log.info("Received signal, stopping", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    manager = build_manager(args)
    try:
        manager.run(stop)
    except AutocertError:
        return 1

    log.info("Renewing in the background, press Ctrl+C to stop")
    while not stop.wait(60):
        if manager.state is RenewalState.FAILED:
            return 1
    manager.stop(timeout=30)
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Obtain and renew a certificate over ACME dns-01",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --run
  python main.py --once --domain www.example.com --email ops@example.com --staging
        """,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Load the cached certificate or issue a new one, then exit",
    )
    mode.add_argument(
        "--run",
        action="store_true",
        help="Keep the certificate renewed until interrupted",
    )
    parser.add_argument("--domain", metavar="DOMAIN", help="Domain to certify (overrides DOMAIN)")
    parser.add_argument("--email", metavar="EMAIL", help="ACME account email (overrides ACME_EMAIL)")
    parser.add_argument("--cache-dir", metavar="DIR", help="Key/certificate cache (overrides CACHE_DIR)")
    parser.add_argument(
        "--staging",
        action="store_true",
        help="Use the Let's Encrypt staging directory",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        metavar="SECONDS",
        help="Upper bound on one ACME exchange (overrides ACME_TIMEOUT_SECONDS)",
    )

    args = parser.parse_args(argv)

    if not args.once and not args.run:
        parser.print_help()
        sys.exit(1)

    sys.exit(run_once(args) if args.once else run_forever(args))


if __name__ == "__main__":
    main()
