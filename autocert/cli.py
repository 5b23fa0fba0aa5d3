"""autocert command-line entry point.

Usage::

    autocert register --cert-dir ./cert --email admin@example.com
    autocert serve --cert-dir ./cert --domain example.com
    autocert serve --domain example.com --app myproject.main:app
    autocert status --cert-dir ./cert
    python -m autocert register
"""
import argparse
import asyncio
import importlib
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI

from . import __version__
from .account import AccountKeyStore, read_account_url
from .acme_client import AccountClientFactory, register_account
from .challenges import HTTPChallengeServer, challenge_registry
from .errors import AutocertError
from .https_server import HTTPSServerManager
from .manager import CertificateManager
from .policy import should_renew
from .routes import set_certificate_manager, status_router
from .settings import AutocertSettings, load_settings
from .storage import CertificateStore, Found

logger = logging.getLogger(__name__)

DEFAULT_CERT_DIR = "./cert"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autocert",
        description="Automatic Let's Encrypt certificates for a single domain",
    )
    parser.add_argument("-c", "--config", metavar="PATH", help="Path to a JSON settings file.")
    parser.add_argument("--log-level", metavar="LEVEL", help="Logging level (default from settings).")
    parser.add_argument(
        "--staging",
        action="store_true",
        default=None,
        help="Use the Let's Encrypt staging environment.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    register_parser = subparsers.add_parser("register", help="Register an ACME account")
    register_parser.add_argument("--cert-dir", metavar="DIR")
    register_parser.add_argument("--email")

    serve_parser = subparsers.add_parser("serve", help="Serve HTTPS with automatic renewal")
    serve_parser.add_argument("--cert-dir", metavar="DIR")
    serve_parser.add_argument("--domain")
    serve_parser.add_argument("--app", metavar="MODULE:ATTR", help="ASGI app to serve over HTTPS.")

    status_parser = subparsers.add_parser("status", help="Show the stored certificate")
    status_parser.add_argument("--cert-dir", metavar="DIR")

    return parser


def _resolve_settings(args: argparse.Namespace) -> AutocertSettings:
    settings = load_settings(Path(args.config) if args.config else None)
    overrides: dict[str, Any] = {}
    if getattr(args, "cert_dir", None):
        overrides["cert_dir"] = args.cert_dir
    if getattr(args, "domain", None):
        overrides["domain"] = args.domain
    if args.staging is not None:
        overrides["use_staging"] = args.staging
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        settings = AutocertSettings(**{**settings.model_dump(), **overrides})
    return settings


def _prompt(question: str, default: str = "") -> str:
    answer = input(question).strip()
    return answer or default


def cmd_register(args: argparse.Namespace, settings: AutocertSettings) -> int:
    cert_dir = args.cert_dir or _prompt(f"Certificate directory [{DEFAULT_CERT_DIR}]: ", DEFAULT_CERT_DIR)
    path = Path(cert_dir)

    if not path.exists():
        print("Certificate directory does not exist. Creating...")
        path.mkdir(parents=True, exist_ok=True)

    if read_account_url(path) is not None:
        print("Account already created\n")
        print("If you need a new account, delete the account files")
        return 1

    email = args.email or _prompt("E-mail: ")
    if not email:
        print("An e-mail address is required", file=sys.stderr)
        return 1

    factory = AccountClientFactory(
        key_store=AccountKeyStore(key_size=settings.account_key_size),
        directory_url=settings.get_directory_url(),
        network_timeout=settings.network_timeout,
    )
    asyncio.run(register_account(path, email, factory=factory))
    print("Success!")
    return 0


def cmd_status(args: argparse.Namespace, settings: AutocertSettings) -> int:
    cert_dir = settings.get_cert_dir()
    if read_account_url(cert_dir) is None:
        print(f"No ACME account in {cert_dir}")

    lookup = CertificateStore().load(cert_dir)
    if not isinstance(lookup, Found):
        print(f"No usable certificate in {cert_dir} ({lookup.reason})")
        return 1

    bundle = lookup.bundle
    print(f"Certificate expires: {bundle.not_after.isoformat()}")
    threshold = timedelta(days=settings.renew_days_before_expiry)
    print(f"Renewal due: {'yes' if should_renew(bundle, threshold=threshold) else 'no'}")
    return 0


def load_app(app_path: Optional[str]) -> Any:
    """Import an ASGI app from 'module:attr', or build the default one."""
    if not app_path:
        app = FastAPI(title="autocert")
        app.include_router(status_router)
        return app

    module_name, _, attr = app_path.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attr or "app")


async def serve(settings: AutocertSettings, app_path: Optional[str] = None) -> None:
    """
    Run the challenge listener, the HTTPS server and the renewal task.

    The challenge listener starts first: it must be reachable before the
    initial certificate can be issued.
    """
    challenge_server = HTTPChallengeServer(
        challenge_registry, settings.http_host, settings.http_port
    )
    await challenge_server.start()

    manager = CertificateManager(settings)
    try:
        await manager.get_certificate_and_key()

        https_server = HTTPSServerManager(
            load_app(app_path),
            manager.cert_dir,
            host=settings.https_host,
            port=settings.https_port,
        )
        await https_server.start()
        set_certificate_manager(manager)
        manager.start_renewal(on_renewed=https_server.swap_certificate)

        await https_server.wait()
    finally:
        manager.stop_renewal()
        set_certificate_manager(None)
        await challenge_server.stop()


def cmd_serve(args: argparse.Namespace, settings: AutocertSettings) -> int:
    asyncio.run(serve(settings, args.app))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    try:
        settings = _resolve_settings(args)
    except ValueError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        return 2
    setup_logging(settings.log_level)

    commands = {
        "register": cmd_register,
        "serve": cmd_serve,
        "status": cmd_status,
    }
    try:
        return commands[args.command](args, settings)
    except AutocertError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
