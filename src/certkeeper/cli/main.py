"""The ``certkeeper`` command.

Examples::

    certkeeper -c /etc/certkeeper/config.yaml serve
    certkeeper -c config.yaml serve --dev
    certkeeper -c config.yaml validate
    certkeeper -c config.yaml list --group prod --json
    certkeeper -c config.yaml renew AB:CD:... --days 365
    certkeeper -c config.yaml sweep

Without a subcommand the server is started.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn

log = logging.getLogger(__name__)


def _version() -> str:
    from certkeeper import __version__  # noqa: PLC0415

    return __version__


def _flag(parser: argparse.ArgumentParser, name: str, text: str, **kw) -> None:
    parser.add_argument(name, action="store_true", default=False, help=text, **kw)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certkeeper",
        description="Keep certificates renewed and deployed.",
    )
    parser.add_argument("-c", "--config", required=True, metavar="PATH",
                        help="YAML or JSON configuration file.")
    _flag(parser, "--debug", "Verbose bootstrap logging and full tracebacks.")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {_version()}")

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = commands.add_parser("serve", help="run the HTTP API with the scheduler and watcher")
    _flag(serve, "--dev", "Flask development server instead of gunicorn.")

    commands.add_parser("validate", help="check the configuration and exit")

    listing = commands.add_parser("list", help="show certificates with their status")
    listing.add_argument("--group", default=None, help="only this group")
    _flag(listing, "--json", "Print JSON instead of a table.", dest="as_json")

    renew = commands.add_parser("renew", help="renew one certificate now")
    renew.add_argument("fingerprint", help="SHA-256 fingerprint")
    renew.add_argument("--days", type=int, default=None, help="validity of the new certificate")
    _flag(renew, "--ask-passphrase", "Prompt for the key passphrase instead of using the vault.")
    _flag(renew, "--no-deploy", "Return without waiting for deployment actions.")

    commands.add_parser("sweep", help="renew everything that is due, then exit")
    return parser


def _fail(message: str) -> NoReturn:
    sys.stderr.write(f"certkeeper: error: {message}\n")
    sys.exit(1)


def _load_config(path: Path, *, debug: bool):
    from certkeeper.config import CertkeeperConfig, ConfigValidationError  # noqa: PLC0415

    try:
        return CertkeeperConfig(config_file=str(path))
    except ConfigValidationError as exc:
        _fail(str(exc))
    except Exception as exc:
        if debug:
            raise
        _fail(f"failed to load configuration: {exc}")


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    path = Path(args.config)
    if not path.is_file():
        _fail(f"configuration file not found: {path}")

    # stderr only until the configured handlers replace it
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    config = _load_config(path, debug=args.debug)

    from certkeeper.logging import configure_logging  # noqa: PLC0415

    configure_logging(config.settings.logging)

    command = args.command or "serve"
    if command == "validate":
        _print_summary(config)
        sys.exit(0)
    if command == "serve":
        from certkeeper.cli.commands.serve import run_serve  # noqa: PLC0415

        _print_summary(config)
        run_serve(config, args)
        return

    from certkeeper.cli.commands.certificates import run_certificates  # noqa: PLC0415

    sys.exit(run_certificates(config, args))


def _print_summary(config) -> None:
    s = config.settings
    state = "enabled" if s.renewal.enabled else "disabled"
    rows = (
        ("config", config.path),
        ("store", s.storage.root),
        ("listen", f"{s.server.bind}:{s.server.port}"),
        ("schedule", f"{s.renewal.schedule} ({state})"),
        ("watcher", "enabled" if s.watcher.enabled else "disabled"),
        ("hooks", f"{len(s.hooks.registered)} registered"),
    )
    sys.stdout.write(f"certkeeper {_version()}\n")
    for label, value in rows:
        sys.stdout.write(f"  {label + ':':<11}{value}\n")
