"""Certificate subcommands: ``list``, ``renew`` and ``sweep``.

Usage::

    certkeeper -c config.yaml list [--group NAME] [--json]
    certkeeper -c config.yaml renew <fingerprint> [--days N] [--ask-passphrase]
    certkeeper -c config.yaml sweep

These run against the store directly, without the HTTP server.  Do not
run them while ``serve`` renews the same store.
"""

from __future__ import annotations

import getpass
import json
import sys
from concurrent.futures import TimeoutError as FutureTimeout

from certkeeper.app.errors import CertProblem
from certkeeper.core.expiry import days_until_expiry
from certkeeper.core.types import RenewalTrigger
from certkeeper.crypto.backend import normalize_fingerprint
from certkeeper.renewal import RenewalRequest

_DEPLOY_WAIT_SECONDS = 600


def run_certificates(config, args) -> int:
    """Run ``list``, ``renew`` or ``sweep``; returns the exit status."""
    from certkeeper.app.context import Container  # noqa: PLC0415

    container = Container(config.settings)
    try:
        if args.command == "list":
            return _list(container, args)
        if args.command == "renew":
            return _renew(container, args)
        if args.command == "sweep":
            return _sweep(container)
        return 1
    except CertProblem as exc:
        sys.stderr.write(f"certkeeper: {exc.public_kind.value}: {exc.detail}\n")
        return 1
    finally:
        container.stop()


def _list(container, args) -> int:
    records = [r for r in container.index.all() if args.group is None or r.group == args.group]
    rows = []
    for record in sorted(records, key=lambda r: r.name.lower()):
        rows.append(
            {
                "name": record.name,
                "type": record.cert_type.value,
                "fingerprint": record.fingerprint,
                "status": container.index.status(record).value,
                "validTo": record.valid_to.isoformat() if record.valid_to else None,
                "days": days_until_expiry(record.valid_to) if record.valid_to else None,
            },
        )
    if args.as_json:
        sys.stdout.write(json.dumps(rows, indent=2) + "\n")
        return 0
    for row in rows:
        days = "-" if row["days"] is None else str(row["days"])
        sys.stdout.write(
            f"{row['name']:<32} {row['type']:<16} {row['status']:<14} {days:>6}d  "
            f"{row['fingerprint'] or '-'}\n",
        )
    return 0


def _renew(container, args) -> int:
    record = container.index.get(normalize_fingerprint(args.fingerprint))
    passphrase = None
    if args.ask_passphrase:
        passphrase = getpass.getpass(f"Passphrase for {record.name}: ") or None
    result = container.engine.renew(
        record.cert_id,
        RenewalRequest(
            validity_days=args.days,
            passphrase=passphrase,
            trigger=RenewalTrigger.CLI,
        ),
    )
    sys.stdout.write(
        f"Renewed {result.record.name}: {result.previous_fingerprint} -> "
        f"{result.record.fingerprint}, valid until {result.record.valid_to}\n",
    )
    if result.dispatch is None or args.no_deploy:
        return 0
    try:
        report = result.dispatch.result(timeout=_DEPLOY_WAIT_SECONDS)
    except FutureTimeout:
        sys.stderr.write("certkeeper: deployment still running; giving up waiting\n")
        return 1
    for line in report.results:
        sys.stdout.write(f"  [{line.status.value}] {line.name}: {line.message}\n")
    return 0 if report.success else 2


def _sweep(container) -> int:
    result = container.engine.sweep(RenewalTrigger.CLI)
    if result is None:
        return 0
    sys.stdout.write(
        f"Sweep: {result.candidates} candidate(s), {len(result.renewed)} renewed, "
        f"{len(result.failed)} failed\n",
    )
    for name, reason in result.failed.items():
        sys.stdout.write(f"  {name}: {reason}\n")
    return 0 if not result.failed else 2
