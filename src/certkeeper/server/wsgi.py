"""WSGI entry point for external servers (gunicorn, uWSGI, etc.).

The config file path is read from the ``CERTKEEPER_CONFIG`` environment
variable.  Run a single worker process; the engine keeps in-process
state.

Example::

    export CERTKEEPER_CONFIG=/etc/certkeeper/config.yaml
    gunicorn -w 1 --threads 8 "certkeeper.server.wsgi:app"
"""

from __future__ import annotations

import os
import sys

_config_path = os.environ.get("CERTKEEPER_CONFIG")
if _config_path is None:
    sys.stderr.write("certkeeper: CERTKEEPER_CONFIG is not set\n")
    sys.exit(1)

# Bootstrap the singleton before anything else imports it.
from certkeeper.config import CertkeeperConfig  # noqa: E402

_config = CertkeeperConfig(config_file=_config_path)

from certkeeper.logging import configure_logging  # noqa: E402

configure_logging(_config.settings.logging)

from certkeeper.app import create_app  # noqa: E402

app = create_app(config=_config)
