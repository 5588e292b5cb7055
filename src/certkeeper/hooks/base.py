"""The :class:`Hook` base class.

A hook overrides the ``on_*`` methods for the events it cares about;
the rest stay no-ops.  Example::

    from certkeeper.hooks import Hook

    class ChatOpsHook(Hook):
        def on_certificate_renewal_failed(self, ctx: dict) -> None:
            post_message(self.config["channel"], ctx["message"])
"""

from __future__ import annotations

import abc


class Hook(abc.ABC):  # noqa: B024
    """Receives certificate and deployment lifecycle events.

    Parameters
    ----------
    config:
        The entry's ``config`` mapping from ``hooks.registered``.

    """

    def __init__(self, config: dict | None = None) -> None:
        self.config = config or {}

    @classmethod
    def validate_config(cls, config: dict) -> None:
        """Raise :class:`ValueError` if *config* is unusable.

        Runs before the hook is constructed, so a bad entry stops
        start-up instead of failing on the first event.
        """

    def on_certificate_created(self, ctx: dict) -> None:  # noqa: B027
        """A certificate was issued for the first time.

        ``ctx``: ``certificate``, ``fingerprint``, ``cert_type``.
        """

    def on_certificate_renewed(self, ctx: dict) -> None:  # noqa: B027
        """A renewal was published.

        ``ctx``: ``certificate``, ``fingerprint``, ``previous_fingerprint``,
        ``valid_to``, ``trigger``.
        """

    def on_certificate_renewal_failed(self, ctx: dict) -> None:  # noqa: B027
        """A renewal ended in the failed state.

        ``ctx``: ``certificate``, ``fingerprint``, ``kind``, ``message``,
        ``trigger``.
        """

    def on_certificate_deleted(self, ctx: dict) -> None:  # noqa: B027
        """``ctx``: ``certificate``, ``fingerprint``."""

    def on_deployment_completed(self, ctx: dict) -> None:  # noqa: B027
        """A dispatch run finished, whatever its outcome.

        ``ctx``: ``certificate``, ``fingerprint`` and ``dispatch``, the
        serialized dispatch report.
        """
