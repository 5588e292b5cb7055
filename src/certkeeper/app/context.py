"""Dependency injection container for certkeeper.

Created once during application startup and stored on the Flask app
via ``app.extensions["container"]``.  Accessible from any request
context with :func:`get_container`.

Usage::

    from certkeeper.app.context import get_container

    c = get_container()
    record = c.index.get(fingerprint)
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from flask import current_app

from certkeeper.core.types import RenewalTrigger

if TYPE_CHECKING:
    from certkeeper.adapters import Adapters
    from certkeeper.app.shutdown import ShutdownCoordinator
    from certkeeper.config.settings import CertkeeperSettings, VaultSettings
    from certkeeper.deploy import Dispatcher, ExecutorRegistry
    from certkeeper.hooks.registry import HookRegistry
    from certkeeper.index import MetadataIndex
    from certkeeper.renewal import CertificateWatcher, RenewalEngine, RenewalScheduler
    from certkeeper.services import CertificateService, DeploymentService, DeploymentSettingsStore
    from certkeeper.store import CertificateStore, EventBus
    from certkeeper.vault import MasterKey, PassphraseVault, SecretBox

log = logging.getLogger(__name__)


def master_secret(settings: VaultSettings) -> str | None:
    """The configured master secret, falling back to its environment variable."""
    return settings.master_secret or os.environ.get(settings.master_secret_env) or None


class Container:
    """Application-wide dependency container.

    Builds the store, index, vault, dispatcher, renewal engine and the
    services on top of them.  Background workers (scheduler, watcher)
    are created here but only run after :meth:`start`.
    """

    def __init__(  # noqa: PLR0915
        self,
        settings: CertkeeperSettings,
        shutdown_coordinator: ShutdownCoordinator | None = None,
        adapters: Adapters | None = None,
    ) -> None:
        from certkeeper.adapters import Adapters as _Adapters  # noqa: N814, PLC0415
        from certkeeper.app.shutdown import ShutdownCoordinator as _SC  # noqa: N814, PLC0415
        from certkeeper.deploy import Dispatcher as _Dispatcher  # noqa: N814, PLC0415
        from certkeeper.deploy import ExecutorRegistry as _ER  # noqa: N814, PLC0415
        from certkeeper.hooks.registry import HookRegistry as _HR  # noqa: N814, PLC0415
        from certkeeper.index import MetadataIndex as _MI  # noqa: N814, PLC0415
        from certkeeper.renewal import (  # noqa: PLC0415
            CertificateWatcher as _CW,  # noqa: N814
        )
        from certkeeper.renewal import (  # noqa: PLC0415
            RenewalEngine as _RE,  # noqa: N814
        )
        from certkeeper.renewal import (  # noqa: PLC0415
            RenewalScheduler as _RS,  # noqa: N814
        )
        from certkeeper.services import (  # noqa: PLC0415
            CertificateService as _CS,  # noqa: N814
        )
        from certkeeper.services import (  # noqa: PLC0415
            DeploymentService as _DS,  # noqa: N814
        )
        from certkeeper.services import (  # noqa: PLC0415
            DeploymentSettingsStore as _DSS,  # noqa: N814
        )
        from certkeeper.store import CertificateStore as _CSt  # noqa: N814, PLC0415
        from certkeeper.store import EventBus as _EB  # noqa: N814, PLC0415
        from certkeeper.vault import MasterKey as _MK  # noqa: N814, PLC0415
        from certkeeper.vault import PassphraseVault as _PV  # noqa: N814, PLC0415
        from certkeeper.vault import SecretBox as _SB  # noqa: N814, PLC0415

        self.settings: CertkeeperSettings = settings
        self.shutdown_coordinator: ShutdownCoordinator = shutdown_coordinator or _SC(
            graceful_timeout=settings.server.graceful_timeout,
        )
        storage = settings.storage
        os.makedirs(storage.state_dir, exist_ok=True)

        # Secrets
        self.master_key: MasterKey = _MK(master_secret(settings.vault), storage.salt_file)
        if self.master_key.sealed:
            log.warning(
                "No master secret configured (%s); the passphrase vault is sealed",
                settings.vault.master_secret_env,
            )
        self.box: SecretBox = _SB(self.master_key)
        self.vault: PassphraseVault = _PV(storage.vault_file, self.master_key)

        # Store and index
        self.bus: EventBus = _EB()
        self.store: CertificateStore = _CSt(
            storage.root,
            self.bus,
            lock_timeout=settings.renewal.lock_timeout_seconds,
        )
        self.index: MetadataIndex = _MI(settings.renewal)
        self.bus.subscribe(self.index.apply)
        self.index.rebuild(self.store.scan())
        log.info("Indexed %d certificate(s) under %s", len(self.index.all()), storage.root)

        # Hooks
        self.hook_registry: HookRegistry = _HR(settings.hooks)

        # Deployment
        self.adapters: Adapters = adapters or _Adapters()
        self.deployment_settings: DeploymentSettingsStore = _DSS(
            storage.deployment_settings_file,
            self.box,
        )
        self.executors: ExecutorRegistry = _ER(self.adapters, settings.smtp)
        self.dispatcher: Dispatcher = _Dispatcher(
            self.store,
            self.index,
            self.executors,
            settings.dispatch,
            box=self.box,
            vault=self.vault,
            deployment_settings=self.deployment_settings,
            hooks=self.hook_registry,
            shutdown=self.shutdown_coordinator,
        )

        # Renewal
        self.engine: RenewalEngine = _RE(
            self.store,
            self.index,
            self.vault,
            settings.renewal,
            dispatcher=self.dispatcher,
            hooks=self.hook_registry,
            shutdown=self.shutdown_coordinator,
            box=self.box,
        )
        self.scheduler: RenewalScheduler = _RS(self.engine, storage.scheduler_state_file)
        self.watcher: CertificateWatcher | None = None
        if settings.watcher.enabled:
            self.watcher = _CW(storage.root, self._on_files_changed, settings.watcher)

        # Services
        self.certificate_service: CertificateService = _CS(
            self.store,
            self.index,
            self.vault,
            self.engine,
            self.dispatcher,
            self.hook_registry,
            box=self.box,
        )
        self.deployment_service: DeploymentService = _DS(
            self.store,
            self.index,
            self.dispatcher,
            self.box,
        )

    # -- background workers -------------------------------------------------

    def _on_files_changed(self, cert_ids: set[str]) -> None:
        """Re-read changed certificate directories, then re-evaluate renewals."""
        for cert_id in sorted(cert_ids):
            try:
                self.store.refresh(cert_id)
            except Exception:
                log.exception("Could not reload certificate %s after a file change", cert_id)
        if self.engine.settings.enabled and not self.shutdown_coordinator.is_shutting_down:
            self.engine.sweep(RenewalTrigger.WATCH)

    def start(self) -> None:
        """Start the scheduler and, when enabled, the filesystem watcher."""
        # Runs even when disabled so re-enabling over the API takes effect
        self.scheduler.start()
        if self.watcher is not None:
            self.watcher.start()

    def stop(self) -> None:
        """Stop workers and release pooled connections."""
        if self.watcher is not None:
            self.watcher.stop()
        self.scheduler.stop()
        self.dispatcher.shutdown(wait=True)
        self.hook_registry.shutdown(wait=True)
        self.adapters.close()


def get_container() -> Container:
    """Return the :class:`Container` from the current Flask app.

    Raises :class:`RuntimeError` if ``create_app`` was not given (or
    could not build) a container.
    """
    container = current_app.extensions.get("container")
    if container is None:
        msg = "Dependency container not available -- was create_app() called with wiring enabled?"
        raise RuntimeError(msg)
    return container
