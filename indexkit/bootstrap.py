"""
Startup sequence for the indexer service.

    Start -> ConfigResolved -> AuthComposed
          -> Registered | RegistrationSkippedOrFailed
          -> IndexSynced | Fatal
          -> Ready

Every step runs once, in order, on the calling thread. Registration
failures are logged and tolerated; configuration, auth and index sync
failures are fatal and the service never reaches Ready.
"""

import logging
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import consul
import uvicorn

from indexkit.auth import AuthGateComposer, AuthSchemeConfigError, AuthorizationPolicy
from indexkit.config import (
    ConfigError,
    IndexerSettings,
    ResolvedConfiguration,
    load_configuration,
)
from indexkit.discovery import (
    ConsulFactory,
    DiscoveryRegistrar,
    RegistrationDescriptor,
    derive_host,
    derive_port,
)
from indexkit.schema import IndexDefinition, documentation_index
from indexkit.search import (
    AzureSearchClient,
    IndexSynchronizer,
    IndexSyncError,
    IndexSyncOutcome,
)

logger = logging.getLogger("indexkit.bootstrap")


class BootstrapState(str, Enum):
    START = "start"
    CONFIG_RESOLVED = "config_resolved"
    AUTH_COMPOSED = "auth_composed"
    REGISTERED = "registered"
    REGISTRATION_SKIPPED_OR_FAILED = "registration_skipped_or_failed"
    INDEX_SYNCED = "index_synced"
    FATAL = "fatal"
    READY = "ready"


_TRANSITIONS = {
    BootstrapState.START: {BootstrapState.CONFIG_RESOLVED, BootstrapState.FATAL},
    BootstrapState.CONFIG_RESOLVED: {BootstrapState.AUTH_COMPOSED, BootstrapState.FATAL},
    BootstrapState.AUTH_COMPOSED: {
        BootstrapState.REGISTERED,
        BootstrapState.REGISTRATION_SKIPPED_OR_FAILED,
    },
    BootstrapState.REGISTERED: {BootstrapState.INDEX_SYNCED, BootstrapState.FATAL},
    BootstrapState.REGISTRATION_SKIPPED_OR_FAILED: {BootstrapState.INDEX_SYNCED, BootstrapState.FATAL},
    BootstrapState.INDEX_SYNCED: {BootstrapState.READY},
    BootstrapState.FATAL: set(),
    BootstrapState.READY: set(),
}


class FatalBootstrapError(Exception):
    """Bootstrap cannot reach Ready; the process must exit non-zero."""

    def __init__(self, message: str, failed_in: BootstrapState):
        super().__init__(message)
        self.failed_in = failed_in


@dataclass(frozen=True)
class BootstrapResult:
    """Everything the request pipeline needs once bootstrap reached Ready."""
    configuration: ResolvedConfiguration
    settings: IndexerSettings
    policy: AuthorizationPolicy
    registrar: DiscoveryRegistrar
    index_definition: IndexDefinition
    sync_outcome: IndexSyncOutcome
    state: BootstrapState


SearchClientFactory = Callable[[IndexerSettings, str], AzureSearchClient]


def _default_search_client(settings: IndexerSettings, api_key: str) -> AzureSearchClient:
    return AzureSearchClient(settings.azure_search, api_key)


class BootstrapOrchestrator:
    """
    Runs the startup sequence once.

    Collaborators are injectable so tests can observe outbound calls.

    Usage:
        result = BootstrapOrchestrator(load_configuration()).run()
        app = create_app(result)
    """

    def __init__(
        self,
        configuration: Optional[ResolvedConfiguration] = None,
        *,
        config_loader: Callable[[], ResolvedConfiguration] = load_configuration,
        search_client_factory: SearchClientFactory = _default_search_client,
        consul_factory: ConsulFactory = consul.Consul,
        use_service_discovery: bool = True,
        index_definition: Optional[IndexDefinition] = None,
        auth_composer: Optional[AuthGateComposer] = None,
    ):
        self._configuration = configuration
        self._config_loader = config_loader
        self._search_client_factory = search_client_factory
        self._consul_factory = consul_factory
        self._use_service_discovery = use_service_discovery
        self._index_definition = index_definition
        self._auth_composer = auth_composer or AuthGateComposer()

        self.state = BootstrapState.START
        self.history: List[BootstrapState] = [BootstrapState.START]

    def _transition(self, new_state: BootstrapState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal bootstrap transition {self.state.value} -> {new_state.value}")
        logger.debug("Bootstrap %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def _fail(self, message: str, error: Exception) -> FatalBootstrapError:
        failed_in = self.state
        self._transition(BootstrapState.FATAL)
        logger.critical("%s: %s", message, error)
        return FatalBootstrapError(f"{message}: {error}", failed_in)

    def run(self) -> BootstrapResult:
        """
        Execute the sequence.

        Raises:
            FatalBootstrapError: configuration, auth or index sync failed.
        """
        if self.state is not BootstrapState.START:
            raise RuntimeError("Bootstrap already ran")

        # 1. Configuration
        try:
            configuration = self._configuration
            if configuration is None:
                configuration = self._config_loader()
            settings = IndexerSettings.from_configuration(configuration)
        except ConfigError as e:
            raise self._fail("Configuration could not be resolved", e) from e
        self._transition(BootstrapState.CONFIG_RESOLVED)

        # 2. Authorization gate
        try:
            policy = self._auth_composer.compose(settings.secure_token, settings.oauth)
        except AuthSchemeConfigError as e:
            raise self._fail("Authorization gate could not be composed", e) from e
        self._transition(BootstrapState.AUTH_COMPOSED)

        # 3. Discovery registration (non-fatal)
        registrar = DiscoveryRegistrar(
            consul_factory=self._consul_factory,
            retry_attempts=settings.discovery.retry_attempts,
            retry_delay=settings.discovery.retry_delay,
        )
        enabled = self._use_service_discovery and settings.discovery.enabled
        registered = registrar.register_if_enabled(
            enabled, RegistrationDescriptor.from_settings(settings)
        )
        self._transition(
            BootstrapState.REGISTERED if registered
            else BootstrapState.REGISTRATION_SKIPPED_OR_FAILED
        )

        # 4. Index synchronization (fatal, awaited)
        definition = self._index_definition or documentation_index(settings.azure_search.index_name)
        try:
            outcome = self._synchronize(settings, definition)
        except IndexSyncError as e:
            raise self._fail("Index synchronization failed", e) from e
        self._transition(BootstrapState.INDEX_SYNCED)

        self._transition(BootstrapState.READY)
        logger.info(
            "Bootstrap complete (discovery=%s, index=%s)",
            "registered" if registered else "skipped", outcome.value,
        )
        return BootstrapResult(
            configuration=configuration,
            settings=settings,
            policy=policy,
            registrar=registrar,
            index_definition=definition,
            sync_outcome=outcome,
            state=self.state,
        )

    def _synchronize(self, settings: IndexerSettings, definition: IndexDefinition) -> IndexSyncOutcome:
        """
        Run the sync on a worker thread and block until it finishes or times out.

        Errors raised by the sync are re-raised on the calling thread.
        """
        synchronizer = IndexSynchronizer(
            client_factory=lambda api_key: self._search_client_factory(settings, api_key),
            definition=definition,
        )
        api_key = settings.azure_search.api_key
        if not settings.azure_search.sync_enabled:
            return synchronizer.synchronize(api_key)

        timeout = settings.azure_search.sync_timeout
        outcomes: List[IndexSyncOutcome] = []
        errors: List[Exception] = []

        def _sync() -> None:
            try:
                outcomes.append(synchronizer.synchronize(api_key))
            except Exception as e:
                errors.append(e)

        # Daemon: a hung backend call must not block process exit
        worker = threading.Thread(target=_sync, name="index-sync", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            raise IndexSyncError(f"Index synchronization did not finish within {timeout:g}s")
        if errors:
            raise errors[0]
        if not outcomes:
            raise IndexSyncError("Index synchronization ended without an outcome")
        return outcomes[0]


def setup_logging(settings: IndexerSettings) -> None:
    """Configure structured logging on stdout."""
    log_format = (
        f"%(asctime)s [{settings.service_label}] %(levelname)s "
        f"%(name)s: %(message)s"
    )
    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )


def bootstrap_service(run_server: bool = True, use_service_discovery: bool = True):
    """
    Process entry point: bootstrap, then serve until shutdown.

    Exits with status 1 when bootstrap fails before Ready.
    """
    from indexkit.api import create_app

    try:
        configuration = load_configuration()
        settings = IndexerSettings.from_configuration(configuration)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, stream=sys.stderr)
        logger.critical("Configuration could not be resolved: %s", e)
        sys.exit(1)

    setup_logging(settings)

    try:
        result = BootstrapOrchestrator(
            configuration, use_service_discovery=use_service_discovery,
        ).run()
    except FatalBootstrapError as e:
        logger.critical("Bootstrap failed in state %s, exiting", e.failed_in.value)
        sys.exit(1)

    app = create_app(result)
    if not run_server:
        return app

    host = derive_host(settings.server.urls)
    port = derive_port(settings.server.urls)
    logger.info("%s ready, listening on %s:%d", settings.service_label, host, port)
    uvicorn.run(app, host=host, port=port)
    return app
