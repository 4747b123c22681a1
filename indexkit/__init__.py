"""
indexkit: startup orchestration for the search indexer service.
"""
from .config import ConfigError, IndexerSettings, ResolvedConfiguration, load_configuration
from .auth import AuthGateComposer, AuthorizationPolicy, AuthRejected, AuthSchemeConfigError, any_of
from .discovery import DiscoveryRegistrar, RegistrationDescriptor, RegistrationError, derive_port
from .search import AzureSearchClient, IndexSynchronizer, IndexSyncError, IndexSyncOutcome
from .bootstrap import BootstrapOrchestrator, BootstrapState, FatalBootstrapError, bootstrap_service

__version__ = "0.1.0"
__all__ = [
    "ConfigError", "IndexerSettings", "ResolvedConfiguration", "load_configuration",
    "AuthGateComposer", "AuthorizationPolicy", "AuthRejected", "AuthSchemeConfigError", "any_of",
    "DiscoveryRegistrar", "RegistrationDescriptor", "RegistrationError", "derive_port",
    "AzureSearchClient", "IndexSynchronizer", "IndexSyncError", "IndexSyncOutcome",
    "BootstrapOrchestrator", "BootstrapState", "FatalBootstrapError", "bootstrap_service",
]
