"""
Layered configuration for the indexer service.

Configuration is resolved once at process start from three layers, later
layers overriding earlier ones:

    1. appsettings.json                  (content root, optional)
    2. appsettings.{environment}.json    (content root, optional)
    3. process environment               (ServiceDiscovery__ServiceId -> ServiceDiscovery.ServiceId)

The result is a read-only ResolvedConfiguration. Typed access goes through
IndexerSettings.from_configuration().
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger("indexkit.config")

BASE_FILE = "appsettings.json"
ENVIRONMENT_FILE = "appsettings.{environment}.json"
DEFAULT_ENVIRONMENT = "Production"


class ConfigError(Exception):
    """Configuration is unreadable, malformed, or holds an unusable value."""
    pass


class ResolvedConfiguration(Mapping):
    """
    Immutable mapping of dotted key paths to string values.

    Lookups are case-insensitive; iteration yields keys with the casing of
    the layer that last set them.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        merged: Dict[str, Tuple[str, str]] = {}
        for key, value in (values or {}).items():
            merged[key.lower()] = (key, _stringify(value))
        self._values = MappingProxyType(merged)

    def __getitem__(self, key: str) -> str:
        return self._values[key.lower()][1]

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._values.values())

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._values

    def __repr__(self) -> str:
        return f"ResolvedConfiguration({len(self)} keys)"

    def section(self, prefix: str) -> Dict[str, str]:
        """Return the keys under ``prefix.`` with the prefix stripped."""
        lowered = prefix.lower().rstrip(".") + "."
        return {
            original[len(lowered):]: value
            for key, (original, value) in self._values.items()
            if key.startswith(lowered)
        }

    def list_values(self, key: str) -> List[str]:
        """
        Read a list-valued key.

        Accepts both the flattened form (``Tags.0``, ``Tags.1``) and a single
        comma-separated string.
        """
        indexed = self.section(key)
        if indexed:
            ordered = sorted(
                ((k, v) for k, v in indexed.items() if k.isdigit()),
                key=lambda item: int(item[0]),
            )
            return [v for _, v in ordered if v]
        raw = self.get(key, "")
        return [part.strip() for part in raw.split(",") if part.strip()]


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings and lists into dotted key paths."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten(value, path))
        elif isinstance(value, list):
            flat.update(flatten({str(i): item for i, item in enumerate(value)}, path))
        else:
            flat[path] = value
    return flat


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.debug("Configuration file %s not found, skipping", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed configuration file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(
            f"Configuration file {path} must contain a mapping at the top level"
        )
    logger.debug("Loaded configuration file %s", path)
    return flatten(data)


def _environment_layer(environ: Mapping[str, str]) -> Dict[str, str]:
    return {key.replace("__", "."): value for key, value in environ.items()}


def load_configuration(
    base_path: Optional[str] = None,
    environment: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ResolvedConfiguration:
    """
    Resolve the layered configuration once.

    Args:
        base_path: Content root holding the settings files
            (default: INDEXER_CONTENT_ROOT or the working directory)
        environment: Environment name selecting the overlay file
            (default: INDEXER_ENVIRONMENT or "Production")
        environ: Environment variables to apply last (default: os.environ)

    Raises:
        ConfigError: A settings file exists but cannot be read or parsed.
    """
    environ = os.environ if environ is None else environ
    root = Path(base_path or environ.get("INDEXER_CONTENT_ROOT") or os.getcwd())
    environment = environment or environ.get("INDEXER_ENVIRONMENT") or DEFAULT_ENVIRONMENT

    values: Dict[str, Any] = {}
    for layer in (
        _read_settings_file(root / BASE_FILE),
        _read_settings_file(root / ENVIRONMENT_FILE.format(environment=environment)),
        _environment_layer(environ),
    ):
        # Case-insensitive override: drop any earlier spelling of the same key
        lowered = {k.lower(): k for k in values}
        for key, value in layer.items():
            previous = lowered.get(key.lower())
            if previous is not None and previous != key:
                del values[previous]
            values[key] = value
            lowered[key.lower()] = key

    configuration = ResolvedConfiguration(values)
    logger.info(
        "Configuration resolved from %s (environment=%s, %d keys)",
        root, environment, len(configuration),
    )
    return configuration


# ── Typed settings ──────────────────────────────────────────────────


def _as_int(configuration: Mapping[str, str], key: str, default: int) -> int:
    raw = configuration.get(key, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _as_float(configuration: Mapping[str, str], key: str, default: float) -> float:
    raw = configuration.get(key, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


def _as_bool(configuration: Mapping[str, str], key: str, default: bool) -> bool:
    raw = configuration.get(key, "").strip().lower()
    if not raw:
        return default
    if raw in ("true", "1", "yes", "on"):
        return True
    if raw in ("false", "0", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class AzureSearchConfig:
    """Remote search index backend."""
    api_key: str = ""
    service_name: str = ""
    endpoint: str = ""
    index_name: str = "documents"
    api_version: str = "2023-11-01"
    timeout: int = 10
    retry_attempts: int = 3
    retry_delay: float = 0.5
    sync_timeout: float = 60.0

    @property
    def base_url(self) -> str:
        if self.endpoint:
            return self.endpoint.rstrip("/")
        return f"https://{self.service_name}.search.windows.net"

    @property
    def sync_enabled(self) -> bool:
        return bool(self.api_key.strip())


@dataclass(frozen=True)
class SecureTokenConfig:
    secure_token: str = ""
    realm: str = "indexer"


@dataclass(frozen=True)
class OAuthConfig:
    authority: str = ""
    audience: str = ""
    metadata_timeout: int = 10


@dataclass(frozen=True)
class ServiceDiscoveryConfig:
    """Consul agent registration."""
    enabled: bool = True
    service_id: str = ""
    service_name: str = ""
    agent_address: str = "http://localhost:8500"
    datacenter: str = ""
    service_address: str = ""
    tags: Tuple[str, ...] = ()
    check_interval: str = "10s"
    retry_attempts: int = 3
    retry_delay: float = 1.0


@dataclass(frozen=True)
class ServerConfig:
    urls: str = ""


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class IndexerSettings:
    """
    Typed view over a ResolvedConfiguration.

    Usage:
        configuration = load_configuration()
        settings = IndexerSettings.from_configuration(configuration)
    """

    azure_search: AzureSearchConfig = field(default_factory=AzureSearchConfig)
    secure_token: SecureTokenConfig = field(default_factory=SecureTokenConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    discovery: ServiceDiscoveryConfig = field(default_factory=ServiceDiscoveryConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def service_label(self) -> str:
        return self.discovery.service_name or "indexer"

    @classmethod
    def from_configuration(cls, configuration: ResolvedConfiguration) -> "IndexerSettings":
        """Build typed settings. Raises ConfigError on unconvertible values."""
        c = configuration
        return cls(
            azure_search=AzureSearchConfig(
                api_key=c.get("AzureSearchApiKey", ""),
                service_name=c.get("AzureSearchServiceName", ""),
                endpoint=c.get("AzureSearchEndpoint", ""),
                index_name=c.get("AzureSearchIndexName", "") or "documents",
                api_version=c.get("AzureSearchApiVersion", "") or "2023-11-01",
                timeout=_as_int(c, "AzureSearchTimeout", 10),
                retry_attempts=_as_int(c, "AzureSearchRetryAttempts", 3),
                retry_delay=_as_float(c, "AzureSearchRetryDelay", 0.5),
                sync_timeout=_as_float(c, "IndexSyncTimeout", 60.0),
            ),
            secure_token=SecureTokenConfig(
                secure_token=c.get("SecureToken", ""),
                realm=c.get("SecureTokenRealm", "") or "indexer",
            ),
            oauth=OAuthConfig(
                authority=c.get("OAuthAuthority", "").strip(),
                audience=c.get("OAuthAudience", "").strip(),
                metadata_timeout=_as_int(c, "OAuthMetadataTimeout", 10),
            ),
            discovery=ServiceDiscoveryConfig(
                enabled=_as_bool(c, "ServiceDiscovery.Enabled", True),
                service_id=c.get("ServiceDiscovery.ServiceId", ""),
                service_name=c.get("ServiceDiscovery.ServiceName", ""),
                agent_address=c.get("ServiceDiscovery.AgentAddress", "") or "http://localhost:8500",
                datacenter=c.get("ServiceDiscovery.Datacenter", ""),
                service_address=c.get("ServiceDiscovery.ServiceAddress", ""),
                tags=tuple(c.list_values("ServiceDiscovery.Tags")),
                check_interval=c.get("ServiceDiscovery.CheckInterval", "") or "10s",
                retry_attempts=_as_int(c, "ServiceDiscovery.RetryAttempts", 3),
                retry_delay=_as_float(c, "ServiceDiscovery.RetryDelay", 1.0),
            ),
            server=ServerConfig(urls=c.get("server.urls", "")),
            logging=LoggingConfig(
                level=c.get("Logging.LogLevel.Default", "") or "INFO",
            ),
        )
