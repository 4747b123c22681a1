"""
Consul registration for the running indexer instance.

Registration is a soft requirement: a failure is logged and bootstrap
continues, because serving local traffic is still useful while the
discovery agent is unavailable.
"""

import logging
import socket
import time
from typing import Callable, Optional, Tuple
from urllib.parse import urlsplit

import consul
import requests
from pydantic import BaseModel, ConfigDict, Field

from indexkit.config import IndexerSettings

logger = logging.getLogger("indexkit.discovery")

DEFAULT_PORT = 5000
DEFAULT_AGENT_PORT = 8500
_SCHEME_PORTS = {"http": 80, "https": 443}


class RegistrationError(Exception):
    """The discovery agent is unreachable or rejected the registration."""
    pass


def derive_port(urls: Optional[str], default: int = DEFAULT_PORT) -> int:
    """
    Port this instance listens on, from a ``server.urls`` value.

    Only the first of several ``;``-separated URLs is considered. Empty or
    malformed input yields ``default``; this never raises.
    """
    if not urls or not urls.strip():
        return default
    first = urls.split(";")[0].strip()
    try:
        parts = urlsplit(first)
        if not parts.scheme or not parts.hostname:
            return default
        port = parts.port
    except ValueError:
        logger.warning("Malformed server.urls %r, using port %d", urls, default)
        return default
    if port is not None:
        return port
    return _SCHEME_PORTS.get(parts.scheme.lower(), default)


def derive_host(urls: Optional[str], default: str = "0.0.0.0") -> str:
    """Bind host from a ``server.urls`` value; wildcards map to 0.0.0.0."""
    if not urls or not urls.strip():
        return default
    try:
        hostname = urlsplit(urls.split(";")[0].strip()).hostname
    except ValueError:
        return default
    if not hostname or hostname in ("*", "+"):
        return default
    return hostname


def parse_agent_address(address: str) -> Tuple[str, str, int]:
    """Split a Consul agent URL into (scheme, host, port)."""
    if "://" not in address:
        address = f"http://{address}"
    try:
        parts = urlsplit(address)
        port = parts.port or DEFAULT_AGENT_PORT
    except ValueError as e:
        raise RegistrationError(f"Malformed agent address {address!r}: {e}") from e
    if not parts.hostname:
        raise RegistrationError(f"Agent address {address!r} has no host")
    return parts.scheme or "http", parts.hostname, port


def detect_host_ip(agent_host: str, agent_port: int = DEFAULT_AGENT_PORT) -> str:
    """
    Return the local IP used to reach the agent.

    Raises:
        RegistrationError: neither the agent route nor the host name
            yields an address.
    """
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect((agent_host, agent_port))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError as e:
        logger.warning("Host IP auto-detect failed (%s), falling back to gethostname", e)
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError as e:
        raise RegistrationError(f"Cannot determine the address to register: {e}") from e


class RegistrationDescriptor(BaseModel):
    """What gets registered with the discovery agent, built once per start."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    service_name: str
    agent_address: str
    datacenter: Optional[str] = None
    port: int = Field(DEFAULT_PORT, ge=0, le=65535)
    address: Optional[str] = None
    tags: Tuple[str, ...] = ()
    check_interval: str = "10s"

    @classmethod
    def from_settings(cls, settings: IndexerSettings) -> "RegistrationDescriptor":
        d = settings.discovery
        return cls(
            service_id=d.service_id,
            service_name=d.service_name,
            agent_address=d.agent_address,
            datacenter=d.datacenter or None,
            port=derive_port(settings.server.urls),
            address=d.service_address or None,
            tags=d.tags,
            check_interval=d.check_interval,
        )


ConsulFactory = Callable[..., consul.Consul]


class DiscoveryRegistrar:
    """
    Registers this instance with a Consul agent once per process.

    Usage:
        registrar = DiscoveryRegistrar()
        registrar.register_if_enabled(settings.discovery.enabled, descriptor)
        ...
        registrar.deregister()
    """

    def __init__(
        self,
        consul_factory: ConsulFactory = consul.Consul,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._consul_factory = consul_factory
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._client: Optional[consul.Consul] = None
        self._registered_id: Optional[str] = None
        self._attempted = False

    @property
    def registered_id(self) -> Optional[str]:
        return self._registered_id

    def register_if_enabled(self, enabled: bool, descriptor: RegistrationDescriptor) -> bool:
        """
        Register with the agent when enabled.

        Returns True when the instance is registered. Never raises: a
        failed registration is logged and reported as False.
        """
        if not enabled:
            logger.info("Service discovery disabled, registration skipped")
            return False
        if self._attempted:
            logger.debug("Registration already performed for this process, skipping")
            return self._registered_id is not None
        self._attempted = True

        try:
            self._register(descriptor)
        except RegistrationError as e:
            logger.error("Service registration failed, continuing without discovery: %s", e)
            return False
        return True

    def _register(self, descriptor: RegistrationDescriptor) -> None:
        scheme, host, agent_port = parse_agent_address(descriptor.agent_address)
        address = descriptor.address or detect_host_ip(host, agent_port)
        service_id = descriptor.service_id or f"{descriptor.service_name}-{address}-{descriptor.port}"
        check = consul.Check.tcp(address, descriptor.port, descriptor.check_interval)

        last_error: Optional[Exception] = None
        for attempt in range(1, self._retry_attempts + 1):
            try:
                client = self._consul_factory(
                    host=host, port=agent_port, scheme=scheme, dc=descriptor.datacenter,
                )
                accepted = client.agent.service.register(
                    descriptor.service_name,
                    service_id=service_id,
                    address=address,
                    port=descriptor.port,
                    tags=list(descriptor.tags),
                    check=check,
                )
            except (consul.ConsulException, requests.RequestException) as e:
                last_error = e
            else:
                if accepted:
                    self._client = client
                    self._registered_id = service_id
                    logger.info(
                        "Registered %s (id=%s) at %s:%d with agent %s",
                        descriptor.service_name, service_id, address, descriptor.port,
                        descriptor.agent_address,
                    )
                    return
                last_error = RegistrationError("agent did not accept the registration")

            logger.warning(
                "Registration attempt %d/%d failed: %s",
                attempt, self._retry_attempts, last_error,
            )
            if attempt < self._retry_attempts:
                self._sleep(self._retry_delay * (2 ** (attempt - 1)))

        raise RegistrationError(
            f"Could not register {descriptor.service_name} with {descriptor.agent_address} "
            f"after {self._retry_attempts} attempts: {last_error}"
        )

    def deregister(self) -> None:
        """Remove this instance from the agent if it was registered."""
        if not self._registered_id or not self._client:
            return
        try:
            self._client.agent.service.deregister(self._registered_id)
            logger.info("Deregistered %s", self._registered_id)
        except (consul.ConsulException, requests.RequestException) as e:
            logger.warning("Deregistration of %s failed: %s", self._registered_id, e)
        finally:
            self._registered_id = None
            self._client = None
