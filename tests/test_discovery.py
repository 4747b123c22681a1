"""Tests for port derivation and Consul registration."""

import socket
from unittest.mock import MagicMock

import consul
import pytest
import requests

from indexkit import discovery
from indexkit.config import IndexerSettings
from indexkit.discovery import (
    DiscoveryRegistrar,
    RegistrationDescriptor,
    RegistrationError,
    derive_host,
    derive_port,
    parse_agent_address,
)

from tests.conftest import make_configuration


class TestDerivePort:

    @pytest.mark.parametrize("urls,expected", [
        ("http://0.0.0.0:8080", 8080),
        ("http://localhost:5001;https://localhost:5002", 5001),
        ("http://*:7000", 7000),
        ("http://localhost", 80),
        ("https://indexer.internal", 443),
        ("", 5000),
        (None, 5000),
        ("   ", 5000),
        ("not a url", 5000),
        ("http://localhost:notaport", 5000),
        ("http://localhost:99999", 5000),
        ("://:8080", 5000),
    ])
    def test_derive_port(self, urls, expected):
        assert derive_port(urls) == expected

    def test_custom_default(self):
        assert derive_port("", default=9000) == 9000

    @pytest.mark.parametrize("urls,expected", [
        ("http://127.0.0.1:8080", "127.0.0.1"),
        ("http://*:8080", "0.0.0.0"),
        ("", "0.0.0.0"),
    ])
    def test_derive_host(self, urls, expected):
        assert derive_host(urls) == expected


class TestParseAgentAddress:

    def test_full_url(self):
        assert parse_agent_address("https://consul.internal:8501") == ("https", "consul.internal", 8501)

    def test_defaults(self):
        assert parse_agent_address("consul") == ("http", "consul", 8500)

    def test_malformed(self):
        with pytest.raises(RegistrationError):
            parse_agent_address("http://consul:port")


def _descriptor(**overrides):
    values = dict(
        service_id="indexer-1",
        service_name="indexer",
        agent_address="http://consul:8500",
        datacenter="dc1",
        port=8080,
        address="10.0.0.5",
        tags=("search",),
    )
    values.update(overrides)
    return RegistrationDescriptor(**values)


class TestRegistrationDescriptor:

    def test_from_settings(self):
        settings = IndexerSettings.from_configuration(make_configuration(**{
            "ServiceDiscovery__ServiceId": "indexer-1",
            "ServiceDiscovery__ServiceName": "indexer",
            "ServiceDiscovery__AgentAddress": "http://consul:8500",
            "ServiceDiscovery__Datacenter": "dc1",
            "server.urls": "http://0.0.0.0:8080",
        }))
        descriptor = RegistrationDescriptor.from_settings(settings)
        assert descriptor.port == 8080
        assert descriptor.datacenter == "dc1"
        assert descriptor.address is None

    def test_port_falls_back_to_default(self):
        settings = IndexerSettings.from_configuration(make_configuration(**{"server.urls": "garbage"}))
        assert RegistrationDescriptor.from_settings(settings).port == 5000


class TestDiscoveryRegistrar:

    def test_disabled_makes_no_calls(self, consul_factory):
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)
        assert registrar.register_if_enabled(False, _descriptor(agent_address="::garbage::")) is False
        consul_factory.assert_not_called()

    def test_registers_once(self, consul_factory):
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)
        assert registrar.register_if_enabled(True, _descriptor()) is True

        consul_factory.assert_called_once_with(host="consul", port=8500, scheme="http", dc="dc1")
        consul_factory.client.agent.service.register.assert_called_once_with(
            "indexer",
            service_id="indexer-1",
            address="10.0.0.5",
            port=8080,
            tags=["search"],
            check=consul.Check.tcp("10.0.0.5", 8080, "10s"),
        )
        assert registrar.registered_id == "indexer-1"

    def test_second_call_is_noop(self, consul_factory):
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)
        registrar.register_if_enabled(True, _descriptor())
        assert registrar.register_if_enabled(True, _descriptor()) is True
        assert consul_factory.client.agent.service.register.call_count == 1

    def test_service_id_generated_when_missing(self, consul_factory):
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)
        registrar.register_if_enabled(True, _descriptor(service_id=""))
        assert registrar.registered_id == "indexer-10.0.0.5-8080"

    @pytest.mark.parametrize("error", [
        consul.ConsulException("agent said no"),
        requests.ConnectionError("refused"),
    ])
    def test_failure_is_not_fatal(self, consul_factory, error):
        consul_factory.client.agent.service.register.side_effect = error
        sleep = MagicMock()
        registrar = DiscoveryRegistrar(
            consul_factory=consul_factory, retry_attempts=3, retry_delay=1.0, sleep=sleep,
        )

        assert registrar.register_if_enabled(True, _descriptor()) is False
        assert consul_factory.client.agent.service.register.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        assert registrar.registered_id is None

    def test_failed_registration_is_not_retried_later(self, consul_factory):
        consul_factory.client.agent.service.register.side_effect = consul.ConsulException("down")
        registrar = DiscoveryRegistrar(consul_factory=consul_factory, retry_attempts=1)
        registrar.register_if_enabled(True, _descriptor())
        assert registrar.register_if_enabled(True, _descriptor()) is False
        assert consul_factory.client.agent.service.register.call_count == 1

    def test_malformed_agent_address_is_not_fatal(self, consul_factory):
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)
        assert registrar.register_if_enabled(True, _descriptor(agent_address="http://consul:port")) is False
        consul_factory.assert_not_called()

    def test_recovers_on_retry(self, consul_factory):
        consul_factory.client.agent.service.register.side_effect = [
            consul.ConsulException("warming up"), True,
        ]
        registrar = DiscoveryRegistrar(consul_factory=consul_factory, sleep=MagicMock())
        assert registrar.register_if_enabled(True, _descriptor()) is True

    def test_deregister(self, consul_factory):
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)
        registrar.register_if_enabled(True, _descriptor())
        registrar.deregister()
        consul_factory.client.agent.service.deregister.assert_called_once_with("indexer-1")
        assert registrar.registered_id is None

    def test_deregister_without_registration(self, consul_factory):
        DiscoveryRegistrar(consul_factory=consul_factory).deregister()
        consul_factory.client.agent.service.deregister.assert_not_called()


class TestAddressDetection:

    def _unroutable(self, *args, **kwargs):
        raise OSError("Network is unreachable")

    def _unresolvable(self, name):
        raise socket.gaierror(-2, "Name or service not known")

    def test_falls_back_to_host_name(self, monkeypatch):
        monkeypatch.setattr(discovery.socket, "socket", self._unroutable)
        monkeypatch.setattr(discovery.socket, "gethostbyname", lambda name: "10.1.2.3")
        assert discovery.detect_host_ip("consul") == "10.1.2.3"

    def test_no_address_raises_registration_error(self, monkeypatch):
        monkeypatch.setattr(discovery.socket, "socket", self._unroutable)
        monkeypatch.setattr(discovery.socket, "gethostbyname", self._unresolvable)
        with pytest.raises(RegistrationError, match="address"):
            discovery.detect_host_ip("consul")

    def test_no_address_is_not_fatal(self, monkeypatch, consul_factory):
        monkeypatch.setattr(discovery.socket, "socket", self._unroutable)
        monkeypatch.setattr(discovery.socket, "gethostbyname", self._unresolvable)
        registrar = DiscoveryRegistrar(consul_factory=consul_factory)

        assert registrar.register_if_enabled(True, _descriptor(address=None)) is False
        consul_factory.assert_not_called()
        assert registrar.registered_id is None


class TestAgentRefusal:

    def test_unaccepted_registration_counts_as_failure(self, consul_factory):
        consul_factory.client.agent.service.register.return_value = False
        sleep = MagicMock()
        registrar = DiscoveryRegistrar(consul_factory=consul_factory, retry_attempts=2, sleep=sleep)

        assert registrar.register_if_enabled(True, _descriptor()) is False
        assert consul_factory.client.agent.service.register.call_count == 2
        sleep.assert_called_once_with(1.0)
        assert registrar.registered_id is None

    def test_accepted_after_refusal(self, consul_factory):
        consul_factory.client.agent.service.register.side_effect = [False, True]
        registrar = DiscoveryRegistrar(consul_factory=consul_factory, sleep=MagicMock())
        assert registrar.register_if_enabled(True, _descriptor()) is True
        assert registrar.registered_id == "indexer-1"
