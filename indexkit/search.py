"""
Search index backend client and startup schema synchronization.

AzureSearchClient speaks the search service REST API. IndexSynchronizer
uses it to converge the remote index to the expected IndexDefinition
before the service starts taking traffic.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from indexkit.config import AzureSearchConfig
from indexkit.schema import IndexDefinition

logger = logging.getLogger("indexkit.search")


class SearchBackendError(Exception):
    """Base exception for search backend calls."""
    pass


class SearchAuthError(SearchBackendError):
    """The backend rejected the API key."""
    pass


class IndexSyncError(Exception):
    """The remote index could not be brought to the expected schema."""
    pass


class IndexSyncOutcome(str, Enum):
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


class AzureSearchClient:
    """
    Minimal client for index management on the search service.

    Usage:
        client = AzureSearchClient(settings.azure_search, api_key)
        remote = client.get_index("documents")
        if remote is None:
            client.create_or_update_index(definition.to_payload())
    """

    def __init__(
        self,
        config: AzureSearchConfig,
        api_key: str,
        session: Optional[requests.Session] = None,
    ):
        self._config = config
        self._base_url = config.base_url

        self._session = session or requests.Session()
        if session is None:
            retry_strategy = Retry(
                total=config.retry_attempts,
                backoff_factor=config.retry_delay,
                status_forcelist=[502, 503, 504],
                allowed_methods=["GET", "PUT"],
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)
        self._session.headers["api-key"] = api_key
        self._session.headers["Content-Type"] = "application/json"

    def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        """Call the backend. Returns None on 404, the JSON body otherwise."""
        url = f"{self._base_url}{path}"
        kwargs.setdefault("timeout", self._config.timeout)
        params = kwargs.setdefault("params", {})
        params.setdefault("api-version", self._config.api_version)

        try:
            response = self._session.request(method, url, **kwargs)
        except requests.ConnectionError as e:
            raise SearchBackendError(f"Cannot connect to search service at {self._base_url}: {e}") from e
        except requests.Timeout as e:
            raise SearchBackendError(f"Search service request timed out: {e}") from e
        except requests.RequestException as e:
            raise SearchBackendError(f"Search service request failed: {e}") from e

        if response.status_code in (401, 403):
            raise SearchAuthError(
                f"Search service rejected the API key ({response.status_code}) for {method} {path}"
            )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SearchBackendError(
                f"Search service error {response.status_code} for {method} {path}: {response.text}"
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise SearchBackendError(f"Malformed response for {method} {path}: {e}") from e

    def get_index(self, name: str) -> Optional[Dict[str, Any]]:
        """Fetch an index definition, or None when it does not exist."""
        return self._request("GET", f"/indexes/{name}")

    def create_or_update_index(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        """Create the index or replace its definition."""
        result = self._request(
            "PUT",
            f"/indexes/{definition['name']}",
            json=definition,
            headers={"Prefer": "return=representation"},
        )
        if result is None:
            raise SearchBackendError(f"Index {definition['name']} could not be written (404)")
        return result


class IndexSynchronizer:
    """
    Converge the remote index schema to the expected definition.

    Safe to call any number of times: a matching index is only read, a
    missing one is created, a divergent one is replaced.

    Usage:
        synchronizer = IndexSynchronizer(
            client_factory=lambda key: AzureSearchClient(settings.azure_search, key),
            definition=documentation_index(settings.azure_search.index_name),
        )
        outcome = synchronizer.synchronize(settings.azure_search.api_key)
    """

    def __init__(
        self,
        client_factory: Callable[[str], AzureSearchClient],
        definition: IndexDefinition,
    ):
        self._client_factory = client_factory
        self.definition = definition

    def synchronize(self, api_key: Optional[str]) -> IndexSyncOutcome:
        """
        Ensure the remote index exists and matches the expected schema.

        Returns:
            SKIPPED when no API key is configured (no outbound calls),
            otherwise UNCHANGED, CREATED or UPDATED.

        Raises:
            IndexSyncError: on any backend failure.
        """
        if not api_key or not api_key.strip():
            logger.info("No search API key configured, index synchronization skipped")
            return IndexSyncOutcome.SKIPPED

        name = self.definition.name
        try:
            client = self._client_factory(api_key)
            remote = client.get_index(name)

            if remote is None:
                logger.info("Index %s not found, creating it", name)
                client.create_or_update_index(self.definition.to_payload())
                return IndexSyncOutcome.CREATED

            diffs = self.definition.differences(remote)
            if not diffs:
                logger.info("Index %s matches the expected schema", name)
                return IndexSyncOutcome.UNCHANGED

            logger.info("Index %s diverges from the expected schema: %s", name, "; ".join(diffs))
            client.create_or_update_index(self.definition.to_payload())
            return IndexSyncOutcome.UPDATED

        except SearchBackendError as e:
            raise IndexSyncError(f"Index {name} synchronization failed: {e}") from e
