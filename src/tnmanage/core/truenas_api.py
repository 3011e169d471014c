"""
TrueNAS API Module

This module provides a client for the TrueNAS REST API (v2.0), covering the
dataset and NFS sharing endpoints used by tnmanage.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import requests
import urllib3

logger = logging.getLogger('tnmanage.core.truenas_api')

API_PREFIX = "/api/v2.0"
DEFAULT_TIMEOUT = 30  # seconds
GIB = 1024 * 1024 * 1024

ENV_URL = "TRUENAS_URL"
ENV_API_KEY = "TRUENAS_API_KEY"


class TrueNASError(Exception):
    """Base exception for errors talking to the TrueNAS API."""
    pass


class ConfigurationError(TrueNASError):
    """Raised when the server URL or API token is missing."""
    pass


class TransportError(TrueNASError):
    """Raised when a request could not be sent or no response was received."""
    pass


class APIError(TrueNASError):
    """Raised when the API answers with a non-2xx status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API request failed with status {status_code}: {body}")


class ResponseDecodeError(TrueNASError):
    """Raised when a response body is not the JSON we expected."""
    pass


class ClearDatasetError(TrueNASError):
    """Raised when one step of the delete-then-recreate sequence fails."""

    def __init__(self, dataset_id: str, step: str, message: str):
        self.dataset_id = dataset_id
        self.step = step
        super().__init__(message)


@dataclass
class DatasetProperty:
    """
    A single dataset property as reported by TrueNAS.

    TrueNAS returns most properties as an object with a human readable
    ``value``, the ``rawvalue`` string and a typed ``parsed`` value. The
    original mapping is kept in ``raw``.
    """
    value: Any = None
    rawvalue: Any = None
    parsed: Any = None
    source: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> Optional['DatasetProperty']:
        if not isinstance(data, dict):
            return None
        return cls(
            value=data.get('value'),
            rawvalue=data.get('rawvalue'),
            parsed=data.get('parsed'),
            source=data.get('source'),
            raw=dict(data),
        )

    def parsed_number(self) -> Optional[int]:
        """Return ``parsed`` as an int when it is numeric, otherwise None."""
        if isinstance(self.parsed, bool) or not isinstance(self.parsed, (int, float)):
            return None
        return int(self.parsed)

    def value_string(self) -> Optional[str]:
        """Return ``value`` when it is a string, otherwise None."""
        return self.value if isinstance(self.value, str) else None


@dataclass
class Dataset:
    """A ZFS dataset as returned by ``/pool/dataset``."""
    id: str
    name: str = ""
    pool: str = ""
    type: str = ""
    used: Optional[DatasetProperty] = None
    available: Optional[DatasetProperty] = None
    mountpoint: str = ""
    compression: Optional[DatasetProperty] = None
    deduplication: Optional[DatasetProperty] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Dataset':
        return cls(
            id=data.get('id') or "",
            name=data.get('name') or "",
            pool=data.get('pool') or "",
            type=data.get('type') or "",
            used=DatasetProperty.from_dict(data.get('used')),
            available=DatasetProperty.from_dict(data.get('available')),
            mountpoint=data.get('mountpoint') or "",
            compression=DatasetProperty.from_dict(data.get('compression')),
            deduplication=DatasetProperty.from_dict(data.get('deduplication')),
        )


@dataclass
class NFSShare:
    """An NFS share as handled by ``/sharing/nfs``."""
    path: str
    comment: str = ""
    networks: List[str] = field(default_factory=list)
    hosts: List[str] = field(default_factory=list)
    maproot_user: str = ""
    maproot_group: str = ""
    ro: bool = False
    enabled: bool = False
    id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NFSShare':
        return cls(
            id=data.get('id'),
            path=data.get('path') or "",
            comment=data.get('comment') or "",
            networks=list(data.get('networks') or []),
            hosts=list(data.get('hosts') or []),
            maproot_user=data.get('maproot_user') or "",
            maproot_group=data.get('maproot_group') or "",
            ro=bool(data.get('ro', False)),
            enabled=bool(data.get('enabled', False)),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Build the JSON body for the API, leaving out unset optional fields."""
        payload: Dict[str, Any] = {
            'path': self.path,
            'comment': self.comment,
            'ro': self.ro,
            'enabled': self.enabled,
        }
        if self.id:
            payload['id'] = self.id
        if self.networks:
            payload['networks'] = list(self.networks)
        if self.hosts:
            payload['hosts'] = list(self.hosts)
        if self.maproot_user:
            payload['maproot_user'] = self.maproot_user
        if self.maproot_group:
            payload['maproot_group'] = self.maproot_group
        return payload


def dataset_endpoint(dataset_id: str) -> str:
    """Endpoint for a single dataset; the id is escaped so its slashes survive."""
    return f"/pool/dataset/id/{quote(dataset_id, safe='')}"


class TrueNASClient:
    """Client for the TrueNAS REST API."""

    def __init__(self, base_url: str, api_key: str, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the client.

        Args:
            base_url: Server URL, e.g. https://192.168.1.100
            api_key: TrueNAS API key, sent as a bearer token
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        # TrueNAS boxes ship with a self-signed certificate
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.session = requests.Session()
        self.session.verify = False
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

        logger.debug(f"Initialized TrueNAS client for {self.base_url}")

    @classmethod
    def from_environment(cls, environ: Mapping[str, str]) -> 'TrueNASClient':
        """
        Create a client from TRUENAS_URL and TRUENAS_API_KEY.

        Args:
            environ: Mapping to read the variables from (usually the process
                environment merged with the config file)

        Raises:
            ConfigurationError: If either variable is blank
        """
        base_url = environ.get(ENV_URL, "")
        if not base_url:
            raise ConfigurationError(f"{ENV_URL} environment variable not set")

        api_key = environ.get(ENV_API_KEY, "")
        if not api_key:
            raise ConfigurationError(f"{ENV_API_KEY} environment variable not set")

        return cls(base_url, api_key)

    @classmethod
    def from_params(cls, server: Optional[str], token: Optional[str]) -> 'TrueNASClient':
        """Create a client from explicit server and token values."""
        if not server:
            raise ConfigurationError("server URL is required")
        if not token:
            raise ConfigurationError("API token is required")
        return cls(server, token)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> 'TrueNASClient':
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def _request(self, method: str, endpoint: str, body: Any = None) -> requests.Response:
        """
        Send a request to the API.

        Args:
            method: HTTP method
            endpoint: Path below /api/v2.0, starting with a slash
            body: Optional JSON-serializable request body

        Returns:
            The response, which is guaranteed to have a 2xx status

        Raises:
            TransportError: If the request could not be completed
            APIError: If the server answered with a non-2xx status
        """
        url = f"{self.base_url}{API_PREFIX}{endpoint}"
        logger.debug(f"{method} {endpoint}")

        kwargs: Dict[str, Any] = {'timeout': self.timeout}
        if body is not None:
            kwargs['json'] = body

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.debug(f"{method} {endpoint} failed: {e}")
            raise TransportError(f"failed to execute request: {e}") from e

        logger.debug(f"{method} {endpoint} -> {response.status_code}")
        if not 200 <= response.status_code < 300:
            raise APIError(response.status_code, response.text)

        return response

    @staticmethod
    def _decode(response: requests.Response, expected: type) -> Any:
        try:
            data = response.json()
        except ValueError as e:
            raise ResponseDecodeError(f"failed to decode response: {e}") from e

        if not isinstance(data, expected):
            raise ResponseDecodeError(
                f"failed to decode response: expected {expected.__name__}, got {type(data).__name__}"
            )
        return data

    # --- Datasets ---

    def create_dataset(self, pool: str, name: str, quota_gb: int) -> str:
        """
        Create a filesystem dataset.

        Args:
            pool: Pool name
            name: Dataset name inside the pool
            quota_gb: Reference quota in GiB; 0 or less means no quota

        Returns:
            The id of the new dataset
        """
        full_name = f"{pool}/{name}"
        payload: Dict[str, Any] = {
            'name': full_name,
            'type': 'FILESYSTEM',
        }
        if quota_gb > 0:
            payload['refquota'] = quota_gb * GIB

        logger.info(f"Creating dataset {full_name}")
        data = self._decode(self._request("POST", "/pool/dataset", payload), dict)
        return data.get('id') or ""

    def list_datasets(self, pool: str) -> List[Dataset]:
        """
        List a pool's datasets, including nested children.

        The API returns every dataset on the system; filtering happens here.
        """
        data = self._decode(self._request("GET", "/pool/dataset"), list)
        all_datasets = [Dataset.from_dict(item) for item in data if isinstance(item, dict)]

        prefix = f"{pool}/"
        datasets = []
        for ds in all_datasets:
            if ds.pool == pool or ds.id == pool:
                datasets.append(ds)
            elif pool and ds.id.startswith(prefix):
                datasets.append(ds)

        logger.debug(f"{len(datasets)} of {len(all_datasets)} datasets belong to pool {pool}")
        return datasets

    def get_dataset(self, dataset_id: str) -> Dataset:
        data = self._decode(self._request("GET", dataset_endpoint(dataset_id)), dict)
        return Dataset.from_dict(data)

    def delete_dataset(self, dataset_id: str) -> None:
        logger.info(f"Deleting dataset {dataset_id}")
        self._request("DELETE", dataset_endpoint(dataset_id))

    def clear_dataset(self, dataset_id: str) -> None:
        """
        Wipe a dataset by deleting it recursively and creating it again.

        Only the name and type survive; quota, compression and any other
        properties come back as the server defaults. There is no rollback:
        if the recreate step fails the dataset stays deleted.

        Raises:
            ClearDatasetError: Naming the step that failed
        """
        try:
            dataset = self.get_dataset(dataset_id)
        except TrueNASError as e:
            raise ClearDatasetError(dataset_id, "get", f"failed to get dataset info: {e}") from e

        logger.info(f"Deleting dataset {dataset_id} recursively before recreating it")
        try:
            self._request("DELETE", dataset_endpoint(dataset_id), {'recursive': True, 'force': True})
        except TrueNASError as e:
            raise ClearDatasetError(dataset_id, "delete", f"failed to delete dataset: {e}") from e

        try:
            self._request("POST", "/pool/dataset", {'name': dataset.id, 'type': dataset.type})
        except TrueNASError as e:
            logger.error(f"Dataset {dataset_id} was deleted but could not be recreated")
            raise ClearDatasetError(
                dataset_id,
                "recreate",
                f"failed to recreate dataset: {e} "
                f"(dataset '{dataset_id}' was deleted and has not been recreated)",
            ) from e

        logger.info(f"Dataset {dataset_id} recreated as {dataset.type}")

    # --- NFS shares ---

    def create_nfs_share(self, share: NFSShare) -> int:
        """Create an NFS share. The share is always enabled; returns its id."""
        share.enabled = True

        logger.info(f"Creating NFS share for {share.path}")
        data = self._decode(self._request("POST", "/sharing/nfs", share.to_payload()), dict)
        try:
            return int(data.get('id') or 0)
        except (TypeError, ValueError) as e:
            raise ResponseDecodeError(f"failed to decode response: invalid share id {data.get('id')!r}") from e

    def list_nfs_shares(self) -> List[NFSShare]:
        data = self._decode(self._request("GET", "/sharing/nfs"), list)
        return [NFSShare.from_dict(item) for item in data if isinstance(item, dict)]

    def delete_nfs_share(self, share_id: int) -> None:
        logger.info(f"Deleting NFS share {share_id}")
        self._request("DELETE", f"/sharing/nfs/id/{share_id}")
