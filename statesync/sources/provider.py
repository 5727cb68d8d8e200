"""
Scheduling Provider Source and Sink

Reads the provider's canonical catalogs (event types, webhook subscriptions)
over its REST API and applies corrective actions to writable resources.
One HTTP call is made per page fetched and per operation applied. Downloaded
collections are cached until the run ends or the kind is written to, so
filtered re-fetches do not page through the catalog again.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from statesync.reconciliation.errors import FetchFailure, PermanentApplyFailure, TransientApplyFailure
from statesync.reconciliation.models import Filter, Origin, Snapshot
from statesync.sources.base import StateSink, StateSource

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.calendly.com"

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class ProviderResource:
    """
    Mapping of an entity kind onto a provider collection.

    Attributes:
        path: Collection path ("/webhook_subscriptions")
        identity_field: Field identifying a record (after rename/derive)
        params: Query parameters; "{user}" and "{organization}" are replaced
            with the URIs of the token's owner
        rename: Provider field -> record field
        derive: Record field -> source field whose last URI segment it takes
            (e.g. {"slug": "scheduling_url"})
        fields: Fields kept in each record (all when empty)
        payload_map: Record field -> request payload field for create/update
        resource_uri_field: Field holding the resource's absolute URI
        writable: Whether creates and deletes are allowed
        updatable: Whether in-place updates (PATCH) are allowed
    """

    path: str
    identity_field: str
    params: Dict[str, str] = field(default_factory=dict)
    rename: Dict[str, str] = field(default_factory=dict)
    derive: Dict[str, str] = field(default_factory=dict)
    fields: Tuple[str, ...] = ()
    payload_map: Dict[str, str] = field(default_factory=dict)
    resource_uri_field: str = "uri"
    writable: bool = False
    updatable: bool = False


class ProviderSource(StateSource):
    """Snapshot reader over the scheduling provider's REST API."""

    def __init__(
        self,
        name: str,
        session: requests.Session,
        token: str,
        resources: Dict[str, ProviderResource],
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: Optional[float] = 30.0,
        max_rate_limit_retries: int = 3,
        sleeper: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the provider source.

        Args:
            name: Origin name (e.g. "calendly")
            session: requests session owned by the caller
            token: API bearer token
            resources: Entity kind -> resource mapping
            base_url: API base URL
            timeout_seconds: Per-request timeout
            max_rate_limit_retries: Retries of a rate-limited page fetch
            sleeper: Sleep function (overridable in tests)
        """
        if not token:
            raise ValueError("Provider API token must be provided")

        super().__init__(name, timeout_seconds)
        self.session = session
        self.token = token
        self.resources = dict(resources)
        self.base_url = base_url.rstrip("/")
        self.max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleeper
        self._owner: Optional[Dict[str, str]] = None
        self._resource_uris: Dict[Tuple[str, str], str] = {}
        self._collections: Dict[Tuple[str, Tuple[Tuple[str, Any], ...]], List[Dict[str, Any]]] = {}

    def acquire(self) -> None:
        self._owner = None
        self._resource_uris = {}
        self._collections = {}
        super().acquire()

    def release(self) -> None:
        self._resource_uris = {}
        self._collections = {}
        super().release()

    def fetch(self, kind: str, filter: Optional[Filter] = None, origin: Origin = Origin.ACTUAL) -> Snapshot:
        resource = self._resource_for(kind)
        params = self._resolve_params(kind, resource.params)

        cache_key = (kind, tuple(sorted(params.items())))
        records = self._collections.get(cache_key)
        if records is None:
            records = self._download(kind, resource, params)
            self._collections[cache_key] = records
        else:
            logger.debug(f"Using cached {kind} collection from {self.name} ({len(records)} records)")

        if filter is not None and not filter.is_empty():
            records = [record for record in records if filter.matches(record)]

        logger.info(f"Fetched {len(records)} {kind} records from {self.name}")
        return Snapshot.capture(kind, origin, self.name, records)

    def invalidate(self, kind: str) -> None:
        """Drop cached collections of a kind."""
        stale = [key for key in list(self._collections) if key[0] == kind]
        for key in stale:
            self._collections.pop(key, None)

    def _download(self, kind: str, resource: ProviderResource, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self.base_url}{resource.path}"
        query: Optional[Dict[str, Any]] = params

        while url:
            payload = self._get_json(kind, url, query)
            for item in payload.get("collection", []):
                record = self.to_record(item, resource)
                records.append(record)
                uri = item.get(resource.resource_uri_field)
                if uri:
                    self._resource_uris[(kind, str(record.get(resource.identity_field)))] = uri

            url = (payload.get("pagination") or {}).get("next_page")
            # next_page already carries the query string
            query = None

        return records

    def to_record(self, item: Dict[str, Any], resource: ProviderResource) -> Dict[str, Any]:
        """
        Convert a provider item into a record.

        Args:
            item: Item from a collection response
            resource: Resource mapping

        Returns:
            Record with renamed, derived and projected fields
        """
        record = {resource.rename.get(key, key): value for key, value in item.items()}

        for target, source in resource.derive.items():
            value = item.get(source, record.get(source))
            record[target] = self._last_segment(value) if value else None

        if resource.fields:
            record = {name: record.get(name) for name in resource.fields}

        return record

    def current_owner(self) -> Dict[str, str]:
        """
        Return the URIs of the token owner and its organization.

        Returns:
            {"user": user_uri, "organization": organization_uri}
        """
        if self._owner is None:
            payload = self._get_json("users", f"{self.base_url}/users/me", None)
            resource = payload.get("resource") or {}
            self._owner = {
                "user": resource.get("uri", ""),
                "organization": resource.get("current_organization", ""),
            }
            logger.info(f"Provider {self.name} token belongs to {self._owner['user']}")
        return self._owner

    def _resolve_params(self, kind: str, params: Dict[str, str]) -> Dict[str, str]:
        resolved = {}
        for key, value in params.items():
            if isinstance(value, str) and ("{user}" in value or "{organization}" in value):
                value = value.format(**self.current_owner())
            resolved[key] = value
        return resolved

    def _get_json(self, kind: str, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        attempt = 0

        while True:
            try:
                response = self.session.get(
                    url,
                    params=params,
                    headers=self._headers(),
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as e:
                logger.error(f"Request to {self.name} for {kind} failed: {e}")
                raise FetchFailure(f"Request to {self.name} failed: {e}", origin=self.name, kind=kind) from e

            if response.status_code == 429 and attempt < self.max_rate_limit_retries:
                attempt += 1
                wait = self._retry_after(response) or float(attempt)
                logger.warning(f"Rate limited by {self.name}; retrying in {wait}s (attempt {attempt})")
                self._sleep(wait)
                continue

            if response.status_code >= 400:
                raise FetchFailure(
                    f"{self.name} returned {response.status_code} for {kind}: {self._error_message(response)}",
                    origin=self.name,
                    kind=kind,
                )

            try:
                return response.json()
            except ValueError as e:
                raise FetchFailure(f"{self.name} returned invalid JSON for {kind}", origin=self.name, kind=kind) from e

    def _resource_for(self, kind: str) -> ProviderResource:
        if kind not in self.resources:
            raise FetchFailure(f"Source {self.name} has no resource for kind '{kind}'", origin=self.name, kind=kind)
        return self.resources[kind]

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return max(float(value), 0.0)
        except ValueError:
            return None

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.reason or ""
        if isinstance(data, dict):
            return data.get("message") or data.get("title") or str(data)
        return str(data)

    @staticmethod
    def _last_segment(value: Any) -> str:
        return str(value).rstrip("/").split("/")[-1]


class ProviderSink(ProviderSource, StateSink):
    """
    Snapshot reader and writer over the scheduling provider's REST API.

    Creates of distinct webhook subscriptions are independent, so parallel
    creates are allowed.
    """

    supports_parallel_creates = True

    def apply_create(self, kind: str, record: Dict[str, Any]) -> None:
        resource = self._writable_resource(kind)
        self.invalidate(kind)
        payload = self.to_payload(record, resource)

        response = self._send(kind, "POST", f"{self.base_url}{resource.path}", payload)
        self._check_apply_response(kind, response)

        uri = (self._json_or_empty(response).get("resource") or {}).get(resource.resource_uri_field)
        if uri:
            self._resource_uris[(kind, str(record.get(resource.identity_field)))] = uri

    def apply_update(self, kind: str, identity: Any, changed_fields: Dict[str, Any]) -> None:
        resource = self._writable_resource(kind)
        self.invalidate(kind)
        if not resource.updatable:
            raise PermanentApplyFailure(f"{self.name} does not support updating {kind}")

        uri = self._resource_uri(kind, identity, None, resource)
        payload = self.to_payload(changed_fields, resource)

        response = self._send(kind, "PATCH", uri, payload)
        self._check_apply_response(kind, response)

    def apply_delete(self, kind: str, identity: Any, record: Optional[Dict[str, Any]] = None) -> None:
        resource = self._writable_resource(kind)
        self.invalidate(kind)
        uri = self._resource_uri(kind, identity, record, resource)

        response = self._send(kind, "DELETE", uri, None)
        if response.status_code == 404:
            logger.warning(f"Delete of {kind}[{identity}] on {self.name}: already absent")
            return
        self._check_apply_response(kind, response)

    def to_payload(self, record: Dict[str, Any], resource: ProviderResource) -> Dict[str, Any]:
        """Map record fields onto request payload fields, dropping derived fields."""
        return {
            resource.payload_map.get(name, name): value
            for name, value in record.items()
            if name not in resource.derive and name != resource.resource_uri_field
        }

    def _send(self, kind: str, method: str, url: str, payload: Optional[Dict[str, Any]]) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning(f"{method} {kind} on {self.name} failed: {e}")
            raise TransientApplyFailure(f"{type(e).__name__}: {e}") from e
        except requests.RequestException as e:
            raise PermanentApplyFailure(f"{type(e).__name__}: {e}") from e

    def _check_apply_response(self, kind: str, response: requests.Response) -> None:
        if response.status_code < 400:
            return

        message = f"{self.name} returned {response.status_code} for {kind}: {self._error_message(response)}"

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientApplyFailure(message, retry_after=self._retry_after(response))

        raise PermanentApplyFailure(message)

    def _writable_resource(self, kind: str) -> ProviderResource:
        resource = self.resources.get(kind)
        if resource is None:
            raise PermanentApplyFailure(f"Sink {self.name} has no resource for kind '{kind}'")
        if not resource.writable:
            raise PermanentApplyFailure(f"Kind '{kind}' is read-only on {self.name}")
        return resource

    def _resource_uri(
        self,
        kind: str,
        identity: Any,
        record: Optional[Dict[str, Any]],
        resource: ProviderResource
    ) -> str:
        if record and record.get(resource.resource_uri_field):
            return record[resource.resource_uri_field]

        uri = self._resource_uris.get((kind, str(identity)))
        if not uri:
            raise PermanentApplyFailure(f"No known resource URI for {kind}[{identity}] on {self.name}")
        return uri

    @staticmethod
    def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
