"""HTTP remote for replicas talking to a hub over the REST API."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx

from replisync.sync.contracts import ChangeSink, ChangeSource, PushResponse, Snapshot
from replisync.sync.entry import SyncBatch, SyncClient, SyncLogEntry, parse_timestamp
from replisync.sync.errors import StorageError, SyncError, error_from_payload

logger = logging.getLogger(__name__)


class HttpSyncRemote(ChangeSource, ChangeSink):
    """Hub endpoints as a ``ChangeSource`` and ``ChangeSink``.

    Pass either ``base_url`` or a ready ``httpx.Client`` (anything with the
    same interface, e.g. a FastAPI ``TestClient``). Non-2xx responses carrying
    an error ``kind`` come back as the matching ``SyncError`` subclass;
    transport failures become ``StorageError``.
    """

    def __init__(
        self,
        base_url: str = "",
        client: Optional[httpx.Client] = None,
        prefix: str = "/api/v1",
        origin_id: Optional[str] = None,
        timeout: float = 30.0,
    ):
        if client is None and not base_url:
            raise ValueError("base_url or client is required")
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.prefix = prefix.rstrip("/")
        self.origin_id = origin_id

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpSyncRemote":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.prefix}{path}"
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            try:
                body = e.response.json()
            except ValueError:
                body = {"detail": e.response.text}
            if not isinstance(body, dict):
                body = {"detail": body}
            logger.warning("%s %s failed with %d: %s", method, url, e.response.status_code, body)
            raise error_from_payload(body, fallback=f"HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise StorageError(f"Connection error to {url}: {e}") from e
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON from {url}") from e

    # -- ChangeSource / ChangeSink ------------------------------------------

    def fetch_batch(self, from_version: int, batch_size: int) -> SyncBatch:
        params: Dict[str, Any] = {"fromVersion": from_version, "batchSize": batch_size}
        if self.origin_id:
            params["originId"] = self.origin_id
        return SyncBatch.from_wire(self._request("GET", "/sync/changes", params=params))

    def send(self, origin_id: str, changes: List[SyncLogEntry]) -> PushResponse:
        body = {"originId": origin_id, "changes": [c.to_wire() for c in changes]}
        data = self._request("POST", "/sync/changes", json=body)
        return PushResponse(applied=int(data.get("applied", 0)), failed=list(data.get("failed", [])))

    # -- hub management -----------------------------------------------------

    def register(self, origin_id: str, last_sync_version: int = 0) -> SyncClient:
        data = self._request(
            "POST", "/sync/clients/register",
            json={"originId": origin_id, "lastSyncVersion": last_sync_version},
        )
        return _client_from_wire(data)

    def clients(self) -> List[SyncClient]:
        return [_client_from_wire(c) for c in self._request("GET", "/sync/clients")]

    def state(self) -> Dict[str, Any]:
        return self._request("GET", "/sync/state")

    def database_hash(self, tables: Optional[Iterable[str]] = None) -> str:
        params = {"tables": list(tables)} if tables else None
        return self._request("GET", "/sync/hash", params=params)["hash"]

    def fetch_snapshot(self, tables: Optional[Iterable[str]] = None) -> Snapshot:
        params = {"tables": list(tables)} if tables else None
        data = self._request("GET", "/sync/snapshot", params=params)
        return Snapshot(
            version=int(data["version"]),
            tables=data["tables"],
            primary_keys=data["primaryKeys"],
        )


def _client_from_wire(data: Dict[str, Any]) -> SyncClient:
    try:
        return SyncClient(
            origin_id=data["originId"],
            last_sync_version=int(data["lastSyncVersion"]),
            last_sync_timestamp=parse_timestamp(data["lastSyncTimestamp"]),
            created_at=parse_timestamp(data["createdAt"]),
        )
    except KeyError as exc:
        raise SyncError(f"Malformed client record: missing {exc.args[0]!r}") from exc
