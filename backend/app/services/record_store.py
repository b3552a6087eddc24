"""
Generic record store used for order persistence.

Two backends share one small async interface:

- ``FirestoreRecordStore`` talks to Firestore through the Admin SDK. The SDK
  is blocking, so every call is pushed to the default executor.
- ``ApiRecordStore`` goes through the storefront REST API
  (``/api/<collection>``) with the caller's bearer token.

``create`` with a ``key`` is create-if-absent: when a record with that key
already exists the stored record is returned unchanged.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from google.api_core.exceptions import AlreadyExists, GoogleAPICallError
from google.cloud.firestore_v1.base_query import FieldFilter

from app.core.config import settings
from app.services.gateway import CredentialProvider
from app.utils.firebase import firestore_run, firestore_stream

logger = logging.getLogger("market.orders")


class RecordStoreError(Exception):
    pass


class RecordStore(Protocol):
    async def create(self, collection: str, record: Dict[str, Any], key: Optional[str] = None) -> Dict[str, Any]: ...

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def update(self, collection: str, key: str, changes: Dict[str, Any]) -> Dict[str, Any]: ...

    async def query(self, collection: str, **filters: Any) -> List[Dict[str, Any]]: ...


# -------------------------------------------------------------------
# Firestore
# -------------------------------------------------------------------

class FirestoreRecordStore:
    def __init__(self, db=None) -> None:
        self._db = db

    @property
    def db(self):
        if self._db is None:
            from app.core.firebase import get_db
            self._db = get_db()
        return self._db

    async def create(self, collection, record, key=None):
        col = self.db.collection(collection)
        doc_ref = col.document(key) if key else col.document()
        try:
            await firestore_run(doc_ref.create, record)
        except AlreadyExists:
            logger.info(f"[Firestore] {collection}/{key} already exists, returning stored record")
            existing = await self.get(collection, doc_ref.id)
            if existing is None:
                raise RecordStoreError(f"{collection}/{key} vanished after conflict")
            return existing
        except GoogleAPICallError as e:
            raise RecordStoreError(f"Firestore create on {collection} failed: {e}") from e
        return {**record, "id": doc_ref.id}

    async def get(self, collection, key):
        try:
            snap = await firestore_run(self.db.collection(collection).document(key).get)
        except GoogleAPICallError as e:
            raise RecordStoreError(f"Firestore read {collection}/{key} failed: {e}") from e
        if not snap.exists:
            return None
        return {**snap.to_dict(), "id": snap.id}

    async def update(self, collection, key, changes):
        doc_ref = self.db.collection(collection).document(key)
        try:
            await firestore_run(doc_ref.update, changes)
        except GoogleAPICallError as e:
            raise RecordStoreError(f"Firestore update {collection}/{key} failed: {e}") from e
        return await self.get(collection, key) or {}

    async def query(self, collection, **filters):
        q = self.db.collection(collection)
        for field, value in filters.items():
            q = q.where(filter=FieldFilter(field, "==", value))
        try:
            docs = await firestore_stream(q)
        except GoogleAPICallError as e:
            raise RecordStoreError(f"Firestore query on {collection} failed: {e}") from e
        return [{**d.to_dict(), "id": d.id} for d in docs]


# -------------------------------------------------------------------
# Storefront REST API
# -------------------------------------------------------------------

class ApiRecordStore:
    def __init__(
        self,
        credential_provider: CredentialProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credential_provider = credential_provider
        self.base_url = (base_url or settings.PAYMENT_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMENT_HTTP_TIMEOUT
        self.transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        token = await self.credential_provider()
        if not token:
            raise RecordStoreError("Authentication required")
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise RecordStoreError(f"{method} {path} failed: {e}") from e

        if response.status_code == 404 and method == "GET":
            return None
        if response.status_code >= 400:
            logger.error(f"[API] {method} {path} → {response.status_code} | {response.text[:300]}")
            raise RecordStoreError(f"{method} {path} returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise RecordStoreError(f"{method} {path} returned invalid JSON") from e
        if isinstance(body, dict) and body.get("success") is False:
            raise RecordStoreError(body.get("message") or f"{method} {path} was rejected")
        return body

    @staticmethod
    def _unwrap(body: Any, name: str) -> Any:
        if isinstance(body, dict):
            for k in (name, "data"):
                if k in body:
                    return body[k]
        return body

    async def create(self, collection, record, key=None):
        headers = {"Idempotency-Key": key} if key else {}
        body = await self._request("POST", f"/api/{collection}", json=record, headers=headers)
        created = self._unwrap(body, collection.rstrip("s"))
        if not isinstance(created, dict):
            raise RecordStoreError(f"POST /api/{collection} returned no record")
        return created

    async def get(self, collection, key):
        body = await self._request("GET", f"/api/{collection}/{key}")
        if body is None:
            return None
        return self._unwrap(body, collection.rstrip("s"))

    async def update(self, collection, key, changes):
        body = await self._request("PATCH", f"/api/{collection}/{key}", json=changes)
        return self._unwrap(body, collection.rstrip("s"))

    async def query(self, collection, **filters):
        body = await self._request("GET", f"/api/{collection}", params=filters)
        items = self._unwrap(body, collection)
        return items if isinstance(items, list) else []
