"""
Single staged-order slot per browsing context (user).

The checkout payload is staged before the payment starts and consumed once
the payment is confirmed. Two backends share one async interface:

- ``FirestorePendingOrderStore`` keeps the slot in ``pending_orders/{user_id}``
  so web processes and Celery workers on other hosts see the same order.
- ``FilePendingOrderStore`` keeps it in a local JSON file; single host only.

``clear(expected)`` and ``annotate(expected, ...)`` only touch the slot while
it still holds ``expected``, so a finishing session never removes or
overwrites an order staged after it.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from google.api_core.exceptions import AlreadyExists, FailedPrecondition, GoogleAPICallError
from pydantic import ValidationError as ModelValidationError

from app.core.config import settings
from app.models.order_model import PendingOrder
from app.utils.firebase import firestore_run

logger = logging.getLogger("market.orders")

PENDING_ORDER_KEY = "pendingOrder"
PENDING_ORDERS_COLLECTION = "pending_orders"


class PendingOrderStoreError(Exception):
    pass


class PendingOrderStore(Protocol):
    context_id: str

    async def save(self, order: PendingOrder) -> None: ...

    async def load(self) -> Optional[PendingOrder]: ...

    async def clear(self, expected: Optional[PendingOrder] = None) -> bool: ...

    async def annotate(self, expected: PendingOrder, payment_reference: str) -> bool: ...


def pending_order_store_for(context_id: str, base_dir: Optional[str] = None) -> PendingOrderStore:
    """Store for one context. An explicit ``base_dir`` selects the file backend."""
    if base_dir is not None or settings.PENDING_ORDER_BACKEND == "file":
        return FilePendingOrderStore(context_id, base_dir=base_dir)
    return FirestorePendingOrderStore(context_id)


def _parse(raw: Union[str, Dict[str, Any]], context_id: str) -> Optional[PendingOrder]:
    try:
        if isinstance(raw, str):
            return PendingOrder.model_validate_json(raw)
        return PendingOrder.model_validate(raw)
    except ModelValidationError as e:
        logger.warning(f"Ignoring unreadable staged order for {context_id}: {e}")
        return None


# -------------------------------------------------------------------
# Firestore
# -------------------------------------------------------------------

class FirestorePendingOrderStore:
    def __init__(self, context_id: str, db=None) -> None:
        self.context_id = context_id
        self._db = db

    @property
    def db(self):
        if self._db is None:
            from app.core.firebase import get_db
            self._db = get_db()
        return self._db

    def _ref(self):
        return self.db.collection(PENDING_ORDERS_COLLECTION).document(self.context_id)

    async def _snapshot(self):
        try:
            return await firestore_run(self._ref().get)
        except GoogleAPICallError as e:
            raise PendingOrderStoreError(f"Reading staged order for {self.context_id} failed: {e}") from e

    async def save(self, order: PendingOrder) -> None:
        try:
            await firestore_run(self._ref().set, order.model_dump(mode="json", by_alias=True))
        except GoogleAPICallError as e:
            raise PendingOrderStoreError(f"Staging order for {self.context_id} failed: {e}") from e
        logger.debug(f"[Firestore] Staged order saved for {self.context_id}")

    async def load(self) -> Optional[PendingOrder]:
        snap = await self._snapshot()
        if not snap.exists:
            return None
        return _parse(snap.to_dict(), self.context_id)

    async def clear(self, expected: Optional[PendingOrder] = None) -> bool:
        ref = self._ref()
        try:
            if expected is None:
                await firestore_run(ref.delete)
                return True

            snap = await self._snapshot()
            if not snap.exists or not expected.same_staging(_parse(snap.to_dict(), self.context_id)):
                logger.info(f"[Firestore] Staged order for {self.context_id} was replaced, not clearing")
                return False
            # delete only if nobody wrote since we read
            await firestore_run(ref.delete, option=self.db.write_option(last_update_time=snap.update_time))
        except FailedPrecondition:
            logger.info(f"[Firestore] Staged order for {self.context_id} changed while clearing")
            return False
        except GoogleAPICallError as e:
            raise PendingOrderStoreError(f"Clearing staged order for {self.context_id} failed: {e}") from e
        return True

    async def annotate(self, expected: PendingOrder, payment_reference: str) -> bool:
        ref = self._ref()
        data = expected.model_copy(update={"payment_reference": payment_reference}).model_dump(
            mode="json", by_alias=True
        )
        try:
            snap = await self._snapshot()
            if not snap.exists:
                await firestore_run(ref.create, data)
                return True
            if not expected.same_staging(_parse(snap.to_dict(), self.context_id)):
                return False
            await firestore_run(ref.update, data, option=self.db.write_option(last_update_time=snap.update_time))
        except (AlreadyExists, FailedPrecondition):
            return False
        except GoogleAPICallError as e:
            raise PendingOrderStoreError(f"Annotating staged order for {self.context_id} failed: {e}") from e
        return True


# -------------------------------------------------------------------
# Local file (dev / single host)
# -------------------------------------------------------------------

class FilePendingOrderStore:
    """
    The order is kept as JSON on disk under ``<dir>/<context>/pendingOrder.json``.
    Writes go through a temp file and a rename.
    """

    def __init__(self, context_id: str, base_dir: Optional[str] = None) -> None:
        self.context_id = context_id
        root = Path(base_dir or settings.PENDING_ORDER_DIR)
        self.path = root / _safe_name(context_id) / f"{PENDING_ORDER_KEY}.json"

    def _write(self, order: PendingOrder) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = order.model_dump_json(by_alias=True)

        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".pending-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _read(self) -> Optional[PendingOrder]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PendingOrderStoreError(f"Reading {self.path} failed: {e}") from e
        return _parse(raw, self.context_id)

    async def save(self, order: PendingOrder) -> None:
        try:
            self._write(order)
        except OSError as e:
            raise PendingOrderStoreError(f"Writing {self.path} failed: {e}") from e
        logger.debug(f"Staged order saved for {self.context_id}")

    async def load(self) -> Optional[PendingOrder]:
        return self._read()

    async def clear(self, expected: Optional[PendingOrder] = None) -> bool:
        if expected is not None and not expected.same_staging(self._read()):
            logger.info(f"Staged order for {self.context_id} was replaced, not clearing")
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return expected is None
        except OSError as e:
            raise PendingOrderStoreError(f"Removing {self.path} failed: {e}") from e
        logger.debug(f"Staged order cleared for {self.context_id}")
        return True

    async def annotate(self, expected: PendingOrder, payment_reference: str) -> bool:
        current = self._read()
        if current is not None and not expected.same_staging(current):
            return False
        try:
            self._write(expected.model_copy(update={"payment_reference": payment_reference}))
        except OSError as e:
            raise PendingOrderStoreError(f"Writing {self.path} failed: {e}") from e
        return True


def _safe_name(context_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in context_id) or "anonymous"
