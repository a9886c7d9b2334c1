"""
Idempotency table for shipment creation.

One record per idempotency key. The first caller claims the key and starts
the carrier call as a task; later callers with the same key await that same
task, or get its recorded outcome once it has finished. Failures are recorded
too: resubmitting a key whose creation failed returns the same failure
without calling the carrier again.

Tasks are never cancelled from here. Callers await them through
``asyncio.shield`` so an abandoned caller does not abort an issued shipment.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, Tuple

from shipping_gateway.core.exceptions import ShippingValidationError
from shipping_gateway.models.carrier import CarrierCode
from shipping_gateway.models.shipping import ShipmentResult

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyRecord:
    key: str
    fingerprint: str
    carrier: CarrierCode
    task: "asyncio.Task[ShipmentResult]"
    created_at: float
    completed_at: Optional[float] = field(default=None)

    @property
    def done(self) -> bool:
        return self.task.done()


class IdempotencyStore:
    """In-memory idempotency table keyed by caller-supplied key."""

    def __init__(self, ttl_seconds: int = 86400, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._records: Dict[str, IdempotencyRecord] = {}

    def claim(
        self,
        key: str,
        fingerprint: str,
        carrier: CarrierCode,
        factory: Callable[[], Awaitable[ShipmentResult]],
    ) -> Tuple["asyncio.Task[ShipmentResult]", bool]:
        """
        Return the task for ``key``, starting it via ``factory`` if unclaimed.

        Runs without awaiting, so claim and start are atomic on the event loop.
        The boolean is True when this call started the task.

        Raises:
            ShippingValidationError: key already used for a different payload
        """
        self._prune()
        record = self._records.get(key)
        if record is not None:
            if record.fingerprint != fingerprint:
                raise ShippingValidationError(
                    "Idempotency key reused with a different shipment payload",
                    violations=[("idempotency_key", "already used for a different shipment")],
                    code="IDEMPOTENCY_KEY_MISMATCH",
                )
            state = "completed" if record.done else "in flight"
            logger.info(f"[IDEMPOTENCY] Key {key} already {state}, joining existing attempt")
            return record.task, False

        task = asyncio.ensure_future(factory())
        record = IdempotencyRecord(
            key=key,
            fingerprint=fingerprint,
            carrier=carrier,
            task=task,
            created_at=self._clock(),
        )
        self._records[key] = record
        task.add_done_callback(lambda t, r=record: self._on_done(r, t))
        logger.info(f"[IDEMPOTENCY] Key {key} claimed for {carrier.value}")
        return task, True

    def _on_done(self, record: IdempotencyRecord, task: "asyncio.Task[ShipmentResult]") -> None:
        record.completed_at = self._clock()
        if task.cancelled():
            # Only happens at loop shutdown; forget so the key can be retried
            if self._records.get(record.key) is record:
                del self._records[record.key]
            logger.warning(f"[IDEMPOTENCY] Key {record.key} cancelled before completion")
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"[IDEMPOTENCY] Key {record.key} recorded failure: {error!r}")
        else:
            logger.info(f"[IDEMPOTENCY] Key {record.key} recorded result {task.result().tracking_number}")

    def _prune(self) -> None:
        now = self._clock()
        expired = [
            key for key, record in self._records.items()
            if record.completed_at is not None and now - record.completed_at > self.ttl_seconds
        ]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug(f"[IDEMPOTENCY] Pruned {len(expired)} expired records")

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self._records.get(key)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records
