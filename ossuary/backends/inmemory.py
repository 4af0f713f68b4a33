"""In-memory adapter backed by plain dicts.

This adapter is suitable for development and testing. It provides no
durability guarantees: messages are lost if the process terminates.

Each queue is an insertion-ordered dict of message id -> StoredMessage, so
natural order is oldest first. The atomic primitive required by the claim
protocol is a find-and-modify guarded by a threading.Lock, which makes
concurrent receives safe across threads as well as tasks.

Repeating messages are tracked per queue as series id -> id of the
occurrence that will be re-armed next. Only that occurrence re-arms when
claimed, and cancelling the series removes the entry.
"""

import logging
import threading
import time
from collections.abc import Callable

from ossuary.backends.base import BaseAdapter
from ossuary.core.claim import claim_messages
from ossuary.core.errors import QueueNotFoundError
from ossuary.core.message import Envelope, StoredMessage
from ossuary.core.params import (
    CLASS_FILTER,
    REPEATING_INTERVAL,
    SCHEDULE,
    ReceiveParameters,
    SendParameters,
)

logger = logging.getLogger("ossuary.memory")


class InMemoryAdapter(BaseAdapter):
    """Dict-backed adapter with delete, count and list support.

    Args:
        options: Adapter options. Recognised keys:
            visibility_timeout: Seconds after which an undeleted claim is
                released and the message offered again. None (default)
                keeps claims until the message is deleted.
        clock: Time source, injectable for tests.
    """

    name = "memory"
    default_options = {"driver_options": {}, "visibility_timeout": None}

    def __init__(
        self,
        options: dict | None = None,
        clock: Callable[[], float] = time.time,
        **kwargs,
    ) -> None:
        super().__init__(options, **kwargs)
        self._data: dict[str, dict[str, StoredMessage]] = {}
        self._series: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def visibility_timeout(self) -> float | None:
        return self._options.get("visibility_timeout")

    async def connect(self) -> bool:
        """Nothing to connect to."""
        return True

    async def queue_exists(self, name: str) -> bool:
        return name in self._data

    async def create_queue(self, name: str) -> bool:
        with self._lock:
            if name in self._data:
                return False
            self._data[name] = {}
            self._series[name] = {}
        logger.debug(f"Created queue {name}", extra={"queue": name, "adapter": self.name})
        return True

    async def delete_queue(self, name: str) -> bool:
        with self._lock:
            found = self._data.pop(name, None) is not None
            self._series.pop(name, None)
        return found

    async def list_queues(self) -> list[str]:
        return list(self._data)

    def _messages(self, name: str) -> dict[str, StoredMessage]:
        try:
            return self._data[name]
        except KeyError:
            raise QueueNotFoundError(name) from None

    async def count_messages(self, queue) -> int:
        """Return the number of unclaimed messages, scheduled ones included."""
        messages = self._messages(queue.name)
        self._release_expired(queue.name, self._clock())
        with self._lock:
            return sum(1 for m in messages.values() if m.handle is None)

    def available_send_params(self) -> frozenset[str]:
        return frozenset({SCHEDULE, REPEATING_INTERVAL})

    def available_receive_params(self) -> frozenset[str]:
        return frozenset({CLASS_FILTER})

    async def send_message(
        self,
        queue,
        envelope: Envelope,
        params: SendParameters | None = None,
    ) -> Envelope:
        messages = self._messages(queue.name)
        params = SendParameters.coerce(params)

        self.clean_delivery_record(queue, envelope)
        stored = self.build_stored_message(queue, envelope, params, self.new_message_id())
        stored.created_at = self._clock()

        with self._lock:
            messages[stored.id] = stored
            if stored.series_id is not None:
                self._series[queue.name][stored.series_id] = stored.id

        self.embed_delivery_record(queue, envelope, self.stored_to_record(queue, stored, queue.name))
        return envelope

    async def receive_messages(
        self,
        queue,
        max_messages: int | None = None,
        params: ReceiveParameters | None = None,
    ) -> list[Envelope]:
        max_messages = self.normalize_max_messages(max_messages)
        self._messages(queue.name)
        now = self._clock()

        self._release_expired(queue.name, now)
        claims = await claim_messages(self, queue.name, max_messages, params, now)

        envelopes = []
        for claim in claims:
            self._rearm(queue.name, claim.message, now)
            envelopes.append(self.claim_to_envelope(queue, claim, queue.name))
        return envelopes

    async def delete_message(self, queue, envelope: Envelope) -> bool:
        """Delete a message if the envelope still holds the current claim.

        Returns False for envelopes without a delivery record and for stale
        envelopes whose message was claimed again after they were received.
        A record stripped of ``repeating_interval`` also cancels the series:
        its pending occurrence is removed unless someone has claimed it.
        """
        messages = self._messages(queue.name)
        record = self.get_delivery_record(queue, envelope)
        if record is None:
            return False

        removed = False
        with self._lock:
            stored = messages.get(record.message_id)
            if stored is not None and stored.handle == record.handle:
                del messages[record.message_id]
                removed = True

            if self.cancels_series(record):
                pending_id = self._series[queue.name].pop(record.series_id, None)
                pending = messages.get(pending_id) if pending_id else None
                if pending is not None and pending.handle is None:
                    del messages[pending_id]
                    removed = True

        if removed and self.cancels_series(record):
            logger.debug(
                f"Cancelled repeating series {record.series_id}",
                extra={"queue": queue.name, "message_id": record.message_id},
            )
        return removed

    # ------------------------------------------------------------------
    # Claim store primitive
    # ------------------------------------------------------------------

    async def find_candidates(
        self,
        queue_name: str,
        limit: int,
        params: ReceiveParameters,
        now: float,
    ) -> list[str]:
        with self._lock:
            candidates = []
            for stored in self._data.get(queue_name, {}).values():
                if len(candidates) >= limit:
                    break
                if stored.handle is not None or not stored.is_due(now):
                    continue
                if params.class_filter and stored.message_class != params.class_filter:
                    continue
                candidates.append(stored.id)
            return candidates

    async def find_and_modify(
        self,
        queue_name: str,
        message_id: str,
        handle: str,
        claimed_at: float,
    ) -> StoredMessage | None:
        with self._lock:
            stored = self._data.get(queue_name, {}).get(message_id)
            if stored is None or stored.handle is not None:
                return None
            snapshot = stored.model_copy(deep=True)
            stored.handle = handle
            stored.claimed_at = claimed_at
            return snapshot

    # ------------------------------------------------------------------
    # Adapter policies
    # ------------------------------------------------------------------

    def _release_expired(self, queue_name: str, now: float) -> int:
        timeout = self.visibility_timeout
        if timeout is None:
            return 0
        released = 0
        with self._lock:
            for stored in self._data.get(queue_name, {}).values():
                if stored.claim_expired(now, timeout):
                    stored.handle = None
                    stored.claimed_at = None
                    released += 1
        if released:
            logger.info(
                f"Released {released} expired claim(s)",
                extra={"queue": queue_name, "adapter": self.name},
            )
        return released

    def _rearm(self, queue_name: str, stored: StoredMessage, now: float) -> None:
        follow_up = self.next_occurrence(stored, now)
        if follow_up is None:
            return
        with self._lock:
            series = self._series.get(queue_name, {})
            # Re-claims after a visibility timeout and cancelled series do not re-arm
            if series.get(stored.series_id) != stored.id:
                return
            self._data[queue_name][follow_up.id] = follow_up
            series[stored.series_id] = follow_up.id
        logger.debug(
            f"Re-armed repeating message {stored.id} as {follow_up.id}",
            extra={"queue": queue_name, "message_id": follow_up.id},
        )
