"""Atomic claim protocol.

Turns a backend's single atomic find-and-modify primitive into a safe
multi-receiver claim. The facade holds no lock: correctness rests entirely
on the store performing ``find_and_modify`` atomically.

For each candidate the store sets a fresh handle on a record that is still
unclaimed and returns the record as it was *before* the update. A missing
snapshot, or one that already carries a handle, means another receiver won
the race; the candidate is dropped and not retried in the same call.
"""

import logging
import time
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

from ossuary.core.message import StoredMessage
from ossuary.core.params import ReceiveParameters

logger = logging.getLogger("ossuary.claim")


@dataclass(frozen=True)
class Claim:
    """A successful claim: the pre-update record plus the handle we set."""

    message: StoredMessage
    handle: str
    claimed_at: float


class ClaimStore(Protocol):
    """The atomic primitive a backend must offer to support safe receive."""

    async def find_candidates(
        self,
        queue_name: str,
        limit: int,
        params: ReceiveParameters,
        now: float,
    ) -> list[str]:
        """Return ids of unclaimed, due messages in natural (oldest first) order."""
        ...

    async def find_and_modify(
        self,
        queue_name: str,
        message_id: str,
        handle: str,
        claimed_at: float,
    ) -> StoredMessage | None:
        """Atomically claim an unclaimed record and return its pre-update state.

        Returns None if no unclaimed record with ``message_id`` exists.
        """
        ...


def new_handle() -> str:
    return uuid4().hex


async def claim_messages(
    store: ClaimStore,
    queue_name: str,
    limit: int,
    params: ReceiveParameters | None = None,
    now: float | None = None,
) -> list[Claim]:
    """Claim up to ``limit`` messages from ``queue_name``.

    Args:
        store: Backend exposing the atomic primitive.
        queue_name: Queue to claim from.
        limit: Maximum number of successful claims.
        params: Receive parameters used to select candidates.
        now: Clock value used for due checks and claim timestamps.

    Returns:
        Claims in candidate order. Lost races are silently excluded.
    """
    if now is None:
        now = time.time()
    params = ReceiveParameters.coerce(params)

    candidates = await store.find_candidates(queue_name, limit, params, now)
    claims: list[Claim] = []

    for message_id in candidates:
        if len(claims) >= limit:
            break

        handle = new_handle()
        snapshot = await store.find_and_modify(queue_name, message_id, handle, now)

        if snapshot is None or snapshot.handle is not None:
            logger.debug(
                f"Lost claim race for message {message_id}",
                extra={"queue": queue_name, "message_id": message_id},
            )
            continue

        claims.append(Claim(message=snapshot, handle=handle, claimed_at=now))

    return claims
