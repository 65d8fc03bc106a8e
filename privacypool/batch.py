"""
Front-running protection for private trades.

Orders are not applied when they arrive. They wait in the current epoch and
are applied together when the epoch closes, in an order drawn from a random
beacon that nobody could observe while the epoch was open. The submission
order therefore tells an observer nothing about the execution order.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from privacypool.beacon import RandomBeacon, epoch_to_bytes
from privacypool.config import BatchConfig
from privacypool.crypto import Hash, encode_str
from privacypool.errors import BatchExpired, OrderNotPending, PoolError
from privacypool.fisheryates import FisherYates
from privacypool.pool import PrivacyPool, Receipt, TradingPair
from privacypool.verifier import Proof

logger = logging.getLogger(__name__)


class OrderState(Enum):
    PENDING = 1
    INCLUDED = 2
    REJECTED = 3
    EXPIRED = 4
    # pulled back by its submitter before the batch closed
    WITHDRAWN = 5


@dataclass(eq=False)
class PrivateOrder:
    proof: Proof
    pair: TradingPair
    submitter: str
    state: OrderState = OrderState.PENDING
    submitted_at: float | None = None
    epoch: int | None = None
    receipt: Receipt | None = None
    error: Exception | None = None

    @property
    def id(self) -> Hash:
        return Hash(b"PRIVACY_POOL_ORDER", self.proof.id(), encode_str(self.pair.id()))


@dataclass
class Batch:
    epoch: int
    # in the order they were applied
    orders: list[PrivateOrder] = field(default_factory=list)
    expired: list[PrivateOrder] = field(default_factory=list)

    def included(self) -> list[PrivateOrder]:
        return [o for o in self.orders if o.state == OrderState.INCLUDED]

    def rejected(self) -> list[PrivateOrder]:
        return [o for o in self.orders if o.state == OrderState.REJECTED]


class Batcher:
    def __init__(
        self,
        pool: PrivacyPool,
        beacon: RandomBeacon,
        config: BatchConfig,
        clock: Callable[[], float] = time.time,
        on_return: Callable[[PrivateOrder], None] | None = None,
    ):
        self.pool = pool
        self.beacon = beacon
        self.config = config
        self.clock = clock
        self.on_return = on_return

        self.epoch = 0
        self.epoch_started_at = clock()
        self.pending: dict[Hash, PrivateOrder] = {}
        self._lock = threading.RLock()

    def submit_order(self, order: PrivateOrder) -> PrivateOrder:
        if order.proof.public_inputs.commitment is None:
            raise ValueError("trade proofs must expose the post-trade commitment")
        if order.state != OrderState.PENDING:
            raise OrderNotPending(order.id)

        with self._lock:
            if order.id in self.pending:
                raise ValueError(f"order {order.id.hex()} is already pending")
            order.submitted_at = self.clock()
            order.epoch = self.epoch
            self.pending[order.id] = order

        logger.debug("queued order %s for epoch %d", order.id.hex(), order.epoch)
        return order

    def withdraw_order(self, order_id: bytes, submitter: str) -> PrivateOrder:
        with self._lock:
            order = self.pending.get(order_id)
            if order is None:
                raise OrderNotPending(order_id)
            if order.submitter != submitter:
                raise PermissionError(f"order {order_id.hex()} belongs to another submitter")
            del self.pending[order_id]
            order.state = OrderState.WITHDRAWN
        return order

    def expire(self, now: float | None = None) -> list[PrivateOrder]:
        now = self.clock() if now is None else now
        with self._lock:
            expired = [
                o
                for o in self.pending.values()
                if now - o.submitted_at > self.config.max_order_age_sec
            ]
            for order in expired:
                del self.pending[order.id]
                order.state = OrderState.EXPIRED
                order.error = BatchExpired(order.id)
                logger.warning("%s", order.error)
                if self.on_return is not None:
                    self.on_return(order)
        return expired

    def should_close(self, now: float | None = None) -> bool:
        now = self.clock() if now is None else now
        with self._lock:
            return (
                len(self.pending) >= self.config.max_orders_per_batch
                or now - self.epoch_started_at >= self.config.epoch_duration_sec
            )

    def close_batch(self) -> Batch:
        # Nothing may be submitted to this batcher, nor traded against the
        # pool directly, until the batch is fully applied.
        with self._lock, self.pool.exclusive():
            now = self.clock()
            expired = self.expire(now)

            # sorting first makes the outcome independent of arrival order
            orders = sorted(self.pending.values(), key=lambda o: o.id)
            self.pending.clear()

            # entropy is only drawn now, after the epoch stopped taking orders
            seed = Hash(
                b"PRIVACY_POOL_BATCH_SHUFFLE",
                self.beacon.entropy(self.epoch),
                epoch_to_bytes(self.epoch),
            )
            batch = Batch(self.epoch, FisherYates.shuffle(orders, seed), expired)

            for order in batch.orders:
                try:
                    order.receipt = self.pool.trade(order.proof, order.pair)
                    order.state = OrderState.INCLUDED
                except PoolError as e:
                    order.state = OrderState.REJECTED
                    order.error = e
                except Exception as e:
                    # e.g. a verifier that cannot decode the proof bytes
                    logger.exception("order %s failed", order.id.hex())
                    order.state = OrderState.REJECTED
                    order.error = e

            self.epoch += 1
            self.epoch_started_at = now

        logger.info(
            "closed batch %d: %d included, %d rejected, %d expired",
            batch.epoch,
            len(batch.included()),
            len(batch.rejected()),
            len(batch.expired),
        )
        return batch

    def tick(self) -> Batch | None:
        if self.should_close():
            return self.close_batch()
        return None
