from unittest import TestCase

import numpy as np

from privacypool.batch import OrderState, PrivateOrder
from privacypool.crypto import Note
from privacypool.errors import BatchExpired, DoubleSpend, OrderNotPending
from privacypool.pool import EventKind, TradingPair
from privacypool.test_common import (
    ManualClock,
    deposit,
    mk_batcher,
    mk_orders,
    mk_pool,
    mk_trade_proof,
)
from privacypool.verifier import MockPairingCheck, Proof, PublicInputs

ETH_DAI = TradingPair("ETH", "DAI")


class UndecodableProofCheck(MockPairingCheck):
    def __call__(self, key, public_inputs, blob) -> bool:
        if blob == b"malformed":
            raise ValueError("cannot decode proof bytes")
        return super().__call__(key, public_inputs, blob)


def applied_order(batch) -> list[str]:
    return [o.submitter for o in batch.orders]


class TestBatcher(TestCase):
    def test_orders_wait_for_the_batch(self):
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(pool)
        orders = mk_orders(pool, custody, 3, ETH_DAI)
        root = pool.current_root()

        for order in orders:
            batcher.submit_order(order)

        # nothing touches the pool until the batch closes
        assert all(o.state == OrderState.PENDING for o in orders)
        assert pool.current_root() == root
        assert not any(pool.is_spent(o.proof.public_inputs.nullifier) for o in orders)

        batch = batcher.close_batch()
        assert batch.epoch == 0
        assert batcher.epoch == 1
        assert sorted(applied_order(batch)) == sorted(o.submitter for o in orders)
        assert all(o.state == OrderState.INCLUDED for o in orders)
        assert all(pool.is_spent(o.proof.public_inputs.nullifier) for o in orders)
        assert sorted(o.receipt.leaf_index for o in orders) == [3, 4, 5]
        assert batcher.pending == {}

    def test_events_follow_the_shuffled_order(self):
        pool, custody = mk_pool(depth=5, root_history=32)
        batcher = mk_batcher(pool)
        events = []
        pool.subscribe(events.append)
        for order in mk_orders(pool, custody, 8, ETH_DAI):
            batcher.submit_order(order)

        batch = batcher.close_batch()
        trades = [e for e in events if e.kind == EventKind.TRADE]
        assert [e.nullifier for e in trades] == [
            o.proof.public_inputs.nullifier for o in batch.orders
        ]

    def test_conflicting_orders(self):
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(pool)
        note = Note(value=10, secret=1)
        deposit(pool, custody, note)
        root = pool.current_root()

        first, _ = mk_trade_proof(root, note, ETH_DAI)
        second, _ = mk_trade_proof(
            root, note, ETH_DAI, proceeds=note.evolve(value=9, asset="DAI")
        )
        a = batcher.submit_order(PrivateOrder(first, ETH_DAI, "alice"))
        b = batcher.submit_order(PrivateOrder(second, ETH_DAI, "alice"))

        batch = batcher.close_batch()
        assert {a.state, b.state} == {OrderState.INCLUDED, OrderState.REJECTED}
        (rejected,) = batch.rejected()
        assert isinstance(rejected.error, DoubleSpend)
        assert rejected.receipt is None
        assert len(batch.included()) == 1

    def test_unexpected_trade_failure_rejects_only_that_order(self):
        pool, custody = mk_pool(
            depth=4, root_history=16, pairing_check=UndecodableProofCheck()
        )
        batcher = mk_batcher(pool)
        orders = mk_orders(pool, custody, 4, ETH_DAI)
        good = orders[1]
        orders[1] = PrivateOrder(
            Proof(good.proof.public_inputs, b"malformed"), ETH_DAI, good.submitter
        )
        for order in orders:
            batcher.submit_order(order)

        with self.assertLogs("privacypool.batch", level="ERROR"):
            batch = batcher.close_batch()

        assert batcher.epoch == 1
        assert batcher.pending == {}
        assert len(batch.orders) == 4
        assert orders[1].state == OrderState.REJECTED
        assert isinstance(orders[1].error, ValueError)
        assert not pool.is_spent(orders[1].proof.public_inputs.nullifier)

        others = [orders[0], *orders[2:]]
        assert all(o.state == OrderState.INCLUDED for o in others)
        assert all(pool.is_spent(o.proof.public_inputs.nullifier) for o in others)

    def test_duplicate_submission(self):
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(pool)
        (order,) = mk_orders(pool, custody, 1, ETH_DAI)
        batcher.submit_order(order)

        duplicate = PrivateOrder(order.proof, order.pair, "someone-else")
        with self.assertRaises(ValueError):
            batcher.submit_order(duplicate)
        assert len(batcher.pending) == 1

    def test_order_without_commitment(self):
        pool, custody = mk_pool(depth=4)
        batcher = mk_batcher(pool)
        (order,) = mk_orders(pool, custody, 1, ETH_DAI)
        inputs = PublicInputs(
            root=order.proof.public_inputs.root,
            nullifier=order.proof.public_inputs.nullifier,
            target=ETH_DAI.id(),
        )
        with self.assertRaises(ValueError):
            batcher.submit_order(
                PrivateOrder(Proof(inputs, order.proof.blob), ETH_DAI, "x")
            )

    def test_withdraw_pending_order(self):
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(pool)
        (order,) = mk_orders(pool, custody, 1, ETH_DAI)
        batcher.submit_order(order)

        with self.assertRaises(PermissionError):
            batcher.withdraw_order(order.id, "mallory")
        assert order.state == OrderState.PENDING

        batcher.withdraw_order(order.id, order.submitter)
        assert order.state == OrderState.WITHDRAWN

        batch = batcher.close_batch()
        assert batch.orders == []
        assert not pool.is_spent(order.proof.public_inputs.nullifier)

        with self.assertRaises(OrderNotPending):
            batcher.withdraw_order(order.id, order.submitter)
        with self.assertRaises(OrderNotPending):
            batcher.submit_order(order)

    def test_included_orders_cannot_be_withdrawn(self):
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(pool)
        (order,) = mk_orders(pool, custody, 1, ETH_DAI)
        batcher.submit_order(order)
        batcher.close_batch()

        with self.assertRaises(OrderNotPending):
            batcher.withdraw_order(order.id, order.submitter)

    def test_expiry(self):
        clock = ManualClock(0.0)
        returned = []
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(
            pool, clock=clock, on_return=returned.append, max_order_age_sec=30.0
        )
        old, young = mk_orders(pool, custody, 2, ETH_DAI)
        batcher.submit_order(old)
        clock.now = 20.0
        batcher.submit_order(young)
        before = pool.snapshot()

        clock.now = 30.0
        assert batcher.expire() == []

        clock.now = 31.0
        with self.assertLogs("privacypool.batch", level="WARNING"):
            expired = batcher.expire()
        assert expired == [old]
        assert returned == [old]
        assert old.state == OrderState.EXPIRED
        assert isinstance(old.error, BatchExpired)
        assert young.state == OrderState.PENDING
        assert pool.state == before

    def test_close_expires_stale_orders_first(self):
        clock = ManualClock(0.0)
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(pool, clock=clock, max_order_age_sec=30.0)
        old, young = mk_orders(pool, custody, 2, ETH_DAI)
        batcher.submit_order(old)
        clock.now = 25.0
        batcher.submit_order(young)

        clock.now = 40.0
        batch = batcher.close_batch()
        assert batch.expired == [old]
        assert batch.orders == [young]
        assert young.state == OrderState.INCLUDED
        assert not pool.is_spent(old.proof.public_inputs.nullifier)

    def test_close_triggers(self):
        clock = ManualClock(0.0)
        pool, custody = mk_pool(depth=4, root_history=16)
        batcher = mk_batcher(
            pool, clock=clock, epoch_duration_sec=10.0, max_orders_per_batch=2
        )
        first, second = mk_orders(pool, custody, 2, ETH_DAI)

        assert not batcher.should_close()
        assert batcher.tick() is None

        # count trigger
        batcher.submit_order(first)
        assert not batcher.should_close()
        batcher.submit_order(second)
        assert batcher.should_close()
        batch = batcher.tick()
        assert batch is not None and len(batch.included()) == 2

        # time trigger
        clock.now = 9.0
        assert not batcher.should_close()
        clock.now = 10.0
        assert batcher.should_close()
        empty = batcher.tick()
        assert empty.epoch == 1 and empty.orders == []
        assert batcher.epoch_started_at == 10.0


class TestBatchShuffle(TestCase):
    def run_batch(self, seed: bytes, reverse: bool = False) -> list[str]:
        pool, custody = mk_pool(depth=5, root_history=32)
        batcher = mk_batcher(pool, seed=seed)
        orders = mk_orders(pool, custody, 8, ETH_DAI)
        for order in reversed(orders) if reverse else orders:
            batcher.submit_order(order)
        return applied_order(batcher.close_batch())

    def test_shuffle_is_reproducible_from_the_beacon(self):
        assert self.run_batch(b"seed-1") == self.run_batch(b"seed-1")
        assert self.run_batch(b"seed-1") != self.run_batch(b"seed-2")

    def test_submission_order_does_not_matter(self):
        assert self.run_batch(b"seed-1") == self.run_batch(b"seed-1", reverse=True)

    def test_no_correlation_with_submission_rank(self):
        n, trials = 10, 200
        pool, custody = mk_pool(depth=13, root_history=2 * n)
        batcher = mk_batcher(pool, seed=b"correlation")

        correlations = []
        for trial in range(trials):
            orders = mk_orders(pool, custody, n, ETH_DAI, first_secret=trial * n)
            for order in orders:
                batcher.submit_order(order)
            batch = batcher.close_batch()
            assert len(batch.included()) == n

            applied_rank = {o.id: rank for rank, o in enumerate(batch.orders)}
            ranks = [applied_rank[o.id] for o in orders]
            correlations.append(np.corrcoef(np.arange(n), ranks)[0, 1])

        assert abs(np.mean(correlations)) < 0.1, np.mean(correlations)
        # the identity permutation would give exactly 1
        assert np.max(correlations) < 1.0
