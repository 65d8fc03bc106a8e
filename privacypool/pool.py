"""
The privacy pool state machine.

Every request moves through

    SUBMITTED -> VALIDATED -> VERIFIED -> APPLIED
              +-> REJECTED (from any step before APPLIED)

A request is validated against the public state (root recency, unspent
nullifier, capacity, reserves), then its proof is checked, then it is applied.
The proof check is the expensive step and runs outside the exclusive section
against whatever state was current at submission. The cheap checks are
repeated inside the exclusive section right before commit, which is what
makes the nullifier check-and-set linearizable.

A rejected request never mutates the pool.
"""

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Protocol

from privacypool.crypto import Commitment, MerkleRoot, Nullifier
from privacypool.errors import (
    CapacityExceeded,
    DoubleSpend,
    InsufficientReserves,
    InvalidProof,
    PoolError,
    StaleRoot,
    UnsupportedAsset,
)
from privacypool.nullifiers import NullifierRegistry
from privacypool.tree import CommitmentTree, MerkleProof
from privacypool.verifier import Circuit, Proof, ProofVerifier, PublicInputs

logger = logging.getLogger(__name__)


class Direction(Enum):
    IN = "in"
    OUT = "out"


class Custody(Protocol):
    """
    The external collaborator that actually moves assets. It must raise if a
    transfer cannot be carried out.
    """

    def transfer(
        self, asset: str, amount: int, direction: Direction, counterparty: str
    ): ...


class LedgerCustody:
    """
    In-memory account book standing in for token contracts.
    """

    def __init__(self):
        self.balances: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def credit(self, account: str, asset: str, amount: int):
        self.balances[account][asset] += amount

    def balance(self, account: str, asset: str) -> int:
        return self.balances[account][asset]

    def transfer(
        self, asset: str, amount: int, direction: Direction, counterparty: str
    ):
        if direction == Direction.IN:
            available = self.balances[counterparty][asset]
            if available < amount:
                raise ValueError(
                    f"{counterparty} holds {available} {asset}, cannot pay {amount}"
                )
            self.balances[counterparty][asset] -= amount
        else:
            self.balances[counterparty][asset] += amount


@dataclass(frozen=True)
class TradingPair:
    base: str
    quote: str

    def id(self) -> str:
        return f"{self.base}/{self.quote}"


class EventKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRADE = "trade"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    new_root: MerkleRoot
    timestamp: float
    leaf_index: int | None = None
    nullifier: Nullifier | None = None


class RequestState(Enum):
    SUBMITTED = 1
    VALIDATED = 2
    VERIFIED = 3
    APPLIED = 4
    REJECTED = 5


@dataclass
class Receipt:
    kind: EventKind
    state: RequestState = RequestState.SUBMITTED
    new_root: MerkleRoot | None = None
    leaf_index: int | None = None
    nullifier: Nullifier | None = None

    def advance(self, state: RequestState):
        logger.debug("%s request %s -> %s", self.kind.value, self.state.name, state.name)
        self.state = state


@dataclass
class PoolState:
    """
    Everything the pool owns. Passed explicitly so that independent pools can
    coexist, e.g. one per test.
    """

    tree: CommitmentTree
    nullifiers: NullifierRegistry = field(default_factory=NullifierRegistry)
    reserves: dict[str, int] = field(default_factory=dict)
    assets: set[str] = field(default_factory=set)

    @staticmethod
    def empty(depth: int, root_history: int, assets: Iterable[str] = ()) -> "PoolState":
        assets = set(assets)
        return PoolState(
            tree=CommitmentTree(depth, root_history),
            reserves={asset: 0 for asset in assets},
            assets=assets,
        )

    def copy(self) -> "PoolState":
        return PoolState(
            tree=self.tree.copy(),
            nullifiers=self.nullifiers.copy(),
            reserves=dict(self.reserves),
            assets=set(self.assets),
        )


Listener = Callable[[Event], None]


class PrivacyPool:
    def __init__(
        self,
        state: PoolState,
        verifier: ProofVerifier,
        custody: Custody,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.verifier = verifier
        self.custody = custody
        self.clock = clock
        self.listeners: list[Listener] = []
        # the single sequencing point for every mutation of `state`
        self._lock = threading.RLock()

    # -- Queries

    def current_root(self) -> MerkleRoot:
        return self.state.tree.current_root()

    def is_recent_root(self, root: bytes) -> bool:
        return self.state.tree.is_recent_root(root)

    def is_spent(self, nullifier: Nullifier) -> bool:
        return self.state.nullifiers.is_spent(nullifier)

    def reserve(self, asset: str) -> int:
        return self.state.reserves.get(asset, 0)

    def prove_membership(self, leaf_index: int) -> MerkleProof:
        with self._lock:
            return self.state.tree.prove_membership(leaf_index)

    def snapshot(self) -> PoolState:
        with self._lock:
            return self.state.copy()

    # -- Administration

    def register_asset(self, asset: str):
        with self._lock:
            self.state.assets.add(asset)
            self.state.reserves.setdefault(asset, 0)
        logger.info("registered asset %s", asset)

    def subscribe(self, listener: Listener):
        self.listeners.append(listener)

    @contextmanager
    def exclusive(self):
        """
        Holds the pool's sequencing point, e.g. for the length of a batch.
        """
        with self._lock:
            yield

    # -- Transitions

    def deposit(
        self, commitment: Commitment, amount: int, asset: str, depositor: str
    ) -> Receipt:
        if amount <= 0:
            raise ValueError(f"deposit amount must be positive, got {amount}")

        receipt = Receipt(EventKind.DEPOSIT)
        with self._rejecting(receipt), self._lock:
            self._check_asset(asset)
            self._check_capacity()
            # deposits are public in amount and asset, there is no proof to check
            receipt.advance(RequestState.VALIDATED)

            self.custody.transfer(asset, amount, Direction.IN, depositor)
            leaf_index, root = self.state.tree.insert(commitment)
            self.state.reserves[asset] += amount

            receipt.leaf_index, receipt.new_root = leaf_index, root
            receipt.advance(RequestState.APPLIED)
            self._emit(Event(EventKind.DEPOSIT, root, self.clock(), leaf_index=leaf_index))
        return receipt

    def withdraw(self, proof: Proof) -> Receipt:
        inputs = proof.public_inputs
        if inputs.asset is None or inputs.amount is None:
            raise ValueError("withdraw proofs must expose the asset and amount")
        if inputs.amount <= 0:
            raise ValueError(f"withdraw amount must be positive, got {inputs.amount}")

        receipt = Receipt(EventKind.WITHDRAW, nullifier=inputs.nullifier)
        with self._rejecting(receipt):
            self._validate_withdraw(inputs)
            receipt.advance(RequestState.VALIDATED)

            self._verify(Circuit.WITHDRAW, proof)
            receipt.advance(RequestState.VERIFIED)

            with self._lock:
                # the state may have moved while we were verifying
                self._validate_withdraw(inputs)

                self.custody.transfer(
                    inputs.asset, inputs.amount, Direction.OUT, inputs.target
                )
                self.state.nullifiers.spend(inputs.nullifier)
                self.state.reserves[inputs.asset] -= inputs.amount

                receipt.new_root = self.state.tree.current_root()
                receipt.advance(RequestState.APPLIED)
                self._emit(
                    Event(
                        EventKind.WITHDRAW,
                        receipt.new_root,
                        self.clock(),
                        nullifier=inputs.nullifier,
                    )
                )
        return receipt

    def trade(self, proof: Proof, pair: TradingPair) -> Receipt:
        """
        A shielded swap: spends one note and inserts the note holding the
        post-trade balance. Both happen or neither does.
        """
        inputs = proof.public_inputs
        if inputs.commitment is None:
            raise ValueError("trade proofs must expose the post-trade commitment")

        receipt = Receipt(EventKind.TRADE, nullifier=inputs.nullifier)
        with self._rejecting(receipt):
            self._validate_trade(inputs, pair)
            receipt.advance(RequestState.VALIDATED)

            self._verify(Circuit.TRADE, proof)
            receipt.advance(RequestState.VERIFIED)

            with self._lock:
                self._validate_trade(inputs, pair)

                # capacity was checked above, so the insert cannot fail once
                # the nullifier is recorded
                self.state.nullifiers.spend(inputs.nullifier)
                leaf_index, root = self.state.tree.insert(inputs.commitment)

                receipt.leaf_index, receipt.new_root = leaf_index, root
                receipt.advance(RequestState.APPLIED)
                self._emit(
                    Event(
                        EventKind.TRADE,
                        root,
                        self.clock(),
                        leaf_index=leaf_index,
                        nullifier=inputs.nullifier,
                    )
                )
        return receipt

    # -- Internals

    @contextmanager
    def _rejecting(self, receipt: Receipt):
        try:
            yield
        except PoolError as e:
            receipt.advance(RequestState.REJECTED)
            logger.warning("rejected %s request: %s", receipt.kind.value, e)
            raise

    def _check_asset(self, asset: str):
        if asset not in self.state.assets:
            raise UnsupportedAsset(asset)

    def _check_capacity(self):
        if not self.state.tree.can_insert():
            raise CapacityExceeded(self.state.tree.capacity)

    def _check_spendable(self, inputs: PublicInputs):
        # cheap rejects, always before the proof is looked at
        if not self.state.tree.is_recent_root(inputs.root):
            raise StaleRoot(inputs.root)
        if self.state.nullifiers.is_spent(inputs.nullifier):
            raise DoubleSpend(inputs.nullifier)

    def _validate_withdraw(self, inputs: PublicInputs):
        self._check_asset(inputs.asset)
        self._check_spendable(inputs)
        available = self.state.reserves[inputs.asset]
        if available < inputs.amount:
            raise InsufficientReserves(inputs.asset, inputs.amount, available)

    def _validate_trade(self, inputs: PublicInputs, pair: TradingPair):
        self._check_asset(pair.base)
        self._check_asset(pair.quote)
        if inputs.target != pair.id():
            # the proof attests to a different market
            raise InvalidProof()
        self._check_spendable(inputs)
        self._check_capacity()

    def _verify(self, circuit: Circuit, proof: Proof):
        if not self.verifier.verify(circuit, proof.public_inputs, proof.blob):
            raise InvalidProof()

    def _emit(self, event: Event):
        logger.info(
            "applied %s: root=%s leaf=%s",
            event.kind.value,
            event.new_root.hex(),
            event.leaf_index,
        )
        # the transition is already committed, a failing listener cannot undo it
        for listener in self.listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("event listener failed on %s", event.kind.value)
