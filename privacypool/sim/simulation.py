import logging
from dataclasses import dataclass

from privacypool.batch import Batcher, OrderState, PrivateOrder
from privacypool.config import Config
from privacypool.crypto import Note
from privacypool.errors import PoolError
from privacypool.pool import LedgerCustody, PoolState, PrivacyPool, TradingPair
from privacypool.sim.stats import EventStats, ShuffleStats
from privacypool.verifier import (
    Circuit,
    MockPairingCheck,
    MockProver,
    ProofVerifier,
    PublicInputs,
    mock_keys,
)

logger = logging.getLogger(__name__)


@dataclass
class User:
    name: str
    notes: list[Note]
    # notes currently locked in a pending order
    trading: set[Note]

    def spendable(self) -> list[Note]:
        return [n for n in self.notes if n not in self.trading]


class Simulation:
    """
    Drives a population of users through deposits, withdrawals and batched
    private trades against a single pool, then reports what happened.
    """

    def __init__(self, config: Config):
        assert config.simulation is not None
        self.config = config
        self.now = 0.0

        keys = mock_keys()
        self.withdraw_prover = MockProver(keys[Circuit.WITHDRAW])
        self.trade_prover = MockProver(keys[Circuit.TRADE])

        self.custody = LedgerCustody()
        self.pool = PrivacyPool(
            PoolState.empty(
                config.pool.depth, config.pool.root_history, config.pool.assets
            ),
            ProofVerifier(keys, MockPairingCheck()),
            self.custody,
            clock=lambda: self.now,
        )
        self.batcher = Batcher(
            self.pool,
            config.beacon.build(),
            config.batch,
            clock=lambda: self.now,
        )

        self.event_stats = EventStats()
        self.shuffle_stats = ShuffleStats()
        self._open_trades: dict[bytes, tuple[User, Note, Note]] = {}
        self.pool.subscribe(self.event_stats.on_event)

        self.users = [
            User(f"user-{i}", [], set()) for i in range(config.simulation.num_users)
        ]
        for user in self.users:
            for asset in config.pool.assets:
                self.custody.credit(user.name, asset, config.simulation.initial_balance)

    def run(self):
        for _ in range(self.config.simulation.num_rounds):
            self.__run_round()
        self.event_stats.analyze()
        self.shuffle_stats.analyze()

    def __run_round(self):
        rng = self.config.simulation.seed
        submitted: list[PrivateOrder] = []
        for user in rng.sample(self.users, len(self.users)):
            action = rng.choice(["deposit", "withdraw", "trade"])
            try:
                match action:
                    case "deposit":
                        self.__deposit(user)
                    case "withdraw":
                        self.__withdraw(user)
                    case "trade":
                        if order := self.__submit_trade(user):
                            submitted.append(order)
            except PoolError as e:
                logger.info("%s failed to %s: %s", user.name, action, e)

        self.now += self.config.batch.epoch_duration_sec
        batch = self.batcher.close_batch()
        self.__settle(batch.orders + batch.expired)
        if submitted:
            self.shuffle_stats.register(
                [o.id for o in submitted], [o.id for o in batch.orders]
            )

    def __deposit(self, user: User):
        rng = self.config.simulation.seed
        asset = rng.choice(self.config.pool.assets)
        available = self.custody.balance(user.name, asset)
        if available == 0:
            return
        note = Note(
            value=rng.randint(1, available),
            secret=rng.getrandbits(128),
            asset=asset,
            nonce=rng.getrandbits(64),
        )
        self.pool.deposit(note.commitment(), note.value, note.asset, user.name)
        user.notes.append(note)

    def __withdraw(self, user: User):
        rng = self.config.simulation.seed
        notes = user.spendable()
        if not notes:
            return
        note = rng.choice(notes)
        proof = self.withdraw_prover.prove(
            PublicInputs(
                root=self.pool.current_root(),
                nullifier=note.nullifier(),
                target=user.name,
                asset=note.asset,
                amount=note.value,
            )
        )
        self.pool.withdraw(proof)
        user.notes.remove(note)

    def __submit_trade(self, user: User) -> PrivateOrder | None:
        rng = self.config.simulation.seed
        notes = user.spendable()
        assets = self.config.pool.assets
        if not notes or len(assets) < 2:
            return None
        note = rng.choice(notes)
        pair = TradingPair(note.asset, rng.choice([a for a in assets if a != note.asset]))
        # pricing happens outside the pool, the simulation swaps at par
        proceeds = note.evolve(asset=pair.quote)
        proof = self.trade_prover.prove(
            PublicInputs(
                root=self.pool.current_root(),
                nullifier=note.nullifier(),
                target=pair.id(),
                commitment=proceeds.commitment(),
            )
        )
        order = self.batcher.submit_order(PrivateOrder(proof, pair, user.name))
        user.trading.add(note)
        self._open_trades[order.id] = (user, note, proceeds)
        return order

    def __settle(self, orders: list[PrivateOrder]):
        for order in orders:
            user, note, proceeds = self._open_trades.pop(order.id)
            user.trading.discard(note)
            if order.state == OrderState.INCLUDED:
                user.notes.remove(note)
                user.notes.append(proceeds)
