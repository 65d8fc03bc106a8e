from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Optional

import dacite
import yaml

from privacypool.beacon import HashChainBeacon, RandomBeacon, SystemBeacon


@dataclass
class Config:
    pool: PoolConfig
    batch: BatchConfig
    beacon: BeaconConfig = field(default_factory=lambda: BeaconConfig())
    simulation: Optional[SimulationConfig] = None

    @classmethod
    def load(cls, yaml_path: str) -> Config:
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        config = dacite.from_dict(
            data_class=Config,
            data=data,
            config=dacite.Config(
                type_hooks={random.Random: seed_to_random, float: float}
            ),
        )

        # Validations
        config.pool.validate()
        config.batch.validate()
        config.beacon.validate()
        if config.simulation is not None:
            config.simulation.validate()

        return config


@dataclass
class PoolConfig:
    # Depth of the commitment tree. The pool holds at most 2**depth notes.
    depth: int
    # Assets accepted for deposit and trade.
    assets: list[str]
    # Number of superseded roots a proof may still reference.
    root_history: int = 30

    def validate(self):
        assert 0 < self.depth <= 64
        assert self.root_history >= 0
        assert len(self.assets) == len(set(self.assets))


@dataclass
class BatchConfig:
    # A batch closes once this much time has passed since the epoch opened...
    epoch_duration_sec: float
    # ...or once this many orders are pending, whichever comes first.
    max_orders_per_batch: int
    # Orders still pending after this long are expired and handed back.
    max_order_age_sec: float

    def validate(self):
        assert self.epoch_duration_sec > 0
        assert self.max_orders_per_batch > 0
        # an order must survive at least one full epoch
        assert self.max_order_age_sec >= self.epoch_duration_sec


@dataclass
class BeaconConfig:
    # A fixed seed makes batch shuffles reproducible. Leave unset in production.
    seed: Optional[int] = None

    def validate(self):
        assert self.seed is None or self.seed >= 0

    def build(self) -> RandomBeacon:
        if self.seed is None:
            return SystemBeacon()
        return HashChainBeacon(int.to_bytes(self.seed, length=32, byteorder="big"))


@dataclass
class SimulationConfig:
    num_users: int
    num_rounds: int
    # Starting balance of every user, per asset.
    initial_balance: int
    # Seed for the random number generator driving user behaviour.
    seed: random.Random

    def validate(self):
        assert self.num_users > 0
        assert self.num_rounds > 0
        assert self.initial_balance > 0
        assert self.seed is not None


def seed_to_random(seed: int) -> random.Random:
    return random.Random(seed)
