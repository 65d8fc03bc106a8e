import os
import random
import tempfile
from unittest import TestCase

import yaml

from privacypool.beacon import HashChainBeacon, SystemBeacon
from privacypool.config import Config

CONFIG = {
    "pool": {"depth": 8, "root_history": 4, "assets": ["ETH", "DAI"]},
    "batch": {
        "epoch_duration_sec": 12,
        "max_orders_per_batch": 16,
        "max_order_age_sec": 36.5,
    },
    "beacon": {"seed": 7},
    "simulation": {
        "num_users": 4,
        "num_rounds": 3,
        "initial_balance": 100,
        "seed": 0,
    },
}


class TestConfig(TestCase):
    def test_load(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.yaml")
            with open(path, "w") as f:
                yaml.safe_dump(CONFIG, f)
            config = Config.load(path)

        assert config.pool.depth == 8
        assert config.pool.root_history == 4
        assert config.pool.assets == ["ETH", "DAI"]
        assert config.batch.epoch_duration_sec == 12.0
        assert config.batch.max_order_age_sec == 36.5
        assert isinstance(config.beacon.build(), HashChainBeacon)
        assert isinstance(config.simulation.seed, random.Random)

    def test_defaults(self):
        data = {k: v for k, v in CONFIG.items() if k in ("pool", "batch")}
        data["pool"] = {"depth": 8, "assets": ["ETH"]}
        config = Config.from_dict(data)

        assert config.pool.root_history == 30
        assert config.simulation is None
        assert isinstance(config.beacon.build(), SystemBeacon)

    def test_validation(self):
        for section, field, value in [
            ("pool", "depth", 0),
            ("pool", "root_history", -1),
            ("pool", "assets", ["ETH", "ETH"]),
            ("batch", "max_orders_per_batch", 0),
            # an order must outlive one epoch
            ("batch", "max_order_age_sec", 6),
        ]:
            data = {k: dict(v) for k, v in CONFIG.items()}
            data[section][field] = value
            with self.assertRaises(AssertionError, msg=f"{section}.{field}"):
                Config.from_dict(data)

    def test_shipped_config(self):
        path = os.path.join(os.path.dirname(__file__), "sim", "config.yaml")
        config = Config.load(path)
        assert config.simulation is not None
        assert len(config.pool.assets) > 1
