class PoolError(Exception):
    """
    Base class of every rejection raised by the pool.

    A rejection is terminal for the request that caused it and never leaves
    a partial mutation behind.
    """


class InvalidProof(PoolError):
    def __str__(self):
        return "Proof failed verification"


class DoubleSpend(PoolError):
    def __init__(self, nullifier: bytes):
        super().__init__(nullifier)
        self.nullifier = nullifier

    def __str__(self):
        return f"Nullifier {self.nullifier.hex()} is already spent"


class StaleRoot(PoolError):
    def __init__(self, root: bytes):
        super().__init__(root)
        self.root = root

    def __str__(self):
        return f"Root {self.root.hex()} is outside the recent root window"


class CapacityExceeded(PoolError):
    def __init__(self, capacity: int):
        super().__init__(capacity)
        self.capacity = capacity

    def __str__(self):
        return f"Commitment tree is full ({self.capacity} leaves)"


class UnsupportedAsset(PoolError):
    def __init__(self, asset: str):
        super().__init__(asset)
        self.asset = asset

    def __str__(self):
        return f"Asset {self.asset!r} is not registered"


class InsufficientReserves(PoolError):
    def __init__(self, asset: str, requested: int, available: int):
        super().__init__(asset, requested, available)
        self.asset = asset
        self.requested = requested
        self.available = available

    def __str__(self):
        return (
            f"Cannot release {self.requested} {self.asset}, "
            f"only {self.available} in reserve"
        )


class BatchExpired(PoolError):
    def __init__(self, order_id: bytes):
        super().__init__(order_id)
        self.order_id = order_id

    def __str__(self):
        return f"Order {self.order_id.hex()} expired before its batch closed"


class OrderNotPending(PoolError):
    def __init__(self, order_id: bytes):
        super().__init__(order_id)
        self.order_id = order_id

    def __str__(self):
        return f"Order {self.order_id.hex()} is not pending"
