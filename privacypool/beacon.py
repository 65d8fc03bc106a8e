import secrets
from hashlib import sha256
from typing import Protocol, TypeAlias

Entropy: TypeAlias = bytes


def epoch_to_bytes(epoch: int) -> bytes:
    return int.to_bytes(epoch, length=8, byteorder="big")


class RandomBeacon(Protocol):
    """
    Source of the randomness that keys a batch shuffle.

    The entropy for an epoch must not be learnable by anyone submitting
    orders into that epoch; the batcher only asks for it once the epoch has
    closed.
    """

    def entropy(self, epoch: int) -> Entropy: ...


class HashChainBeacon:
    """
    Deterministic beacon: entropy(e) = sha256(entropy(e - 1) || e).
    Reproducible from the seed, meant for tests and simulations.
    """

    def __init__(self, seed: bytes):
        self.chain: list[Entropy] = [sha256(seed).digest()]

    def entropy(self, epoch: int) -> Entropy:
        assert epoch >= 0, epoch
        while len(self.chain) <= epoch:
            self.chain.append(self.next_entropy(self.chain[-1], len(self.chain)))
        return self.chain[epoch]

    @staticmethod
    def next_entropy(last_entropy: Entropy, epoch: int) -> Entropy:
        return sha256(last_entropy + epoch_to_bytes(epoch)).digest()

    @staticmethod
    def verify(last_entropy: Entropy, entropy: Entropy, epoch: int) -> bool:
        return HashChainBeacon.next_entropy(last_entropy, epoch) == entropy


class SystemBeacon:
    """
    Draws fresh entropy from the OS the first time an epoch is asked for.
    """

    def __init__(self):
        self.drawn: dict[int, Entropy] = {}

    def entropy(self, epoch: int) -> Entropy:
        if epoch not in self.drawn:
            self.drawn[epoch] = secrets.token_bytes(32)
        return self.drawn[epoch]
