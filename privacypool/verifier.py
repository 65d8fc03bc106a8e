"""
This module is the gate between the pool and the external proving system.

The pool never looks inside a proof. It hands the public inputs and the
opaque proof blob to a `PairingCheck` bound to the verifying key of the
relevant circuit, and treats the boolean answer as final.

Verification is a pure function of (public inputs, proof blob, verifying key).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Protocol

from privacypool.crypto import Hash, encode_int, encode_str


class Circuit(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRADE = "trade"


@dataclass(frozen=True)
class PublicInputs:
    root: bytes
    nullifier: bytes
    # recipient address for withdrawals, trading pair id for trades
    target: str
    asset: str | None = None
    amount: int | None = None
    # commitment to the post-trade note
    commitment: bytes | None = None

    def encode(self) -> bytes:
        def optional(data: bytes | None) -> bytes:
            if data is None:
                return b"\x00"
            return b"\x01" + data

        return b"".join(
            [
                self.root,
                self.nullifier,
                encode_str(self.target),
                optional(None if self.asset is None else encode_str(self.asset)),
                optional(None if self.amount is None else encode_int(self.amount)),
                optional(self.commitment),
            ]
        )


@dataclass(frozen=True)
class Proof:
    public_inputs: PublicInputs
    blob: bytes

    def id(self) -> Hash:
        return Hash(b"PRIVACY_POOL_PROOF_ID", self.public_inputs.encode(), self.blob)


@dataclass(frozen=True)
class VerifyingKey:
    circuit: Circuit
    key: bytes


class PairingCheck(Protocol):
    def __call__(
        self, key: VerifyingKey, public_inputs: PublicInputs, blob: bytes
    ) -> bool: ...


class ProofVerifier:
    def __init__(
        self, keys: Mapping[Circuit, VerifyingKey], pairing_check: PairingCheck
    ):
        for circuit, key in keys.items():
            if key.circuit != circuit:
                raise ValueError(
                    f"verifying key for {key.circuit} registered as {circuit}"
                )
        self._keys = dict(keys)
        self._pairing_check = pairing_check

    def verify(self, circuit: Circuit, public_inputs: PublicInputs, blob: bytes) -> bool:
        return self._pairing_check(self._keys[circuit], public_inputs, blob)


def _mock_blob(key: VerifyingKey, public_inputs: PublicInputs) -> Hash:
    return Hash(b"MOCK_PROOF", key.key, public_inputs.encode())


class MockPairingCheck:
    """
    Accepts exactly the blobs produced by `MockProver` for the same key and
    public inputs. Stands in for the pairing check so that the pool can be
    exercised without a proving system.
    """

    def __call__(
        self, key: VerifyingKey, public_inputs: PublicInputs, blob: bytes
    ) -> bool:
        return blob == _mock_blob(key, public_inputs)


@dataclass
class MockProver:
    key: VerifyingKey

    def prove(self, public_inputs: PublicInputs) -> Proof:
        return Proof(public_inputs, bytes(_mock_blob(self.key, public_inputs)))


def mock_keys() -> dict[Circuit, VerifyingKey]:
    return {
        circuit: VerifyingKey(circuit, Hash(b"MOCK_VK", circuit.value.encode()))
        for circuit in Circuit
    }
