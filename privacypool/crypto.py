from dataclasses import dataclass
from hashlib import sha256
from typing import TypeAlias


class Hash(bytes):
    def __new__(cls, dst, *data):
        assert isinstance(dst, bytes)
        h = sha256()
        h.update(dst)
        for d in data:
            h.update(d)
        return super().__new__(cls, h.digest())

    def __deepcopy__(self, memo):
        return self


Commitment: TypeAlias = bytes
Nullifier: TypeAlias = bytes
MerkleRoot: TypeAlias = bytes


def encode_int(value: int, length: int = 32) -> bytes:
    return int.to_bytes(value, length=length, byteorder="big")


def encode_str(value: str) -> bytes:
    # length prefixed so that adjacent fields cannot be shifted into each other
    raw = value.encode("utf-8")
    return encode_int(len(raw), 4) + raw


@dataclass(frozen=True)
class Note:
    """
    The private opening of a commitment.

    Only the holder of a note knows its fields; the pool only ever sees the
    commitment (on deposit) and the nullifier (on spend).
    """

    value: int
    secret: int
    asset: str = "ETH"
    nonce: int = 0

    def __post_init__(self):
        assert 0 <= self.value <= 2**64

    def encode_secret(self) -> bytes:
        return encode_int(self.secret)

    def commitment(self) -> Hash:
        return Hash(
            b"PRIVACY_POOL_NOTE_CM",
            encode_int(self.value),
            encode_str(self.asset),
            encode_int(self.nonce),
            self.encode_secret(),
        )

    def nullifier(self) -> Hash:
        return Hash(b"PRIVACY_POOL_NOTE_NF", self.commitment(), self.encode_secret())

    def evolve(self, value: int | None = None, asset: str | None = None) -> "Note":
        """
        Derives the note that replaces this one after a shielded swap.
        The new nonce is bound to the spent note so that it is never reused.
        """
        nonce = Hash(b"PRIVACY_POOL_NOTE_EVOLVE", self.nullifier())
        return Note(
            value=self.value if value is None else value,
            secret=self.secret,
            asset=self.asset if asset is None else asset,
            nonce=int.from_bytes(nonce, byteorder="big"),
        )
