from dataclasses import dataclass, field
from typing import Iterable

from privacypool.crypto import Nullifier
from privacypool.errors import DoubleSpend


@dataclass
class NullifierRegistry:
    """
    The set of spent nullifiers. Entries are permanent.

    The registry itself does not synchronise; callers must hold the pool's
    exclusive section around `spend` so that the check and the insert are a
    single step relative to every other transition.
    """

    spent: set[bytes] = field(default_factory=set)

    def is_spent(self, nullifier: Nullifier) -> bool:
        return nullifier in self.spent

    def spend(self, nullifier: Nullifier):
        if nullifier in self.spent:
            raise DoubleSpend(nullifier)
        self.spent.add(nullifier)

    def spend_all(self, nullifiers: Iterable[Nullifier]):
        """
        Records every nullifier or none of them.
        """
        staged = set()
        for nf in nullifiers:
            if nf in self.spent or nf in staged:
                raise DoubleSpend(nf)
            staged.add(nf)
        self.spent |= staged

    def copy(self) -> "NullifierRegistry":
        return NullifierRegistry(spent=set(self.spent))

    def __contains__(self, nullifier: Nullifier) -> bool:
        return self.is_spent(nullifier)

    def __len__(self) -> int:
        return len(self.spent)
