import random
from typing import List


class FisherYates:
    @staticmethod
    def shuffle(elements: List, seed: bytes) -> List:
        """
        Fisher-Yates shuffling algorithm.
        In Python, random.shuffle implements the Fisher-Yates shuffling.
        https://en.wikipedia.org/wiki/Fisher%E2%80%93Yates_shuffle

        A private generator is seeded so that the global `random` state is
        neither read nor disturbed.
        :param elements: elements to be shuffled
        :param seed: a seed for deterministic sampling
        """
        rng = random.Random(seed)
        out = list(elements)
        rng.shuffle(out)
        return out
