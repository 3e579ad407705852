import random
import threading
from typing import Optional, Protocol


class RandomSource(Protocol):
    def uniform(self) -> float:
        """Return a float drawn uniformly from [0, 1)."""
        ...


class SystemRandomSource:
    """
    Uniform draws from a private ``random.Random`` instance.

    Pass a seed for reproducible assignment sequences. The generator is
    guarded by a lock since draws can come from several request threads.
    """

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)
        self._lock = threading.Lock()

    def uniform(self) -> float:
        with self._lock:
            return self._random.random()
