from __future__ import annotations

import random
import threading
from typing import Iterable, Optional, Sequence, Tuple


class AtomicCounter:
    """Thread-safe monotonically increasing counter."""

    def __init__(self, start: int = 0) -> None:
        self._lock = threading.Lock()
        self._value = start

    def next(self) -> int:
        """Increment and return the value held before the increment."""
        with self._lock:
            value = self._value
            self._value += 1
            return value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


def _clean(items: Iterable[str]) -> Tuple[str, ...]:
    return tuple(s.strip() for s in items if s and s.strip())


class ProxyRotator:
    """Memoryless uniform-random pick over a fixed proxy pool."""

    def __init__(self, proxies: Sequence[str] = (), rng: Optional[random.Random] = None) -> None:
        self._proxies = _clean(proxies)
        self._rng = rng or random.Random()

    def pick(self) -> Optional[str]:
        if not self._proxies:
            return None
        return self._rng.choice(self._proxies)

    def __len__(self) -> int:
        return len(self._proxies)


class KeyRotator:
    """Round-robin over a fixed credential pool.

    The cursor is an injected AtomicCounter so that callers sharing one
    rotator are spread evenly across keys; the order seen by any two
    concurrent callers is not defined."""

    def __init__(self, keys: Sequence[str] = (), counter: Optional[AtomicCounter] = None) -> None:
        self._keys = _clean(keys)
        self._counter = counter or AtomicCounter()

    @property
    def configured(self) -> bool:
        return bool(self._keys)

    def next_key(self) -> Optional[str]:
        """Return the next key, or None when the pool is empty."""
        if not self._keys:
            return None
        return self._keys[self._counter.next() % len(self._keys)]

    def __len__(self) -> int:
        return len(self._keys)
