"""In-memory remediation queues.

Each queue is a named FIFO with per-key retry bookkeeping. Nothing is persisted;
the retry map is never pruned and grows with the number of distinct keys.
"""

from __future__ import annotations

import random
import string
import threading
from collections import deque
from typing import Deque, Dict, Optional

from ..models import QueueItem, RemediationEvent
from .scheduling import Clock, SystemClock


_ID_ALPHABET = string.digits + string.ascii_lowercase


def _random_suffix(length: int = 9) -> str:
    return "".join(random.choice(_ID_ALPHABET) for _ in range(length))


class RemediationQueue:
    def __init__(self, name: str, *, clock: Clock | None = None) -> None:
        self.name = name
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._items: Deque[QueueItem] = deque()
        self._processed = 0
        self._retries: Dict[str, int] = {}

    def __len__(self) -> int:
        return self.size()

    @property
    def processed(self) -> int:
        return self._processed

    def enqueue(self, payload: RemediationEvent) -> QueueItem:
        now = self._clock.now()
        item = QueueItem(
            id=f"{self.name}_{int(now.timestamp() * 1000)}_{_random_suffix()}",
            enqueued_at=now.isoformat(),
            payload=payload,
        )
        with self._lock:
            self._items.append(item)
        return item

    def dequeue(self) -> Optional[QueueItem]:
        with self._lock:
            if not self._items:
                return None
            item = self._items.popleft()
            self._processed += 1
            return item

    def peek(self) -> Optional[QueueItem]:
        with self._lock:
            return self._items[0] if self._items else None

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def retry(self, key: str, max_attempts: int = 3) -> bool:
        """Record one retry attempt for `key` if it is still under the cap.

        Returns False (and leaves the count alone) once `max_attempts` is reached.
        """
        with self._lock:
            current = self._retries.get(key, 0)
            if current < max_attempts:
                self._retries[key] = current + 1
                return True
            return False

    def get_retry_count(self, key: str) -> int:
        with self._lock:
            return self._retries.get(key, 0)

    def get_stats(self) -> dict[str, object]:
        with self._lock:
            return {
                "name": self.name,
                "pending": len(self._items),
                "processed": self._processed,
                "retryCount": len(self._retries),
            }

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._processed = 0
            self._retries.clear()
