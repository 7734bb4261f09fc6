"""
Thread-safe durable FIFO of linking requests.
One lock guards the in-memory deque; every mutation rewrites the snapshot
file before returning.
"""

import logging
import threading
from collections import deque
from typing import Deque, List, Optional

from core.models import LinkingRequest
from core.state import QueueStore

log = logging.getLogger(__name__)


class RequestQueue:
    def __init__(self, store: QueueStore):
        self._store = store
        self._lock = threading.Lock()
        self._items: Deque[LinkingRequest] = deque(store.load())

    def _persist(self) -> None:
        # caller holds the lock
        self._store.persist(self._items)

    def enqueue(self, request: LinkingRequest) -> None:
        with self._lock:
            self._items.append(request)
            self._persist()
        log.info("enqueued request %s for %s", request.id, request.subject_label)

    def dequeue(self) -> Optional[LinkingRequest]:
        with self._lock:
            if not self._items:
                return None
            request = self._items.popleft()
            self._persist()
        log.info("dequeued request %s for %s", request.id, request.subject_label)
        return request

    def peek(self) -> Optional[LinkingRequest]:
        with self._lock:
            return self._items[0] if self._items else None

    def list_all(self) -> List[LinkingRequest]:
        with self._lock:
            return list(self._items)

    def remove_by_id(self, request_id: str) -> Optional[LinkingRequest]:
        with self._lock:
            for idx, request in enumerate(self._items):
                if request.id == request_id:
                    del self._items[idx]
                    self._persist()
                    break
            else:
                return None
        log.info("removed request %s for %s", request.id, request.subject_label)
        return request

    def position(self, request_id: str) -> Optional[int]:
        with self._lock:
            for idx, request in enumerate(self._items, start=1):
                if request.id == request_id:
                    return idx
        return None

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def __len__(self) -> int:
        return self.size()

    def is_empty(self) -> bool:
        return self.size() == 0

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._persist()
        log.info("cleared all requests from queue")
