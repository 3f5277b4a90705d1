"""Best-effort download accounting.

Reads never wait on, or fail because of, the counter update: keys are
queued and a background thread applies them to the metadata store.
"""

import logging
import queue
import threading
from datetime import datetime

from keystash.errors import NotFoundError
from keystash.metadata import MetadataDB, utcnow

log = logging.getLogger("keystash.accounting")

_STOP = object()


class AccessAccountant:
    def __init__(self, metadata: MetadataDB) -> None:
        self.metadata = metadata
        self._queue: queue.Queue = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._worker = threading.Thread(
            target=self._run, name="keystash-accounting", daemon=True
        )
        self._worker.start()

    def record_access(self, key: str) -> None:
        with self._lock:
            if self._closed:
                log.warning("accountant closed, dropping access for key=%s", key)
                return
            # Timestamp at read time, not at apply time.
            self._queue.put((key, utcnow()))

    def drain(self) -> None:
        """Block until every queued access has been applied (or dropped)."""
        self._queue.join()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)
        self._worker.join()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                key, when = item
                self._apply(key, when)
            finally:
                self._queue.task_done()

    def _apply(self, key: str, when: datetime) -> None:
        try:
            self.metadata.increment_access(key, when)
        except NotFoundError:
            log.debug("access for key=%s dropped, entry no longer exists", key)
        except Exception:
            log.warning("failed to record access for key=%s", key, exc_info=True)
