from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Event, Lock, Thread
from typing import Any

_STOP = object()


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class UsageAuditLogger:
    """Appends ledger events (usage, upgrades, payments) to a JSONL file.

    Writes happen on a background thread; when the queue is full new events
    are dropped and counted, and the count is written out on shutdown.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._queue: Queue[Any] = Queue(maxsize=max(1, max_queue_size))
        self._dropped = 0
        self._dropped_lock = Lock()
        self._stopped = Event()
        self._worker: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._worker = Thread(
                target=self._run, name="quadra-usage-audit", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled or self._stopped.is_set():
            return
        try:
            self._queue.put_nowait({"ts": int(time.time()), **event})
        except Full:
            with self._dropped_lock:
                self._dropped += 1

    def close(self, timeout_seconds: float = 2.0) -> None:
        if self._worker is None or self._stopped.is_set():
            return
        self._stopped.set()
        self._queue.put(_STOP)
        self._worker.join(timeout=timeout_seconds)

    def _run(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                try:
                    item = self._queue.get(timeout=0.5)
                except Empty:
                    continue
                if item is _STOP:
                    break
                handle.write(_encode(item) + "\n")
                handle.flush()

            dropped = self.dropped_records
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "usage_audit_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()
