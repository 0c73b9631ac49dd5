import logging
import os
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:8000/api/log-request"
FLUSH_INTERVAL_SECONDS = 60.0


class PrivacyLevel(IntEnum):
    P1 = 1  # Client IP address stored, location inferred and stored
    P2 = 2  # Location inferred and stored, client IP address discarded
    P3 = 3  # Client IP address never sent; user_id is the only identification


@dataclass
class Config:
    """Configuration for one analytics client."""
    api_key: str
    framework: str
    privacy_level: PrivacyLevel = PrivacyLevel.P1
    endpoint: str = field(default_factory=lambda: os.getenv("APILOG_ENDPOINT", DEFAULT_ENDPOINT))
    flush_interval: float = FLUSH_INTERVAL_SECONDS
    timeout: float = 5.0


def _post_batch(endpoint: str, payload: dict[str, Any], timeout: float) -> None:
    """
    Sends one batch of logged requests to the collector.

    Failures are logged and dropped: telemetry must never affect the host
    application, and there is no retry.
    """
    try:
        response = requests.post(endpoint, json=payload, timeout=timeout)
        response.raise_for_status()
        logger.debug(
            f"Sent {len(payload['requests'])} requests to {endpoint}"
        )
    except requests.RequestException as e:
        logger.error(
            f"Failed to send {len(payload['requests'])} requests to {endpoint} - {e}"
        )


class Analytics:
    """
    Buffers logged requests and flushes them to the collector in batches.

    ``capture`` only appends to an in-memory buffer. Once more than
    ``flush_interval`` seconds have passed since the last flush, the whole
    buffer is handed to a single background worker as one batch. Delivery is
    best effort: a failed batch is lost.
    """

    def __init__(
        self,
        api_key: str,
        framework: str,
        privacy_level: PrivacyLevel = PrivacyLevel.P1,
        *,
        endpoint: str | None = None,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
        send: Callable[[str, dict[str, Any], float], None] = _post_batch,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = Config(
            api_key=api_key,
            framework=framework,
            privacy_level=PrivacyLevel(privacy_level),
            flush_interval=flush_interval,
        )
        if endpoint is not None:
            self.config.endpoint = endpoint
        self._send = send
        self._clock = clock
        self._lock = threading.Lock()
        self._buffer: list[dict[str, Any]] = []
        self._last_flushed = clock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="apilog-flush")

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def capture(self, request_data: dict[str, Any]) -> Future | None:
        """Buffer one logged request, flushing if the interval has elapsed.

        Returns the flush task when this call triggered one.
        """
        if not self.config.api_key:
            return None

        with self._lock:
            self._buffer.append(request_data)
            now = self._clock()
            if now - self._last_flushed <= self.config.flush_interval:
                return None
            batch = self._take_locked(now)
        return self._submit(batch)

    def flush(self) -> Future | None:
        """Send whatever is buffered now, regardless of the interval."""
        with self._lock:
            if not self._buffer:
                return None
            batch = self._take_locked(self._clock())
        return self._submit(batch)

    def close(self, flush: bool = True) -> None:
        """Stop the background worker, optionally sending the remaining buffer first."""
        if flush and self.config.api_key:
            self.flush()
        self._executor.shutdown(wait=True)

    def _take_locked(self, now: float) -> list[dict[str, Any]]:
        batch = self._buffer
        self._buffer = []
        self._last_flushed = now
        return batch

    def _submit(self, batch: list[dict[str, Any]]) -> Future | None:
        payload = {
            "api_key": self.config.api_key,
            "requests": batch,
            "framework": self.config.framework,
            "privacy_level": int(self.config.privacy_level),
        }
        try:
            return self._executor.submit(
                self._send, self.config.endpoint, payload, self.config.timeout
            )
        except RuntimeError:
            # Executor already shut down
            logger.warning(f"Analytics client closed, dropping {len(batch)} requests")
            return None
