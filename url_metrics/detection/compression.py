"""Debounced gzip compression of the in-progress URL Metric."""

from __future__ import annotations

import asyncio
import gzip
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

COMPRESSION_DEBOUNCE_DELAY = 1.0  # seconds


def compress_json(json_text: str) -> bytes:
    """Gzip a JSON string. mtime is pinned so equal input gives equal bytes."""
    return gzip.compress(json_text.encode("utf-8"), mtime=0)


def decompress_json(data: bytes) -> str:
    return gzip.decompress(data).decode("utf-8")


class CompressionPipeline:
    """Keeps a compressed copy of the record roughly up to date.

    Each schedule() cancels the pending run and starts a new one after the
    debounce delay. The last finished payload may lag the record, so callers
    must go through payload_for_submission() at send time.
    """

    def __init__(
        self,
        serialize: Callable[[], str],
        enabled: bool = True,
        debounce_delay: float = COMPRESSION_DEBOUNCE_DELAY,
        idle: Optional[Callable[[], Awaitable[None]]] = None,
        compress: Callable[[str], bytes] = compress_json,
    ):
        self._serialize = serialize
        self.enabled = enabled
        self.debounce_delay = debounce_delay
        self._idle = idle
        self._compress = compress
        self.compressed_payload: Optional[bytes] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        if not self.enabled:
            return
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def disable(self, reason: str) -> None:
        if self.enabled:
            logger.warning("[URL Metrics] URL Metric compression is disabled: %s", reason)
        self.enabled = False
        self.cancel()

    async def wait(self) -> None:
        """Wait for the pending compression, if any, to finish."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def _run(self) -> None:
        await asyncio.sleep(self.debounce_delay)
        if self._idle is not None:
            await self._idle()
        try:
            self.compressed_payload = self._compress(self._serialize())
        except Exception as e:
            logger.error(
                "[URL Metrics] Failed to compress URL Metric, falling back to "
                "sending uncompressed data: %s", e,
            )
            self.enabled = False

    def payload_for_submission(self, json_body: str) -> tuple[bytes, bool]:
        """Return (body, is_gzipped) for the final request."""
        if self.enabled and self.compressed_payload is not None:
            return self.compressed_payload, True
        return json_body.encode("utf-8"), False
