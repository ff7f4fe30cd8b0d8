"""
Two-step merge uploads.

Step one parks the first uploaded video under a single-use merge id.
Step two merges it with a second video and hands the result to the
stream registry. Pending merges expire after MERGE_EXPIRY_SECONDS.
"""

import asyncio
import os
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from cleanup import remove_file
from config import Settings
from errors import InvalidMergeId, MergeFailed
from ffmpeg_process import run_merge
from naming import generate_merge_id, generate_stream_id
from stream_registry import Session, StreamRegistry

logger = logging.getLogger(__name__)


@dataclass
class PendingMerge:
    """First half of a merge upload, waiting for its second video."""
    merge_id: str
    first_input_path: str
    created_at: float = field(default_factory=time.monotonic)
    expiry_handle: Optional[asyncio.TimerHandle] = None

    def is_expired(self, expiry_seconds: float) -> bool:
        return time.monotonic() - self.created_at >= expiry_seconds

    def cancel_expiry(self):
        if self.expiry_handle is not None:
            self.expiry_handle.cancel()
            self.expiry_handle = None


def _remove_inputs(*paths: str):
    for path in paths:
        remove_file(path)


class MergeCoordinator:
    """Holds pending merges and drives the merge-then-stream step."""

    def __init__(self, registry: StreamRegistry, settings: Settings):
        self.registry = registry
        self.settings = settings
        self.expiry_seconds = settings.MERGE_EXPIRY_SECONDS
        self.upload_dir = settings.UPLOAD_DIR
        self._pending: Dict[str, PendingMerge] = {}
        self._lock = asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __contains__(self, merge_id: str) -> bool:
        return merge_id in self._pending

    async def begin_merge(self, first_input_path: str) -> str:
        """Park the first video and return the merge id for step two."""
        loop = asyncio.get_running_loop()
        async with self._lock:
            self._purge_expired()

            merge_id = generate_merge_id()
            while merge_id in self._pending:
                merge_id = generate_merge_id()

            pending = PendingMerge(merge_id=merge_id, first_input_path=first_input_path)
            pending.expiry_handle = loop.call_later(
                self.expiry_seconds, self._expire, merge_id)
            self._pending[merge_id] = pending

        logger.info(
            f"Merge {merge_id} waiting for second upload (expires in {self.expiry_seconds:.0f}s)")
        return merge_id

    async def complete_merge(self, merge_id: str, second_input_path: str, stream_name: str) -> Session:
        """
        Merge the parked video with second_input_path and start streaming it.

        A registry slot is reserved before the merge id is consumed, so a
        CapacityExceeded leaves the id usable for a retry. After that the id
        is gone: a failed merge cannot be retried with it. Both raw inputs
        are deleted once the merge step has finished, whatever its outcome.
        """
        stream_id = generate_stream_id(stream_name)

        async with self._lock:
            self._purge_expired()
            pending = self._pending.get(merge_id)
            if pending is None:
                raise InvalidMergeId(f"Invalid merge id: {merge_id}")
            await self.registry.reserve(stream_id)
            # The expiry timer may have fired while waiting for the slot
            if self._pending.pop(merge_id, None) is None:
                self.registry.release(stream_id)
                raise InvalidMergeId(f"Invalid merge id: {merge_id}")
            pending.cancel_expiry()

        merged_path = os.path.join(self.upload_dir, f"{stream_id}_merged.mp4")
        logger.info(f"Merge {merge_id}: combining inputs into {merged_path}")
        try:
            try:
                merged = await run_merge(
                    self.settings, pending.first_input_path, second_input_path, merged_path)
            finally:
                await asyncio.to_thread(
                    _remove_inputs, pending.first_input_path, second_input_path)
            if not merged:
                raise MergeFailed(f"Merge {merge_id} failed")
        except BaseException:
            self.registry.release(stream_id)
            raise

        try:
            return await self.registry.start_session(stream_id, merged_path, reserved=True)
        except BaseException:
            await asyncio.to_thread(remove_file, merged_path)
            raise

    def _purge_expired(self):
        for merge_id in [m for m, p in self._pending.items()
                         if p.is_expired(self.expiry_seconds)]:
            self._expire(merge_id)

    def _expire(self, merge_id: str):
        # Runs on the event loop with no await in between, so it cannot
        # interleave with a lock holder's check-then-delete.
        pending = self._pending.pop(merge_id, None)
        if pending is None:
            return
        pending.cancel_expiry()
        logger.info(f"Pending merge {merge_id} expired, discarding first upload")

        task = asyncio.get_running_loop().create_task(
            asyncio.to_thread(remove_file, pending.first_input_path))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def clear(self):
        """
        Cancel expiry timers and forget every pending merge.

        Staged first inputs stay on disk; the global cleanup's directory
        wipe removes and counts them.
        """
        async with self._lock:
            for pending in self._pending.values():
                pending.cancel_expiry()
            self._pending.clear()

    async def shutdown(self):
        """Cancel expiry timers and delete staged first uploads."""
        async with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for p in pending:
            p.cancel_expiry()
        await asyncio.to_thread(
            _remove_inputs, *(p.first_input_path for p in pending))
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
