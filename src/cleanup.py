"""
Filesystem cleanup for stream sessions.

Per-session reaping is best effort: failures are logged and never raised,
so that tearing a session down always completes.
"""

import asyncio
import os
import shutil
import logging
from dataclasses import dataclass, asdict
from typing import Optional, Tuple

from config import Settings

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    """Result of a global cleanup."""
    streams_stopped: int = 0
    files_removed: int = 0
    directories_removed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def remove_output_dir(path: str) -> bool:
    """Recursively delete a stream output directory. Returns False on failure."""
    if not path or not os.path.exists(path):
        return True
    try:
        shutil.rmtree(path)
        logger.info(f"Removed output directory: {path}")
        return True
    except OSError as e:
        logger.warning(f"Failed to remove output directory {path}: {e}")
        return False


def remove_file(path: Optional[str]) -> bool:
    """Delete a single file if it exists. Returns False on failure."""
    if not path or not os.path.exists(path):
        return True
    try:
        os.remove(path)
        logger.info(f"Removed file: {path}")
        return True
    except OSError as e:
        logger.warning(f"Failed to remove file {path}: {e}")
        return False


def _reap_paths(output_path: str, input_path: Optional[str]):
    remove_output_dir(output_path)
    if input_path:
        remove_file(input_path)


async def reap_session(session, delete_input: bool = True):
    """Remove a session's output directory and, per policy, its input file."""
    await asyncio.to_thread(
        _reap_paths,
        session.output_path,
        session.input_path if delete_input else None,
    )


def _wipe_directories(upload_dir: str, output_dir: str) -> Tuple[int, int]:
    files_removed = 0
    directories_removed = 0

    if os.path.isdir(upload_dir):
        for entry in os.scandir(upload_dir):
            if entry.is_file(follow_symlinks=False) or entry.is_symlink():
                if remove_file(entry.path):
                    files_removed += 1

    if os.path.isdir(output_dir):
        for entry in os.scandir(output_dir):
            if entry.is_dir(follow_symlinks=False):
                if remove_output_dir(entry.path):
                    directories_removed += 1

    return files_removed, directories_removed


async def reap_all(registry, merges, settings: Settings) -> CleanupReport:
    """
    Administrative wipe of everything the service has written.

    Kills every registered stream without a grace period, drops all pending
    merges, then deletes every file directly under the upload directory and
    every directory directly under the output root. This is NOT limited to
    tracked sessions: anything left behind by earlier runs is removed too.
    """
    logger.warning("Global cleanup requested: stopping all streams and wiping storage")

    stopped = await registry.kill_all()
    await merges.clear()

    files_removed, directories_removed = await asyncio.to_thread(
        _wipe_directories, settings.UPLOAD_DIR, settings.OUTPUT_DIR)

    report = CleanupReport(
        streams_stopped=len(stopped),
        files_removed=files_removed,
        directories_removed=directories_removed,
    )
    logger.info(f"Global cleanup complete: {report}")
    return report
