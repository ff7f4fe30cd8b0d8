"""
Stream registry for loop-streamer.

The registry is the single source of truth for which loop streams are
active. It owns every Session, enforces the concurrent stream cap, and
reconciles transcoder exits reported by TranscoderProcess through its
exit queue.
"""

import asyncio
import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import httpx

from cleanup import reap_session, remove_output_dir
from config import Settings, VERSION
from errors import CapacityExceeded, StreamNotFound
from ffmpeg_process import (
    PLAYLIST_NAME,
    ProcessExit,
    TranscoderProcess,
    build_stream_command,
)

logger = logging.getLogger(__name__)


def playlist_url(stream_id: str) -> str:
    """Public URL of a stream's playlist under the static /output mount."""
    return f"/output/{stream_id}/{PLAYLIST_NAME}"


@dataclass
class Session:
    """One running loop stream: a transcoder process and its output directory."""
    stream_id: str
    process: TranscoderProcess
    output_path: str
    input_path: str
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc))

    @property
    def playlist_path(self) -> str:
        return os.path.join(self.output_path, PLAYLIST_NAME)

    @property
    def playlist_url(self) -> str:
        return playlist_url(self.stream_id)

    @property
    def is_alive(self) -> bool:
        return self.process.is_alive

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()


def _scan_output(output_path: str) -> dict:
    """Segment inventory of a stream output directory."""
    segments: List[str] = []
    playlist_exists = False
    try:
        for filename in os.listdir(output_path):
            if filename == PLAYLIST_NAME:
                playlist_exists = True
            elif filename.startswith("segment_") and filename.endswith(".ts"):
                segments.append(filename)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to list output directory {output_path}: {e}")

    segments.sort()
    return {
        "playlist_exists": playlist_exists,
        "segments": segments,
        "segment_count": len(segments),
    }


class StreamRegistry:
    """
    Tracks active loop streams.

    Coordinates:
    - Capacity-limited session setup (all-or-nothing)
    - Stopping one or all streams with graceful termination
    - Removal of sessions whose transcoder exited on its own
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.max_streams = settings.MAX_CONCURRENT_STREAMS
        self.output_root = settings.OUTPUT_DIR
        self._sessions: Dict[str, Session] = {}
        # Stream ids whose setup is in progress; they count against capacity
        self._reserved: Set[str] = set()
        self._lock = asyncio.Lock()
        self._exit_events: "asyncio.Queue[ProcessExit]" = asyncio.Queue()
        self._exit_task: Optional[asyncio.Task] = None

        os.makedirs(self.output_root, exist_ok=True)
        logger.info(
            f"StreamRegistry initialized with output root: {self.output_root} "
            f"(max {self.max_streams} streams)")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._sessions

    async def start(self):
        """Start consuming transcoder exit notifications."""
        if self._exit_task is None:
            self._exit_task = asyncio.create_task(self._exit_watch_loop())

    def has_capacity(self) -> bool:
        return len(self._sessions) + len(self._reserved) < self.max_streams

    def _check_capacity(self, stream_id: Optional[str] = None):
        # Must be called with self._lock held
        in_use = len(self._sessions) + len(self._reserved - {stream_id})
        if in_use >= self.max_streams:
            raise CapacityExceeded(
                f"Maximum of {self.max_streams} concurrent streams reached")

    async def register(self, stream_id: str, process: TranscoderProcess,
                       output_path: str, input_path: str) -> Session:
        """Record a running session. Raises CapacityExceeded when full."""
        async with self._lock:
            if stream_id in self._sessions:
                raise ValueError(f"Stream {stream_id} is already registered")
            self._check_capacity(stream_id)

            session = Session(
                stream_id=stream_id,
                process=process,
                output_path=output_path,
                input_path=input_path,
            )
            self._sessions[stream_id] = session
            self._reserved.discard(stream_id)

        logger.info(
            f"Registered stream {stream_id} ({len(self._sessions)}/{self.max_streams})")
        return session

    async def reserve(self, stream_id: str):
        """Hold a capacity slot for a session that will be started later."""
        async with self._lock:
            if stream_id in self._sessions or stream_id in self._reserved:
                raise ValueError(f"Stream {stream_id} is already registered")
            self._check_capacity()
            self._reserved.add(stream_id)

    def release(self, stream_id: str):
        """Give back a slot taken by reserve(). No-op if none is held."""
        self._reserved.discard(stream_id)

    async def start_session(self, stream_id: str, input_path: str,
                            reserved: bool = False) -> Session:
        """
        Create the output directory, spawn the transcoder and register it.

        Either all of it happens or none of it: on any failure, cancellation
        included, the slot is released, a spawned process is killed and the
        directory removed. Pass reserved=True when reserve() already holds
        the slot.
        """
        if not reserved:
            await self.reserve(stream_id)

        output_path = os.path.join(self.output_root, stream_id)
        process: Optional[TranscoderProcess] = None
        try:
            await asyncio.to_thread(os.makedirs, output_path, exist_ok=True)

            process = TranscoderProcess(
                stream_id,
                build_stream_command(self.settings, input_path, output_path),
                self._exit_events,
                grace_period=self.settings.STOP_GRACE_PERIOD,
                niceness=self.settings.PROCESS_NICENESS,
            )
            await process.start()
            return await self.register(stream_id, process, output_path, input_path)
        except BaseException:
            # Synchronous so a second cancellation cannot interrupt it; a
            # killed process is swept again by the exit handler.
            self.release(stream_id)
            if process is not None:
                process.kill()
            await asyncio.to_thread(remove_output_dir, output_path)
            raise

    async def unregister(self, stream_id: str, pid: Optional[int] = None) -> Optional[Session]:
        """
        Remove a session, stop its transcoder if still running and reap its files.

        With pid given, only a session owned by that process is removed.
        No-op for unknown ids.
        """
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is None or (pid is not None and session.process.pid != pid):
                return None
            del self._sessions[stream_id]

        if session.is_alive:
            session.process.stop()
        await reap_session(session, delete_input=self.settings.DELETE_INPUT_ON_STOP)
        logger.info(f"Unregistered stream {stream_id}")
        return session

    def get(self, stream_id: str) -> Session:
        session = self._sessions.get(stream_id)
        if session is None:
            raise StreamNotFound(f"Stream {stream_id} not found")
        return session

    def list_active(self) -> Dict[str, str]:
        """Map of stream id to playlist URL for streams whose transcoder is alive."""
        return {
            stream_id: session.playlist_url
            for stream_id, session in self._sessions.items()
            if session.is_alive
        }

    async def session_info(self, stream_id: str) -> dict:
        """Status, process and output inventory of one stream."""
        session = self.get(stream_id)
        inventory = await asyncio.to_thread(_scan_output, session.output_path)
        usage = await asyncio.to_thread(session.process.resource_usage)

        return {
            "stream_id": stream_id,
            "status": session.process.status,
            "is_alive": session.is_alive,
            "pid": session.process.pid,
            "started_at": session.started_at.isoformat(),
            "uptime_seconds": round(session.uptime_seconds, 1),
            "input_path": session.input_path,
            "output_path": session.output_path,
            "playlist_url": session.playlist_url,
            "process_usage": usage,
            **inventory,
        }

    async def stop_one(self, stream_id: str) -> Session:
        """
        Stop a stream and delete its output.

        Returns once termination has been requested; the SIGKILL escalation
        runs in the background.
        """
        async with self._lock:
            session = self._sessions.pop(stream_id, None)

        if session is None:
            raise StreamNotFound(f"Stream {stream_id} not found")

        session.process.stop()
        await reap_session(session, delete_input=self.settings.DELETE_INPUT_ON_STOP)
        logger.info(f"Stopped stream {stream_id}")
        return session

    async def _detach_all(self) -> List[Session]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions

    async def stop_all(self) -> List[str]:
        """Stop every registered stream. Returns the stopped stream ids."""
        sessions = await self._detach_all()
        for session in sessions:
            session.process.stop()
        await asyncio.gather(*(
            reap_session(s, delete_input=self.settings.DELETE_INPUT_ON_STOP)
            for s in sessions
        ))
        stopped = [s.stream_id for s in sessions]
        logger.info(f"Stopped {len(stopped)} streams")
        return stopped

    async def kill_all(self) -> List[str]:
        """Kill every registered stream immediately, without a grace period."""
        sessions = await self._detach_all()
        for session in sessions:
            session.process.kill()
        await asyncio.gather(*(
            reap_session(s, delete_input=self.settings.DELETE_INPUT_ON_STOP)
            for s in sessions
        ))
        return [s.stream_id for s in sessions]

    async def _exit_watch_loop(self):
        while True:
            try:
                event = await self._exit_events.get()
                await self._handle_exit(event)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error handling transcoder exit: {e}")

    async def _handle_exit(self, event: ProcessExit):
        session = await self.unregister(event.stream_id, pid=event.pid)

        if session is None:
            # Already detached by a stop; sweep anything written after the reap
            await asyncio.to_thread(
                remove_output_dir, os.path.join(self.output_root, event.stream_id))
            return

        logger.warning(
            f"Stream {event.stream_id} ended (exit code {event.returncode}), removed")

        if not event.stopped:
            await self._send_callback("stream_ended", session, {
                "exit_code": event.returncode,
                "uptime_seconds": session.uptime_seconds,
            })

    async def _send_callback(self, event: str, session: Session, data: dict):
        """Send webhook callback for a stream event."""
        url = self.settings.STREAM_CALLBACK_URL
        if not url:
            return

        payload = {
            "stream_id": session.stream_id,
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data
        }

        try:
            async with httpx.AsyncClient(timeout=self.settings.STREAM_CALLBACK_TIMEOUT) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"User-Agent": f"loop-streamer/{VERSION}"}
                )
                if response.status_code >= 400:
                    logger.warning(
                        f"Callback to {url} failed with status {response.status_code}")
                else:
                    logger.info(
                        f"Callback sent for stream {session.stream_id}: {event}")
        except httpx.HTTPError as e:
            logger.error(
                f"Error sending callback for stream {session.stream_id}: {e}")

    async def shutdown(self):
        """Stop all streams and wait (bounded) for their transcoders to exit."""
        logger.info("Shutting down StreamRegistry...")
        sessions = await self._detach_all()
        for session in sessions:
            session.process.stop()

        if sessions:
            waiters = [asyncio.create_task(s.process.wait()) for s in sessions]
            await asyncio.wait(waiters, timeout=self.settings.STOP_GRACE_PERIOD + 1)
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*(
                reap_session(s, delete_input=self.settings.DELETE_INPUT_ON_STOP)
                for s in sessions
            ))

        if self._exit_task:
            self._exit_task.cancel()
            try:
                await self._exit_task
            except asyncio.CancelledError:
                pass
            self._exit_task = None
        logger.info("StreamRegistry shutdown complete")
