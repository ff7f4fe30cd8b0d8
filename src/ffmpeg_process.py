"""
FFmpeg process supervision for loop-streamer.

Wraps the external transcoder with:
- Looping HLS command construction (index.m3u8 + segment_%05d.ts)
- Fire-and-forget spawn with lowered scheduling priority
- Graceful stop with a cancelable SIGKILL escalation timer
- Exit notifications delivered to the owner through a queue
- The blocking two-input merge step used by merge uploads
"""

import asyncio
import os
import logging
from dataclasses import dataclass
from typing import List, Optional

import psutil

from config import Settings
from errors import SpawnFailed

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "segment_%05d.ts"

# Patterns to skip in FFmpeg output (verbose/noisy messages)
SKIP_LOG_PATTERNS = [
    'frame=',           # Progress output
    'fps=',             # FPS stats
    'time=',            # Time stats
    'bitrate=',         # Bitrate stats
    'speed=',           # Speed stats
    'size=',            # Size stats
    'muxing overhead',  # Summary stats
    'video:',           # Summary stats
    'audio:',           # Summary stats
]

CHUNK_SIZE = 4096
MAX_BUFFER = 1024 * 1024


@dataclass
class ProcessExit:
    """Message sent to the owner of a TranscoderProcess when it exits."""
    stream_id: str
    pid: Optional[int]
    returncode: Optional[int]
    stopped: bool


def build_stream_command(settings: Settings, input_path: str, output_dir: str) -> List[str]:
    """Build the FFmpeg command that loops input_path forever into an HLS playlist."""
    cmd = [settings.FFMPEG_BINARY, "-y"]

    # Loop the input indefinitely
    cmd.extend(["-stream_loop", "-1", "-i", input_path])

    cmd.extend([
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-tune", "zerolatency",
        "-g", "48",
        "-c:a", "aac",
        "-b:a", "96k",
    ])

    # HLS output configuration; old segments are pruned by ffmpeg itself
    cmd.extend(["-f", "hls"])
    cmd.extend(["-hls_time", str(settings.HLS_TIME)])
    cmd.extend(["-hls_list_size", str(settings.HLS_LIST_SIZE)])
    cmd.extend(["-hls_flags", "delete_segments+append_list"])
    cmd.extend(["-hls_segment_filename",
                os.path.join(output_dir, SEGMENT_PATTERN)])

    cmd.append(os.path.join(output_dir, PLAYLIST_NAME))
    return cmd


def build_merge_command(settings: Settings, first_input: str, second_input: str, output_path: str) -> List[str]:
    """Build the FFmpeg command that re-encodes two inputs into one sequential video."""
    w = settings.MERGE_OUTPUT_WIDTH
    h = settings.MERGE_OUTPUT_HEIGHT
    fit = (f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
           f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1")
    filter_complex = (
        f"[0:v]{fit}[v0];"
        f"[1:v]{fit}[v1];"
        "[v0][0:a][v1][1:a]concat=n=2:v=1:a=1[outv][outa]"
    )

    return [
        settings.FFMPEG_BINARY, "-y",
        "-i", first_input,
        "-i", second_input,
        "-filter_complex", filter_complex,
        "-map", "[outv]",
        "-map", "[outa]",
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", "128k",
        "-movflags", "+faststart",
        # Explicit muxer: the temporary output name does not end in .mp4
        "-f", "mp4",
        output_path,
    ]


async def _log_output(stream: Optional[asyncio.StreamReader], label: str):
    """
    Drain one of the transcoder's output pipes into the log.

    Reads fixed-size chunks and splits lines ourselves so that very long
    lines without a newline never raise LimitOverrunError. Lines are only
    logged, never interpreted.
    """
    if stream is None:
        return

    buf = b""
    try:
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break

            buf += chunk
            while b"\n" in buf:
                line, buf = buf.split(b"\n", 1)
                line_str = line.decode('utf-8', errors='ignore').strip()
                if not line_str:
                    continue

                line_lower = line_str.lower()
                if any(pattern in line_lower for pattern in SKIP_LOG_PATTERNS):
                    continue

                if 'error' in line_lower or 'warning' in line_lower or 'failed' in line_lower:
                    logger.warning(f"{label}: {line_str}")
                else:
                    logger.debug(f"{label}: {line_str}")

            if len(buf) > MAX_BUFFER:
                logger.warning(
                    f"{label}: output line exceeded {MAX_BUFFER} bytes, truncating")
                buf = b""

    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Error reading FFmpeg output for {label}: {e}")


class TranscoderProcess:
    """
    Supervises a single looping FFmpeg process for one stream.

    State transitions: starting -> running -> stopping -> exited/killed.
    The process is never restarted; when it exits a ProcessExit message is
    put on exit_events so the owner can reconcile its own state.
    """

    def __init__(
        self,
        stream_id: str,
        command: List[str],
        exit_events: "asyncio.Queue[ProcessExit]",
        grace_period: float = 5.0,
        niceness: Optional[int] = None,
    ):
        self.stream_id = stream_id
        self.command = command
        self.grace_period = grace_period
        self.niceness = niceness
        self.process: Optional[asyncio.subprocess.Process] = None
        self.status = "starting"
        self._exit_events = exit_events
        self._stop_requested = False
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: List[asyncio.Task] = []
        # Kept for the process lifetime so cpu_percent() measures between calls
        self._ps_process: Optional[psutil.Process] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def is_alive(self) -> bool:
        """True from a successful spawn until the process exit has been observed."""
        return self.process is not None and self.process.returncode is None

    async def start(self):
        """Spawn the transcoder. Returns as soon as the process exists."""
        logger.info(
            f"Starting transcoder for {self.stream_id}: {' '.join(self.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self.status = "failed"
            logger.error(
                f"Failed to start transcoder for {self.stream_id}: {e}")
            raise SpawnFailed(str(e)) from e

        self.status = "running"
        self._attach_usage_handle()
        self._lower_priority()

        label = f"FFmpeg [{self.stream_id}]"
        self._tasks = [
            asyncio.create_task(_log_output(self.process.stdout, label)),
            asyncio.create_task(_log_output(self.process.stderr, label)),
            asyncio.create_task(self._monitor_process()),
        ]
        logger.info(
            f"Transcoder for {self.stream_id} started with PID {self.process.pid}")

    def _attach_usage_handle(self):
        try:
            self._ps_process = psutil.Process(self.process.pid)
            # The first cpu_percent() call only primes the counter
            self._ps_process.cpu_percent(interval=None)
        except (psutil.Error, OSError) as e:
            self._ps_process = None
            logger.debug(
                f"Could not attach to transcoder {self.process.pid}: {e}")

    def _lower_priority(self):
        if self.niceness is None or self._ps_process is None:
            return
        try:
            self._ps_process.nice(self.niceness)
        except (psutil.Error, OSError) as e:
            logger.debug(
                f"Could not renice transcoder {self.process.pid}: {e}")

    def resource_usage(self) -> Optional[dict]:
        """CPU and memory of the running transcoder, or None once it has exited."""
        if self._ps_process is None or not self.is_alive:
            return None
        try:
            with self._ps_process.oneshot():
                return {
                    "cpu_percent": self._ps_process.cpu_percent(interval=None),
                    "memory_mb": round(
                        self._ps_process.memory_info().rss / (1024 * 1024), 1),
                    "nice": self._ps_process.nice(),
                }
        except (psutil.Error, OSError):
            return None

    def stop(self):
        """
        Request a graceful stop.

        Sends SIGTERM and schedules SIGKILL after the grace period. Does not
        wait for the process to exit. Calling it again is a no-op.
        """
        if not self.is_alive or self._stop_requested:
            return

        self._stop_requested = True
        self.status = "stopping"
        try:
            self.process.terminate()
        except ProcessLookupError:
            return  # Process already dead

        loop = asyncio.get_running_loop()
        self._kill_timer = loop.call_later(self.grace_period, self._force_kill)

    def kill(self):
        """Forceful stop with no grace period. Idempotent."""
        self._cancel_kill_timer()
        if not self.is_alive:
            return

        self._stop_requested = True
        try:
            self.process.kill()
        except ProcessLookupError:
            return
        self.status = "killed"

    def _force_kill(self):
        self._kill_timer = None
        if not self.is_alive:
            return
        logger.warning(
            f"Transcoder for {self.stream_id} did not terminate within {self.grace_period}s, killing")
        try:
            self.process.kill()
        except ProcessLookupError:
            return
        self.status = "killed"

    def _cancel_kill_timer(self):
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its exit code."""
        if not self.process:
            return None
        return await self.process.wait()

    async def _monitor_process(self):
        """Wait for exit, cancel the escalation timer and notify the owner."""
        try:
            returncode = await self.process.wait()
        except asyncio.CancelledError:
            return

        self._cancel_kill_timer()
        if self.status != "killed":
            self.status = "exited"

        if self._stop_requested:
            logger.info(
                f"Transcoder for {self.stream_id} stopped (exit code {returncode})")
        else:
            logger.warning(
                f"Transcoder for {self.stream_id} exited unexpectedly with code {returncode}")

        await self._exit_events.put(ProcessExit(
            stream_id=self.stream_id,
            pid=self.process.pid,
            returncode=returncode,
            stopped=self._stop_requested,
        ))


def _finalize_merge_output(partial_path: str, output_path: str, returncode: Optional[int]) -> bool:
    produced = os.path.isfile(partial_path) and os.path.getsize(partial_path) > 0
    if returncode == 0 and produced:
        os.replace(partial_path, output_path)
        return True

    if os.path.exists(partial_path):
        try:
            os.remove(partial_path)
        except OSError as e:
            logger.warning(
                f"Failed to remove partial merge output {partial_path}: {e}")
    return False


async def run_merge(settings: Settings, first_input: str, second_input: str, output_path: str) -> bool:
    """
    Concatenate two videos into output_path, waiting for FFmpeg to finish.

    FFmpeg writes to a temporary sibling file which is moved into place only
    on success, so output_path never holds a partially written video.
    """
    root, ext = os.path.splitext(output_path)
    partial_path = f"{root}.partial{ext or '.mp4'}"
    cmd = build_merge_command(settings, first_input, second_input, partial_path)
    label = f"FFmpeg merge [{os.path.basename(output_path)}]"

    logger.info(f"Starting merge: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        logger.error(f"Failed to start merge process: {e}")
        return False

    log_task = asyncio.create_task(_log_output(process.stderr, label))
    try:
        returncode = await process.wait()
        await log_task
    except asyncio.CancelledError:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        log_task.cancel()
        await asyncio.to_thread(_finalize_merge_output, partial_path, output_path, None)
        raise

    success = await asyncio.to_thread(
        _finalize_merge_output, partial_path, output_path, returncode)
    if success:
        logger.info(f"Merge finished: {output_path}")
    else:
        logger.error(f"Merge failed with exit code {returncode}")
    return success
