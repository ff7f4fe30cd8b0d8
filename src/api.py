from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Depends, Header, File, Form, UploadFile
from fastapi.responses import HTMLResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import asyncio
import logging
import os
from typing import BinaryIO, Optional

from cleanup import reap_all, remove_file
from config import Settings, settings as default_settings, VERSION
from errors import (
    CapacityExceeded,
    InvalidMergeId,
    MergeFailed,
    SpawnFailed,
    StreamNotFound,
    UploadTooLarge,
    UploadValidationError,
)
from merge_coordinator import MergeCoordinator
from naming import generate_stream_id, sanitize_name, staged_upload_name
from stream_registry import StreamRegistry


def configure_logging(app_settings: Settings):
    """Log to the console and, when LOG_FILE is set, to a file as well."""
    handlers = [logging.StreamHandler()]
    if app_settings.LOG_FILE:
        handlers.append(logging.FileHandler(app_settings.LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, app_settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=handlers,
    )


# Set up logging
configure_logging(default_settings)
logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> StreamRegistry:
    return request.app.state.registry


def get_merges(request: Request) -> MergeCoordinator:
    return request.app.state.merges


async def verify_token(
    request: Request,
    x_api_token: Optional[str] = Header(None, alias="X-API-Token"),
    api_token: Optional[str] = Query(
        None, description="API token (alternative to X-API-Token header)")
):
    """
    Verify API token if API_TOKEN is configured.
    Token can be provided via:
    - X-API-Token header (recommended)
    - api_token query parameter (for browser access or when headers are difficult)

    If API_TOKEN is not set, authentication is disabled.
    """
    expected = request.app.state.settings.API_TOKEN
    if not expected:
        return True

    provided_token = x_api_token or api_token
    if not provided_token:
        raise HTTPException(
            status_code=401,
            detail="API token required. Provide token via X-API-Token header or api_token query parameter.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if provided_token != expected:
        raise HTTPException(
            status_code=403,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True


def _copy_upload(source: BinaryIO, dest: str, max_size: int, chunk_size: int) -> int:
    """Copy an upload to dest through a temporary file, enforcing max_size."""
    partial = dest + ".partial"
    total = 0
    try:
        with open(partial, "wb") as buffer:
            while True:
                chunk = source.read(chunk_size)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_size:
                    raise UploadTooLarge(
                        f"File exceeds maximum size of {max_size} bytes")
                buffer.write(chunk)
        os.replace(partial, dest)
    except BaseException:
        if os.path.exists(partial):
            try:
                os.remove(partial)
            except OSError as e:
                logger.warning(f"Failed removing incomplete upload {partial}: {e}")
        raise
    return total


async def save_upload(upload: UploadFile, app_settings: Settings) -> str:
    """Persist an uploaded file into the staging directory and return its path."""
    dest = os.path.join(app_settings.UPLOAD_DIR,
                        staged_upload_name(upload.filename))
    try:
        size = await asyncio.to_thread(
            _copy_upload, upload.file, dest,
            app_settings.MAX_FILE_SIZE, app_settings.UPLOAD_CHUNK_SIZE)
    except UploadTooLarge as e:
        logger.warning(f"Upload {upload.filename} rejected: {e}")
        raise HTTPException(status_code=413, detail="File too large")
    except OSError as e:
        logger.exception(f"Failed to save upload {upload.filename}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save upload")

    logger.info(f"Saved upload {upload.filename} ({size} bytes) to {dest}")
    return dest


async def discard_upload(path: str):
    await asyncio.to_thread(remove_file, path)


def _require_file(file: Optional[UploadFile]) -> UploadFile:
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="file is required")
    return file


def _require_name(name: Optional[str]) -> str:
    if not name or not sanitize_name(name):
        raise HTTPException(status_code=400, detail="name is required")
    return name


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
async def control_panel():
    """Minimal HTML control panel for single and merge uploads"""
    return HTMLResponse(CONTROL_PANEL_HTML)


@router.get("/health", dependencies=[Depends(verify_token)])
async def health_check(
    registry: StreamRegistry = Depends(get_registry),
    merges: MergeCoordinator = Depends(get_merges),
):
    """Health check endpoint with capacity status"""
    return {
        "status": "healthy",
        "version": VERSION,
        "active_streams": len(registry.list_active()),
        "max_streams": registry.max_streams,
        "pending_merges": merges.pending_count,
    }


@router.post("/upload", dependencies=[Depends(verify_token)])
async def upload_single(
    name: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    app_settings: Settings = Depends(get_settings),
    registry: StreamRegistry = Depends(get_registry),
):
    """Upload one video and start looping it as an HLS stream"""
    name = _require_name(name)
    file = _require_file(file)
    try:
        stream_id = generate_stream_id(name)
    except UploadValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Fail fast before accepting a large upload
    if not registry.has_capacity():
        raise HTTPException(
            status_code=429, detail="Maximum concurrent streams reached")

    input_path = await save_upload(file, app_settings)
    try:
        session = await registry.start_session(stream_id, input_path)
    except CapacityExceeded as e:
        await discard_upload(input_path)
        raise HTTPException(status_code=429, detail=str(e))
    except SpawnFailed as e:
        await discard_upload(input_path)
        raise HTTPException(
            status_code=500, detail=f"Failed to start transcoder: {e}")
    except Exception as e:
        await discard_upload(input_path)
        logger.exception(f"Error starting stream {stream_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "stream_id": session.stream_id,
        "playlist_url": session.playlist_url,
    }


@router.post("/upload/step1", dependencies=[Depends(verify_token)])
async def upload_merge_first(
    file: Optional[UploadFile] = File(None),
    app_settings: Settings = Depends(get_settings),
    merges: MergeCoordinator = Depends(get_merges),
):
    """Upload the first of two videos to merge; returns the merge id for step 2"""
    file = _require_file(file)
    input_path = await save_upload(file, app_settings)
    merge_id = await merges.begin_merge(input_path)
    return {
        "merge_id": merge_id,
        "expires_in": app_settings.MERGE_EXPIRY_SECONDS,
    }


@router.post("/upload/step2", dependencies=[Depends(verify_token)])
async def upload_merge_second(
    merge_id: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    app_settings: Settings = Depends(get_settings),
    merges: MergeCoordinator = Depends(get_merges),
):
    """
    Upload the second video, merge it after the first one and start streaming.

    Blocks until the merge has finished. The merge id is single use.
    """
    if not merge_id or merge_id not in merges:
        raise HTTPException(status_code=400, detail="invalid merge id")
    name = _require_name(name)
    file = _require_file(file)

    input_path = await save_upload(file, app_settings)
    try:
        session = await merges.complete_merge(merge_id, input_path, name)
    except InvalidMergeId:
        await discard_upload(input_path)
        raise HTTPException(status_code=400, detail="invalid merge id")
    except UploadValidationError as e:
        await discard_upload(input_path)
        raise HTTPException(status_code=400, detail=str(e))
    except CapacityExceeded as e:
        await discard_upload(input_path)
        raise HTTPException(status_code=429, detail=str(e))
    except MergeFailed as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="merge failed")
    except SpawnFailed as e:
        raise HTTPException(
            status_code=500, detail=f"Failed to start transcoder: {e}")
    except Exception as e:
        await discard_upload(input_path)
        logger.exception(f"Error completing merge {merge_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "stream_id": session.stream_id,
        "playlist_url": session.playlist_url,
    }


@router.get("/streams", dependencies=[Depends(verify_token)])
async def list_streams(registry: StreamRegistry = Depends(get_registry)):
    """Map of active stream ids to their playlist URLs"""
    return registry.list_active()


# IMPORTANT: Routes with literal paths must come BEFORE parameterized routes
# Otherwise FastAPI will match /streams/all as /streams/{stream_id}
@router.delete("/streams/all", dependencies=[Depends(verify_token)])
async def delete_all_streams(registry: StreamRegistry = Depends(get_registry)):
    """Stop every active stream and delete its output"""
    try:
        stopped = await registry.stop_all()
        return {
            "message": f"Stopped {len(stopped)} streams",
            "stopped": stopped,
        }
    except Exception as e:
        logger.exception(f"Error stopping all streams: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/streams/{stream_id}/info", dependencies=[Depends(verify_token)])
async def get_stream_info(stream_id: str, registry: StreamRegistry = Depends(get_registry)):
    """Status, transcoder PID and segment inventory of a stream"""
    try:
        return await registry.session_info(stream_id)
    except StreamNotFound:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.exception(f"Error getting stream info: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/streams/{stream_id}", dependencies=[Depends(verify_token)])
async def delete_stream(stream_id: str, registry: StreamRegistry = Depends(get_registry)):
    """Stop a stream and delete its output"""
    try:
        await registry.stop_one(stream_id)
        return {"message": f"Stream {stream_id} stopped"}
    except StreamNotFound:
        raise HTTPException(status_code=404, detail="Stream not found")
    except Exception as e:
        logger.exception(f"Error deleting stream: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cleanup", dependencies=[Depends(verify_token)])
async def cleanup_everything(
    app_settings: Settings = Depends(get_settings),
    registry: StreamRegistry = Depends(get_registry),
    merges: MergeCoordinator = Depends(get_merges),
):
    """
    Stop ALL streams immediately and wipe the upload and output directories.

    This is not limited to tracked streams: every file under the upload
    directory and every directory under the output root is deleted, and
    pending merge ids become invalid.
    """
    try:
        report = await reap_all(registry, merges, app_settings)
        return {"message": "Cleanup complete", **report.to_dict()}
    except Exception as e:
        logger.exception(f"Error during cleanup: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application around a fresh registry and merge coordinator."""
    app_settings = app_settings or default_settings
    os.makedirs(app_settings.UPLOAD_DIR, exist_ok=True)
    os.makedirs(app_settings.OUTPUT_DIR, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events"""
        logger.info("⚡️ loop-streamer starting up...")
        registry = StreamRegistry(app_settings)
        merges = MergeCoordinator(registry, app_settings)
        app.state.registry = registry
        app.state.merges = merges
        await registry.start()

        yield

        logger.info("loop-streamer shutting down...")
        await merges.shutdown()
        await registry.shutdown()

    app = FastAPI(
        title="loop-streamer",
        version=VERSION,
        description="Turns uploaded videos into continuously looping HLS streams",
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    # Configure CORS to allow all origins so players can fetch playlists
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    # index.m3u8 and segment_*.ts written by the transcoders
    app.mount("/output", StaticFiles(directory=app_settings.OUTPUT_DIR), name="output")
    return app


CONTROL_PANEL_HTML = """<!DOCTYPE html>
<html>
<head>
<title>Video Loop Streamer</title>
<style>
body{font-family:Arial;background:#f5f5f5;max-width:900px;margin:auto;padding:20px}
.container{background:#fff;padding:20px;border-radius:8px;margin-bottom:20px}
button{padding:8px 12px;margin-top:10px}
pre{background:#eee;padding:10px;white-space:pre-wrap}
</style>
</head>
<body>

<h2>Upload Single Video</h2>
<div class="container">
<form id="single">
<input type="text" name="name" placeholder="Stream Name" required><br>
<input type="file" name="file" required><br>
<button>Upload</button>
</form>
</div>

<h2>Upload 2 Videos (Merge)</h2>
<div class="container">
<input type="file" id="v1"><br>
<button onclick="upload1()">Upload Video 1</button><br><br>
<input type="file" id="v2"><br>
<input type="text" id="mergeName" placeholder="Stream Name"><br>
<button onclick="upload2()">Upload Video 2 &amp; Start</button>
</div>

<h2>Active Streams</h2>
<div class="container">
<button onclick="refresh()">Refresh</button>
<button onclick="stopAll()">Stop All</button>
<pre id="streams">{}</pre>
</div>

<script>
let mergeId = null;

async function show(r) {
  const j = await r.json();
  if (!r.ok) { alert('Error: ' + (j.detail || r.status)); return null; }
  return j;
}

document.getElementById('single').onsubmit = async (e) => {
  e.preventDefault();
  const j = await show(await fetch('upload', {method: 'POST', body: new FormData(e.target)}));
  if (j) { alert('Stream started: ' + j.stream_id); refresh(); }
};

async function upload1() {
  const f = new FormData();
  f.append('file', document.getElementById('v1').files[0]);
  const j = await show(await fetch('upload/step1', {method: 'POST', body: f}));
  if (j) { mergeId = j.merge_id; alert('Video 1 OK'); }
}

async function upload2() {
  const f = new FormData();
  f.append('file', document.getElementById('v2').files[0]);
  f.append('merge_id', mergeId);
  f.append('name', document.getElementById('mergeName').value);
  const j = await show(await fetch('upload/step2', {method: 'POST', body: f}));
  if (j) { alert('Merged stream started: ' + j.stream_id); refresh(); }
}

async function refresh() {
  const j = await show(await fetch('streams'));
  if (j) document.getElementById('streams').textContent = JSON.stringify(j, null, 2);
}

async function stopAll() {
  await show(await fetch('streams/all', {method: 'DELETE'}));
  refresh();
}

refresh();
</script>
</body>
</html>
"""
