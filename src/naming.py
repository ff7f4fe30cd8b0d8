"""Filesystem-safe names and identifiers for streams, merges and uploads."""

import os
import re
import time
import uuid

from errors import UploadValidationError

# Characters that are unsafe in file names on at least one platform
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
MAX_NAME_LENGTH = 100


def sanitize_name(name: str) -> str:
    """Replace unsafe characters with underscores and cap the length."""
    return _UNSAFE_CHARS.sub("_", name.strip())[:MAX_NAME_LENGTH]


def _short_token() -> str:
    return uuid.uuid4().hex[:8]


def generate_stream_id(name: str) -> str:
    """
    Build a unique stream id from a user supplied name.

    The id doubles as the output directory name, so it is always
    sanitized and suffixed with a random token.
    """
    safe = sanitize_name(name or "")
    if not safe:
        raise UploadValidationError("Stream name is required")
    return f"{safe}_{_short_token()}"


def generate_merge_id() -> str:
    return _short_token()


def staged_upload_name(original_filename: str) -> str:
    """Name used for an uploaded file inside the staging directory."""
    base = sanitize_name(os.path.basename(original_filename or "")) or "upload"
    return f"{int(time.time() * 1000)}_{_short_token()}_{base}"
