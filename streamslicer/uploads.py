"""Spooling of uploaded videos to local temp files."""
import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import UploadFile

from streamslicer.errors import FileTooLargeError, InvalidFileError


logger = logging.getLogger(__name__)


CHUNK_SIZE = 1024 * 1024


def format_size(num_bytes: int) -> str:
    if num_bytes >= 1024 ** 3:
        return f"{num_bytes / 1024 ** 3:.1f}GB"
    return f"{round(num_bytes / 1024 ** 2)}MB"


@dataclass
class VideoUpload:
    """A video spooled to disk for the duration of one analysis."""
    path: Path
    file_name: str
    mime_type: str
    size_bytes: int

    def release(self) -> None:
        """Delete the temp file. Safe to call more than once."""
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


def validate_video(mime_type: Optional[str], size_bytes: Optional[int], max_bytes: int) -> None:
    """Reject non-video files and files over the plan limit."""
    if not mime_type or not mime_type.startswith("video/"):
        raise InvalidFileError("Invalid file type. Please upload a video file (MP4, MOV).")
    if size_bytes is not None and size_bytes > max_bytes:
        raise FileTooLargeError(f"File is too large for this plan. Limit: {format_size(max_bytes)}.")


async def spool_upload(
    upload: UploadFile, max_bytes: int, directory: Optional[str] = None
) -> VideoUpload:
    """Copy an incoming upload to a temp file, enforcing the size limit.

    The declared size may be missing, so the limit is checked again while
    copying. The temp file is removed if the copy fails.
    """
    mime_type = upload.content_type or ""
    validate_video(mime_type, upload.size, max_bytes)

    suffix = Path(upload.filename or "").suffix
    fd, name = tempfile.mkstemp(suffix=suffix, prefix="streamslicer-", dir=directory)
    video = VideoUpload(
        path=Path(name),
        file_name=upload.filename or "video",
        mime_type=mime_type,
        size_bytes=0,
    )

    try:
        with os.fdopen(fd, "wb") as out:
            while chunk := await upload.read(CHUNK_SIZE):
                video.size_bytes += len(chunk)
                if video.size_bytes > max_bytes:
                    raise FileTooLargeError(
                        f"File is too large for this plan. Limit: {format_size(max_bytes)}."
                    )
                await asyncio.to_thread(out.write, chunk)
    except BaseException:
        video.release()
        raise

    logger.info("Spooled %s (%d bytes) to %s", video.file_name, video.size_bytes, video.path)
    return video
