"""yt-dlp runners: metadata fetch, streaming to Drive and local downloads."""

import json
import logging
import os
import re
import shlex
import subprocess
import threading
from typing import IO, List, Optional

from config import OUTPUT_DIR, UPLOAD_CHUNK_SIZE, YTDLP_BINARY
from gdrive import PipeMediaUpload, delete_file, guess_mime_type, upload_stream_to_google_drive
from schema import MetadataError, RemoteResult, StorageDestination, TransferError, VideoInfo

logger = logging.getLogger(__name__)

YTDLP_COMMAND: List[str] = shlex.split(YTDLP_BINARY)

STDERR_TAIL_CHARS = 500
MAX_FILENAME_LENGTH = 200

# Streaming to stdout must use pre-muxed formats: a merge step would need a
# seekable output. Everything is capped at 720p, which reliably has a muxed mp4.
_STREAM_720 = "best[height<=720][ext=mp4]/best[height<=720]/best"
STREAM_FORMATS = {
    "highest": _STREAM_720,
    "best": _STREAM_720,
    "1080p": _STREAM_720,
    "720p": _STREAM_720,
    "mid": _STREAM_720,
    "480p": "best[height<=480][ext=mp4]/best[height<=480]/best",
    "360p": "best[height<=360][ext=mp4]/best[height<=360]/best",
    "lowest": "worst[ext=mp4]/worst",
}

_LOCAL_BEST = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
LOCAL_FORMATS = {
    "highest": _LOCAL_BEST,
    "best": _LOCAL_BEST,
    "1080p": "bestvideo[height<=1080][ext=mp4]+bestaudio[ext=m4a]/best[height<=1080][ext=mp4]/best[height<=1080]/best",
    "720p": "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[height<=720][ext=mp4]/best[height<=720]/best",
    "mid": "bestvideo[height<=720][ext=mp4]+bestaudio[ext=m4a]/best[height<=720][ext=mp4]/best[height<=720]/best",
    "480p": "bestvideo[height<=480][ext=mp4]+bestaudio[ext=m4a]/best[height<=480][ext=mp4]/best[height<=480]/best",
    "360p": "bestvideo[height<=360][ext=mp4]+bestaudio[ext=m4a]/best[height<=360][ext=mp4]/best[height<=360]/best",
    "lowest": "worstvideo[ext=mp4]+worstaudio[ext=m4a]/worst[ext=mp4]/worst",
}

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_+")


# -------------------- Helpers --------------------

def build_ytdlp_format(quality: str = "best", streaming: bool = False) -> str:
    """Map a quality level to a yt-dlp format selector."""
    if streaming:
        return STREAM_FORMATS.get(quality, _STREAM_720)
    return LOCAL_FORMATS.get(quality, _LOCAL_BEST)


def sanitize_filename(title: str) -> str:
    name = _ILLEGAL_CHARS.sub("_", title)
    name = _WHITESPACE.sub("_", name)
    name = _UNDERSCORES.sub("_", name)
    name = name[:MAX_FILENAME_LENGTH]
    return name or "video"


def quality_prefix(quality: str) -> str:
    if quality == "highest":
        return "high_"
    if quality == "lowest":
        return "low_"
    return ""


def _spawn_error(e: OSError) -> str:
    return f"Failed to spawn yt-dlp: {e}. Is yt-dlp installed and in PATH?"


class PipeReader(threading.Thread):
    """Drains a process pipe line by line, logging it and keeping the tail."""

    def __init__(self, stream: IO[bytes], label: str, level: int = logging.DEBUG, keep: int = 4096):
        super().__init__(daemon=True)
        self._stream = stream
        self._label = label
        self._level = level
        self._keep = keep
        self._text = ""

    def run(self) -> None:
        for raw in iter(self._stream.readline, b""):
            line = raw.decode("utf-8", errors="replace")
            logger.log(self._level, "[yt-dlp %s] %s", self._label, line.rstrip())
            self._text = (self._text + line)[-self._keep:]

    def tail(self, chars: int = STDERR_TAIL_CHARS) -> str:
        return self._text[-chars:].strip()


# -------------------- Metadata --------------------

def get_video_info(url: str) -> VideoInfo:
    """Fetch video metadata without downloading (yt-dlp --dump-json)."""
    try:
        completed = subprocess.run(
            [*YTDLP_COMMAND, "--dump-json", "--no-playlist", url],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise MetadataError(_spawn_error(e)) from e

    stdout = completed.stdout.decode("utf-8", errors="replace")
    stderr = completed.stderr.decode("utf-8", errors="replace")

    if completed.returncode != 0:
        raise MetadataError(f"yt-dlp info failed (exit {completed.returncode}): {stderr.strip()}")

    try:
        info = json.loads(stdout)
    except ValueError as e:
        raise MetadataError(f"Failed to parse yt-dlp JSON output: {stdout[:200]}") from e
    if not isinstance(info, dict):
        raise MetadataError(f"Failed to parse yt-dlp JSON output: {stdout[:200]}")

    return VideoInfo(
        title=str(info.get("title") or "video"),
        ext=str(info.get("ext") or "mp4"),
        id=str(info.get("id") or ""),
    )


# -------------------- Streaming to Google Drive --------------------

def stream_to_gdrive(
    url: str,
    quality: str,
    destination: StorageDestination,
    title: str,
    chunk_size: int = UPLOAD_CHUNK_SIZE,
) -> RemoteResult:
    """
    Pipe yt-dlp stdout straight into a resumable Drive upload, no temp file.

    Resolves once the upload has returned and the process has exited. If the
    upload fails the process is killed. A non-zero exit after a successful
    upload is only logged, unless the process produced no bytes at all.
    """
    fmt = build_ytdlp_format(quality, streaming=True)
    file_name = f"{quality_prefix(quality)}{sanitize_filename(title)}.mp4"
    logger.info('Streaming "%s" -> Google Drive (quality: %s, format: %s)', title, quality, fmt)

    try:
        child = subprocess.Popen(
            [*YTDLP_COMMAND, "-f", fmt, "-o", "-", "--no-playlist", url],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise TransferError(_spawn_error(e)) from e

    stderr = PipeReader(child.stderr, "stderr", level=logging.INFO)
    stderr.start()
    media = PipeMediaUpload(child.stdout, guess_mime_type(file_name), chunksize=chunk_size)

    try:
        try:
            result = upload_stream_to_google_drive(media, file_name, destination)
        except Exception as e:
            child.kill()
            child.wait()
            stderr.join()
            raise TransferError(f"GDrive stream upload failed: {e}\nyt-dlp stderr: {stderr.tail()}") from e

        exited_early = child.poll() is not None
        returncode = child.wait()
        stderr.join()
    finally:
        child.stdout.close()
        child.stderr.close()

    if returncode != 0:
        if media.bytes_read == 0:
            delete_file(result.remote_file_id, destination)
            raise TransferError(
                f"yt-dlp produced no data (exit {returncode})\nyt-dlp stderr: {stderr.tail()}"
            )
        logger.warning(
            "yt-dlp exited with code %s %s stream completed",
            returncode,
            "before" if exited_early else "after",
        )
    return result


# -------------------- Local download --------------------

def download_locally(
    url: str,
    quality: str = "best",
    output_dir: Optional[str] = None,
    title: str = "video",
) -> str:
    """Download to <output_dir>/<title>.mp4 and return the absolute path."""
    output_dir = os.path.abspath(output_dir or OUTPUT_DIR)
    os.makedirs(output_dir, exist_ok=True)

    fmt = build_ytdlp_format(quality, streaming=False)
    output_path = os.path.join(output_dir, f"{sanitize_filename(title)}.mp4")
    logger.info('Downloading "%s" -> %s (format: %s)', title, output_path, fmt)

    try:
        child = subprocess.Popen(
            [
                *YTDLP_COMMAND,
                "-f", fmt,
                "--merge-output-format", "mp4",
                "-o", output_path,
                "--no-playlist",
                url,
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise TransferError(_spawn_error(e)) from e

    stdout = PipeReader(child.stdout, "stdout")
    stderr = PipeReader(child.stderr, "stderr", level=logging.INFO)
    stdout.start()
    stderr.start()
    returncode = child.wait()
    stdout.join()
    stderr.join()
    child.stdout.close()
    child.stderr.close()

    if returncode != 0:
        message = f"yt-dlp download failed with exit code {returncode}"
        tail = stderr.tail()
        if tail:
            message = f"{message}\nyt-dlp stderr: {tail}"
        raise TransferError(message)
    return output_path
