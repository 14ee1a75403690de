"""Google Drive collaborator: destination checks and streaming uploads."""

import logging
import os
from typing import Any, BinaryIO, Dict, Optional

from google.auth.exceptions import GoogleAuthError
from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaUpload

from config import UPLOAD_CHUNK_SIZE
from schema import (
    DestinationError,
    GoogleDriveCredentials,
    OAuth2Credentials,
    RemoteResult,
    StorageDestination,
    TransferError,
)

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]
TOKEN_URI = "https://oauth2.googleapis.com/token"

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


# -------------------- Client --------------------

def create_drive_client(creds: GoogleDriveCredentials):
    if isinstance(creds, OAuth2Credentials):
        google_creds = oauth2_credentials.Credentials(
            token=None,
            refresh_token=creds.refresh_token,
            token_uri=TOKEN_URI,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            scopes=DRIVE_SCOPES,
        )
    else:
        info = creds.model_dump()
        info.setdefault("token_uri", TOKEN_URI)
        google_creds = service_account.Credentials.from_service_account_info(info, scopes=DRIVE_SCOPES)

    return build("drive", "v3", credentials=google_creds, cache_discovery=False)


def extract_google_error(err: Exception) -> str:
    """Best textual approximation of what Google said went wrong."""
    if isinstance(err, HttpError):
        reason = getattr(err, "reason", None)
        if reason:
            return str(reason)
        return f"HTTP {err.resp.status}"
    if isinstance(err, GoogleAuthError) and err.args:
        return str(err.args[0])
    message = str(err)
    return message or type(err).__name__


def guess_mime_type(file_name: str) -> str:
    ext = os.path.splitext(file_name)[1].lower()
    return MIME_TYPES.get(ext, "application/octet-stream")


# -------------------- Validation --------------------

def validate_google_drive(destination: StorageDestination) -> None:
    """
    Live check that the credentials work and the destination folder is reachable.

    Raises DestinationError with the provider's message on any failure.
    """
    try:
        drive = create_drive_client(destination.credentials)
        drive.files().get(
            fileId=destination.destination_id,
            fields="id, name, mimeType",
            supportsAllDrives=True,
        ).execute()
    except Exception as e:
        raise DestinationError(f"Google Drive validation failed: {extract_google_error(e)}") from e


# -------------------- Streaming upload --------------------

class PipeMediaUpload(MediaUpload):
    """
    Resumable media body backed by a non-seekable stream (e.g. a process stdout).

    The total size is unknown until the stream hits EOF. size() reads ahead
    far enough to tell whether the next chunk is the last one, so the final
    chunk always carries the total length, even when the stream ends exactly
    on a chunk boundary. At most two chunks plus one byte are buffered: the
    unacknowledged chunk (the server may ask for a partial resend) and the
    look-ahead. The reader blocks on the pipe, which in turn blocks the producer.
    """

    def __init__(self, stream: BinaryIO, mimetype: str, chunksize: int = UPLOAD_CHUNK_SIZE):
        super().__init__()
        self._stream = stream
        self._mimetype = mimetype
        self._chunksize = chunksize
        self._buffer = bytearray()
        self._buffer_start = 0
        self._eof = False
        self.bytes_read = 0

    def chunksize(self) -> int:
        return self._chunksize

    def mimetype(self) -> str:
        return self._mimetype

    def size(self) -> Optional[int]:
        # The next chunk starts no later than one chunk past the buffer start
        self._fill(2 * self._chunksize + 1)
        if self._eof:
            return self._buffer_start + len(self._buffer)
        return None

    def resumable(self) -> bool:
        return True

    def has_stream(self) -> bool:
        return False

    def getbytes(self, begin: int, length: int) -> bytes:
        if begin < self._buffer_start:
            raise TransferError(
                f"Upload asked to rewind to byte {begin}, earliest buffered byte is {self._buffer_start}"
            )

        # Drop bytes the server has acknowledged
        dropped = min(begin - self._buffer_start, len(self._buffer))
        del self._buffer[:dropped]
        self._buffer_start += dropped

        self._fill(begin - self._buffer_start + length)
        offset = begin - self._buffer_start
        return bytes(self._buffer[offset:offset + length])

    def _fill(self, upto: int) -> None:
        """Read until `upto` bytes past the buffer start are held, or EOF."""
        while len(self._buffer) < upto and not self._eof:
            piece = self._stream.read(upto - len(self._buffer))
            if not piece:
                self._eof = True
                break
            self._buffer.extend(piece)
            self.bytes_read += len(piece)

    def to_json(self):
        raise NotImplementedError("PipeMediaUpload cannot be serialized")


def upload_stream_to_google_drive(
    media: PipeMediaUpload,
    file_name: str,
    destination: StorageDestination,
) -> RemoteResult:
    """Upload a piped media body and make it readable by anyone with the link."""
    drive = create_drive_client(destination.credentials)

    try:
        uploaded: Dict[str, Any] = drive.files().create(
            supportsAllDrives=True,
            body={"name": file_name, "parents": [destination.destination_id]},
            media_body=media,
            fields="id, name, webViewLink",
        ).execute()
    except Exception as e:
        raise TransferError(f"Google Drive upload failed: {extract_google_error(e)}") from e

    file_id = uploaded.get("id")
    if not file_id:
        raise TransferError("Google Drive upload succeeded but returned no file ID")

    # Make file readable by anyone with the link
    try:
        drive.permissions().create(
            fileId=file_id,
            supportsAllDrives=True,
            body={"role": "reader", "type": "anyone"},
        ).execute()
    except Exception as e:
        logger.warning("Could not set public permission on %s: %s", file_id, extract_google_error(e))

    remote_url = uploaded.get("webViewLink") or f"https://drive.google.com/file/d/{file_id}/view"
    return RemoteResult(remote_url=remote_url, remote_file_id=file_id)


def delete_file(file_id: str, destination: StorageDestination) -> None:
    """Best-effort removal of an uploaded file; failures are only logged."""
    try:
        drive = create_drive_client(destination.credentials)
        drive.files().delete(fileId=file_id, supportsAllDrives=True).execute()
    except Exception as e:
        logger.warning("Could not delete Drive file %s: %s", file_id, extract_google_error(e))
