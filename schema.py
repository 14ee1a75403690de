from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

QUALITIES = ("highest", "best", "1080p", "720p", "mid", "480p", "360p", "lowest")
SUPPORTED_FORMAT = "mp4"

Quality = Literal["highest", "best", "1080p", "720p", "mid", "480p", "360p", "lowest"]


def utc_now_iso() -> str:
    """Millisecond ISO-8601 timestamp in UTC, e.g. 2024-05-01T12:00:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# -------------------- Errors --------------------

class RequestValidationFailed(Exception):
    """Malformed download request; surfaced as 400."""


class DestinationError(Exception):
    """Storage destination is well-formed but not usable right now; surfaced as 422."""


class DownloaderError(Exception):
    pass


class MetadataError(DownloaderError):
    pass


class TransferError(DownloaderError):
    pass


# -------------------- Requests --------------------

class ServiceAccountCredentials(BaseModel):
    """Full service account JSON key (Google Workspace / Shared Drives)."""
    model_config = ConfigDict(extra="allow")

    type: Literal["service_account"]
    project_id: str
    private_key: str
    client_email: str


class OAuth2Credentials(BaseModel):
    """Delegated user grant for personal Drive accounts."""
    type: Literal["oauth2"]
    client_id: str
    client_secret: str
    refresh_token: str


GoogleDriveCredentials = Annotated[Union[ServiceAccountCredentials, OAuth2Credentials], Field(discriminator="type")]


class StorageDestination(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    credentials: GoogleDriveCredentials
    destination_id: str = Field(validation_alias=AliasChoices("destinationId", "folderId", "destination_id"))


class DownloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    quality: Quality = "best"
    format: Optional[Literal["mp4"]] = None
    storage_destination: Optional[StorageDestination] = Field(
        default=None,
        validation_alias=AliasChoices("storageDestination", "googleDrive", "storage_destination"),
    )
    callback_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("callbackUrl", "webhookUrl", "callback_url"),
    )


# -------------------- Jobs --------------------

class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.SUCCESS, JobStatus.FAILED)


class LocalResult(BaseModel):
    kind: Literal["local"] = "local"
    local_path: str


class RemoteResult(BaseModel):
    kind: Literal["remote"] = "remote"
    remote_url: str
    remote_file_id: str


JobResult = Annotated[Union[LocalResult, RemoteResult], Field(discriminator="kind")]


class JobRecord(BaseModel):
    """Tracks the lifecycle of one download job."""
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    title: Optional[str] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape used by GET /status and the webhook callback; unset fields are omitted."""
        payload: Dict[str, Any] = {"jobId": self.job_id, "status": self.status.value}
        if self.title is not None:
            payload["title"] = self.title
        if isinstance(self.result, LocalResult):
            payload["localPath"] = self.result.local_path
        elif isinstance(self.result, RemoteResult):
            payload["remoteUrl"] = self.result.remote_url
            payload["remoteFileId"] = self.result.remote_file_id
        if self.error is not None:
            payload["error"] = self.error
        payload["createdAt"] = self.created_at
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at
        return payload


class VideoInfo(BaseModel):
    title: str = "video"
    ext: str = "mp4"
    id: str = ""
