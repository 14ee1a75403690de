from __future__ import annotations

import os
import sys

import pytest

import downloader
from downloader import build_ytdlp_format, quality_prefix, sanitize_filename
from schema import MetadataError, RemoteResult, StorageDestination, TransferError

# Stands in for yt-dlp: behaviour is picked from the last path segment of the URL
FAKE_YTDLP = r'''
import json, sys, time
args = sys.argv[1:]
url = args[-1]
kind = url.rsplit("/", 1)[-1]
if kind == "missing":
    sys.stderr.write("ERROR: [youtube] missing: Video unavailable\n")
    sys.exit(1)
if "--dump-json" in args:
    if kind == "garbage":
        print("this is not json")
    else:
        print(json.dumps({"title": "My Video: Part 1", "id": "abc123", "ext": "webm"}))
    sys.exit(0)
output = args[args.index("-o") + 1]
if kind == "empty":
    sys.stderr.write("ERROR: Requested format is not available\n")
    sys.exit(2)
if output == "-":
    sys.stderr.write("[download] Destination: -\n")
    out = sys.stdout.buffer
    for _ in range(64):
        out.write(b"\x00" * 16384)
        out.flush()
    if kind == "endless":
        while True:
            out.write(b"\x00" * 16384)
            out.flush()
    out.close()
    sys.exit(3 if kind == "late" else 0)
with open(output, "wb") as handle:
    handle.write(b"fake mp4 data")
if kind == "broken":
    sys.exit(1)
'''

STREAM_BYTES = 64 * 16384


@pytest.fixture(autouse=True)
def fake_ytdlp(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(downloader, "YTDLP_COMMAND", [sys.executable, "-c", FAKE_YTDLP])


@pytest.fixture
def destination(oauth2_destination) -> StorageDestination:
    return StorageDestination.model_validate(oauth2_destination)


class UploadRecorder:
    """Consumes the piped media the way the resumable uploader does."""

    def __init__(self, fail_after: int | None = None) -> None:
        self.fail_after = fail_after
        self.received = 0
        self.file_name = None

    def __call__(self, media, file_name, destination) -> RemoteResult:
        self.file_name = file_name
        while True:
            chunk = media.getbytes(self.received, media.chunksize())
            self.received += len(chunk)
            if self.fail_after is not None and self.received >= self.fail_after:
                raise TransferError("Google Drive upload failed: Backend Error")
            if len(chunk) < media.chunksize():
                break
        return RemoteResult(remote_url="https://drive.google.com/file/d/f1/view", remote_file_id="f1")


# -------------------- Helpers --------------------

def test_streaming_formats_are_premuxed_and_capped() -> None:
    for quality in ("highest", "best", "1080p", "720p", "mid"):
        fmt = build_ytdlp_format(quality, streaming=True)
        assert fmt.startswith("best[height<=720][ext=mp4]")
        assert "+" not in fmt
        assert fmt.endswith("/best")
    assert build_ytdlp_format("360p", streaming=True).startswith("best[height<=360]")
    assert build_ytdlp_format("lowest", streaming=True) == "worst[ext=mp4]/worst"
    assert build_ytdlp_format("unknown", streaming=True) == build_ytdlp_format("720p", streaming=True)


def test_local_formats_may_merge_streams() -> None:
    assert build_ytdlp_format("1080p").startswith("bestvideo[height<=1080][ext=mp4]+bestaudio[ext=m4a]")
    assert build_ytdlp_format("best") == "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"


@pytest.mark.parametrize(
    "title, expected",
    [
        ("My Video: Part 1", "My_Video_Part_1"),
        ('a<b>c"d/e\\f|g?h*i', "a_b_c_d_e_f_g_h_i"),
        ("  lots   of\tspace  ", "_lots_of_space_"),
        ("", "video"),
    ],
)
def test_sanitize_filename(title: str, expected: str) -> None:
    assert sanitize_filename(title) == expected


def test_sanitize_filename_caps_length() -> None:
    assert len(sanitize_filename("x" * 500)) == 200


def test_quality_prefix() -> None:
    assert quality_prefix("highest") == "high_"
    assert quality_prefix("lowest") == "low_"
    assert quality_prefix("720p") == ""


# -------------------- Metadata --------------------

def test_get_video_info() -> None:
    info = downloader.get_video_info("https://example/ok")
    assert info.title == "My Video: Part 1"
    assert info.id == "abc123"
    assert info.ext == "webm"


def test_get_video_info_nonzero_exit() -> None:
    with pytest.raises(MetadataError, match=r"yt-dlp info failed \(exit 1\): .*Video unavailable"):
        downloader.get_video_info("https://example/missing")


def test_get_video_info_bad_json() -> None:
    with pytest.raises(MetadataError, match="Failed to parse yt-dlp JSON output: this is not json"):
        downloader.get_video_info("https://example/garbage")


def test_missing_binary(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setattr(downloader, "YTDLP_COMMAND", [str(tmp_path / "no-such-yt-dlp")])
    with pytest.raises(MetadataError, match="Is yt-dlp installed and in PATH"):
        downloader.get_video_info("https://example/ok")
    with pytest.raises(TransferError, match="Is yt-dlp installed and in PATH"):
        downloader.download_locally("https://example/ok", "best", str(tmp_path), "title")


# -------------------- Local download --------------------

def test_download_locally_writes_mp4(tmp_path) -> None:
    output_dir = tmp_path / "nested" / "output"
    path = downloader.download_locally("https://example/ok", "720p", str(output_dir), "My Video: Part 1")

    assert os.path.isabs(path)
    assert path == str(output_dir / "My_Video_Part_1.mp4")
    with open(path, "rb") as handle:
        assert handle.read() == b"fake mp4 data"


def test_download_locally_reports_exit_code(tmp_path) -> None:
    with pytest.raises(TransferError, match="yt-dlp download failed with exit code 1"):
        downloader.download_locally("https://example/broken", "best", str(tmp_path), "title")


# -------------------- Streaming --------------------

def test_stream_to_gdrive_pipes_all_bytes(monkeypatch: pytest.MonkeyPatch, destination) -> None:
    upload = UploadRecorder()
    monkeypatch.setattr(downloader, "upload_stream_to_google_drive", upload)

    result = downloader.stream_to_gdrive(
        "https://example/ok", "highest", destination, "My Video: Part 1", chunk_size=256 * 1024
    )

    assert result.remote_file_id == "f1"
    assert upload.received == STREAM_BYTES
    assert upload.file_name == "high_My_Video_Part_1.mp4"


def test_stream_to_gdrive_tolerates_late_nonzero_exit(monkeypatch: pytest.MonkeyPatch, destination) -> None:
    upload = UploadRecorder()
    monkeypatch.setattr(downloader, "upload_stream_to_google_drive", upload)

    result = downloader.stream_to_gdrive("https://example/late", "best", destination, "clip", chunk_size=256 * 1024)
    assert result.remote_file_id == "f1"
    assert upload.received == STREAM_BYTES


def test_stream_to_gdrive_kills_producer_when_upload_fails(monkeypatch: pytest.MonkeyPatch, destination) -> None:
    upload = UploadRecorder(fail_after=256 * 1024)
    monkeypatch.setattr(downloader, "upload_stream_to_google_drive", upload)

    # The endless producer would never exit on its own
    with pytest.raises(TransferError) as excinfo:
        downloader.stream_to_gdrive("https://example/endless", "best", destination, "clip", chunk_size=256 * 1024)

    message = str(excinfo.value)
    assert message.startswith("GDrive stream upload failed: Google Drive upload failed: Backend Error")
    assert "yt-dlp stderr: [download] Destination: -" in message


def test_stream_to_gdrive_fails_when_nothing_was_produced(monkeypatch: pytest.MonkeyPatch, destination) -> None:
    upload = UploadRecorder()
    deleted = []
    monkeypatch.setattr(downloader, "upload_stream_to_google_drive", upload)
    monkeypatch.setattr(downloader, "delete_file", lambda file_id, dest: deleted.append(file_id))

    with pytest.raises(TransferError, match=r"yt-dlp produced no data \(exit 2\)"):
        downloader.stream_to_gdrive("https://example/empty", "best", destination, "clip")

    assert upload.received == 0
    assert deleted == ["f1"]
