"""
Job lifecycle engine: runs one admitted download job end to end.

queued -> in_progress -> success | failed, then an optional webhook callback.
Jobs run on launcher threads; each job only ever writes its own store key.
"""

import logging
from typing import Callable, Optional

import downloader
import notifier
from config import OUTPUT_DIR
from db import JobStore
from schema import DownloadRequest, JobRecord, JobStatus, LocalResult, utc_now_iso

logger = logging.getLogger(__name__)


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        output_dir: str = OUTPUT_DIR,
        fetch_info: Callable = downloader.get_video_info,
        stream_to_gdrive: Callable = downloader.stream_to_gdrive,
        download_locally: Callable = downloader.download_locally,
        send_callback: Callable = notifier.send_webhook_callback,
    ):
        self.store = store
        self.output_dir = output_dir
        self.fetch_info = fetch_info
        self.stream_to_gdrive = stream_to_gdrive
        self.download_locally = download_locally
        self.send_callback = send_callback

    def process_job(self, job_id: str, request: DownloadRequest) -> JobRecord:
        self.store.update(job_id, status=JobStatus.IN_PROGRESS)
        logger.info("[%s] Processing job: %s", job_id, request.url)

        try:
            # 1. Metadata
            info = self.fetch_info(request.url)
            self.store.update(job_id, title=info.title)
            logger.info('[%s] Video: "%s" (id: %s)', job_id, info.title, info.id)

            # 2. Transfer
            destination = request.storage_destination
            if destination is not None:
                logger.info("[%s] Streaming to Google Drive folder %s...", job_id, destination.destination_id)
                result = self.stream_to_gdrive(request.url, request.quality, destination, info.title)
                logger.info("[%s] Uploaded to Drive: %s", job_id, result.remote_url)
            else:
                local_path = self.download_locally(request.url, request.quality, self.output_dir, info.title)
                result = LocalResult(local_path=local_path)
                logger.info("[%s] Saved locally: %s", job_id, local_path)

            job = self.store.update(
                job_id, status=JobStatus.SUCCESS, result=result, completed_at=utc_now_iso()
            )
            logger.info("[%s] Job completed successfully", job_id)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("[%s] Job failed: %s", job_id, message)
            job = self.store.update(
                job_id, status=JobStatus.FAILED, error=message, completed_at=utc_now_iso()
            )

        # 3. Callback, whatever the outcome
        if request.callback_url:
            self._notify(request.callback_url, job)
        return job

    def _notify(self, callback_url: str, job: JobRecord) -> Optional[bool]:
        try:
            return self.send_callback(callback_url, job)
        except Exception:
            logger.exception("[%s] Callback to %s raised", job.job_id, callback_url)
            return None
