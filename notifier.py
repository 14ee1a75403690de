import logging

import requests

from config import WEBHOOK_TIMEOUT
from schema import JobRecord

logger = logging.getLogger(__name__)


def send_webhook_callback(webhook_url: str, job: JobRecord, timeout: float = WEBHOOK_TIMEOUT) -> bool:
    """
    POST the final job record to webhook_url, once, no retries.

    Returns True on a 2xx response. Never raises: failures are logged and the
    job outcome is left untouched.
    """
    logger.info("[%s] Sending callback to %s...", job.job_id, webhook_url)
    try:
        response = requests.post(webhook_url, json=job.to_payload(), timeout=timeout)
    except requests.RequestException as e:
        logger.error("[%s] Failed to send callback to %s: %s", job.job_id, webhook_url, e)
        return False

    if not response.ok:
        logger.warning(
            "[%s] Callback failed with status %s: %s", job.job_id, response.status_code, response.reason
        )
        return False

    logger.info("[%s] Callback sent successfully to %s", job.job_id, webhook_url)
    return True
