import logging
import requests

from .tracker import JobState

logger = logging.getLogger(__name__)


class BackendNotifier:
    """
    Tracker listener that reports finished encodings to the main backend,
    which owns the durable video status.
    """

    def __init__(self, base_url, timeout=10, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self, job):
        endpoint = f"{self.base_url}/videos/{job.resource_id}/update-encoding-status/"
        data = {
            'video_id': job.resource_id,
            'status': 'ready' if job.state is JobState.COMPLETED else 'failed',
        }
        if job.failure_reason:
            data['error_message'] = job.failure_reason

        try:
            response = self.session.post(endpoint, json=data, timeout=self.timeout)
            if response.status_code == 200:
                logger.info(f"✓ Main backend notified: {data['status']} for {job.resource_id}")
            else:
                logger.warning(f"⚠ Backend notification failed: {response.status_code}")
        except requests.RequestException as e:
            logger.warning(f"⚠ Failed to notify backend: {str(e)}")
