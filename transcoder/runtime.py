"""
Process-wide tracker built from Django settings
"""

import threading
import logging

from .engine import TranscodeEngine, DEFAULT_TEMP_DIR, resolve_ffmpeg_path
from .notifier import BackendNotifier
from .progress_log import ProgressLog, DEFAULT_LOG_GROUP
from .storage import S3ObjectStore, get_boto3_session, setting
from .tracker import JobTracker

logger = logging.getLogger(__name__)

_tracker = None
_tracker_lock = threading.Lock()


def build_progress_log():
    log_group = setting('CLOUDWATCH_LOG_GROUP', DEFAULT_LOG_GROUP)
    if not log_group:
        logger.info("CLOUDWATCH_LOG_GROUP is empty; progress is logged locally only")
        return ProgressLog(client=None, log_group='')
    region = setting('CLOUDWATCH_REGION_NAME') or setting('AWS_S3_REGION_NAME', 'us-east-1')
    client = get_boto3_session().client('logs', region_name=region)
    return ProgressLog(client=client, log_group=log_group)


def build_tracker():
    engine = TranscodeEngine(
        store=S3ObjectStore(),
        temp_dir=setting('TEMP_VIDEOS_DIR', DEFAULT_TEMP_DIR),
        ffmpeg_path=resolve_ffmpeg_path(setting('FFMPEG_PATH', '')),
        segment_seconds=int(setting('TRANSCODER_SEGMENT_SECONDS', 6)),
        encode_timeout=int(setting('TRANSCODER_ENCODE_TIMEOUT', 3600)),
    )
    tracker = JobTracker(
        engine=engine,
        progress_log=build_progress_log(),
        max_workers=int(setting('TRANSCODER_MAX_WORKERS', 2)),
        default_renditions=setting('TRANSCODER_RENDITIONS'),
        output_prefix=setting('HLS_OUTPUT_PREFIX', 'hls'),
    )

    backend_url = setting('MAIN_BACKEND_URL', '')
    if backend_url:
        tracker.add_listener(BackendNotifier(backend_url))

    interval = int(setting('TRANSCODER_REAP_INTERVAL', 300))
    if interval > 0:
        tracker.start_reaper(interval, int(setting('TRANSCODER_JOB_RETENTION', 3600)))
    return tracker


def default_tracker():
    """Return the tracker shared by every request in this process, creating it on first use."""
    global _tracker
    with _tracker_lock:
        if _tracker is None:
            _tracker = build_tracker()
            logger.info("Transcoding tracker started")
        return _tracker
