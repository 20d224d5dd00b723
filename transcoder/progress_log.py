"""
Progress narration for encoding jobs, written to one CloudWatch Logs stream per resource
"""

import json
import re
import threading
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import LogError

logger = logging.getLogger(__name__)

DEFAULT_LOG_GROUP = '/video-encoding/progress'
DEFAULT_STREAM_PREFIX = 'video-'

_INVALID_STREAM_CHARS = re.compile(r'[:*]')


def _error_code(exc):
    if isinstance(exc, ClientError):
        return exc.response.get('Error', {}).get('Code')
    return None


@dataclass
class ProgressEvent:
    resource_id: str
    message: str
    progress: Optional[int] = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_log_event(self):
        return {
            'timestamp': int(self.emitted_at.timestamp() * 1000),
            'message': json.dumps({
                'resourceId': self.resource_id,
                'message': self.message,
                'progress': self.progress,
                'timestamp': self.emitted_at.isoformat(),
            }),
        }


class _StreamWriter:
    """Sole owner of one stream's sequence token. All access goes through its lock."""

    def __init__(self, name):
        self.name = name
        self.lock = threading.Lock()
        self.ready = False
        self.sequence_token = None


class ProgressLog:
    """
    Appends ProgressEvents to CloudWatch Logs.

    Each stream has its own writer and lock, so appends for one resource are
    strictly ordered while unrelated resources never wait on each other.
    Failures are logged and swallowed; progress narration never aborts a job.
    """

    def __init__(self, client=None, log_group=DEFAULT_LOG_GROUP, stream_prefix=DEFAULT_STREAM_PREFIX):
        self.client = client
        self.log_group = log_group
        self.stream_prefix = stream_prefix
        self._writers = {}
        self._writers_guard = threading.Lock()
        self._group_lock = threading.Lock()
        self._group_ready = False

    @property
    def enabled(self):
        return self.client is not None and bool(self.log_group)

    def stream_name(self, resource_id):
        return _INVALID_STREAM_CHARS.sub('-', f"{self.stream_prefix}{resource_id}")

    def _writer(self, resource_id):
        name = self.stream_name(resource_id)
        with self._writers_guard:
            writer = self._writers.get(name)
            if writer is None:
                writer = self._writers[name] = _StreamWriter(name)
            return writer

    def forget(self, resource_id):
        """
        Drop the cached writer for a resource, waiting for any in-flight append.
        A later append starts a new writer that re-reads the stream's token.
        """
        name = self.stream_name(resource_id)
        with self._writers_guard:
            writer = self._writers.get(name)
        if writer is None:
            return
        with writer.lock:
            with self._writers_guard:
                if self._writers.get(name) is writer:
                    del self._writers[name]

    def ensure_stream(self, resource_id):
        """Create the log group and this resource's stream if needed. Returns the stream name."""
        writer = self._writer(resource_id)
        with writer.lock:
            self._ensure(writer)
        return writer.name

    def _ensure(self, writer):
        # Caller holds writer.lock
        if writer.ready:
            return
        try:
            with self._group_lock:
                if not self._group_ready:
                    self._create_if_absent(self.client.create_log_group, logGroupName=self.log_group)
                    self._group_ready = True

            created = self._create_if_absent(
                self.client.create_log_stream,
                logGroupName=self.log_group,
                logStreamName=writer.name,
            )
            writer.sequence_token = None if created else self._describe_token(writer.name)
        except (BotoCoreError, ClientError) as e:
            raise LogError(f"Could not prepare log stream {writer.name}: {e}") from e
        writer.ready = True

    @staticmethod
    def _create_if_absent(create, **kwargs):
        try:
            create(**kwargs)
            return True
        except ClientError as e:
            if _error_code(e) == 'ResourceAlreadyExistsException':
                return False
            raise

    def _describe_token(self, stream_name):
        response = self.client.describe_log_streams(
            logGroupName=self.log_group,
            logStreamNamePrefix=stream_name,
        )
        for stream in response.get('logStreams', []):
            if stream.get('logStreamName') == stream_name:
                return stream.get('uploadSequenceToken')
        return None

    def append(self, resource_id, message, progress=None):
        """Record one progress event. Never raises."""
        event = ProgressEvent(resource_id=resource_id, message=message, progress=progress)
        suffix = f" ({progress}%)" if progress is not None else ''
        logger.info(f"[{resource_id}] Progress: {message}{suffix}")

        if not self.enabled:
            return
        writer = self._writer(resource_id)
        try:
            with writer.lock:
                self._ensure(writer)
                self._put(writer, event)
        except LogError as e:
            logger.warning(f"⚠ Error logging progress for {resource_id}: {e}")
        except Exception as e:
            logger.warning(f"⚠ Unexpected error logging progress for {resource_id}: {e}")

    def _put(self, writer, event):
        # Caller holds writer.lock
        retried = False
        while True:
            params = {
                'logGroupName': self.log_group,
                'logStreamName': writer.name,
                'logEvents': [event.to_log_event()],
            }
            if writer.sequence_token:
                params['sequenceToken'] = writer.sequence_token
            try:
                result = self.client.put_log_events(**params)
            except ClientError as e:
                expected = e.response.get('expectedSequenceToken')
                if _error_code(e) == 'InvalidSequenceTokenException' and expected and not retried:
                    logger.debug(f"Sequence token for {writer.name} was stale, retrying")
                    writer.sequence_token = expected
                    retried = True
                    continue
                raise LogError(f"put_log_events failed for {writer.name}: {e}") from e
            except BotoCoreError as e:
                raise LogError(f"put_log_events failed for {writer.name}: {e}") from e

            writer.sequence_token = result.get('nextSequenceToken')
            return writer.sequence_token
