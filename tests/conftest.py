import io
import subprocess
import threading
from pathlib import Path

import pytest

from transcoder.engine import TranscodeEngine
from transcoder.errors import ObjectNotFound
from transcoder.storage import ObjectStore
from transcoder.tracker import JobTracker


class MemoryStore(ObjectStore):
    """ObjectStore keeping objects in a dict; keys in fail_keys raise on put."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.content_types = {}
        self.fail_keys = set()
        self.puts = []
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            if key not in self.objects:
                raise ObjectNotFound(key)
            return io.BytesIO(self.objects[key])

    def put(self, key, body, content_type):
        if key in self.fail_keys:
            raise ConnectionError(f"simulated upload failure for {key}")
        data = body if isinstance(body, bytes) else body.read()
        with self._lock:
            self.objects[key] = data
            self.content_types[key] = content_type
            self.puts.append(key)

    def exists(self, key):
        return key in self.objects


class GatedStore(MemoryStore):
    """Blocks downloads until the test opens the gate."""

    def __init__(self, objects):
        super().__init__(objects)
        self.gate = threading.Event()
        self.entered = threading.Event()

    def get(self, key):
        self.entered.set()
        self.gate.wait(5)
        return super().get(key)


class FakeFFmpeg:
    """
    Stand-in for subprocess.run that writes what ffmpeg's HLS muxer would.
    Output bytes depend only on the input file and the encode arguments.
    """

    def __init__(self, returncode=0, stderr=''):
        self.returncode = returncode
        self.stderr = stderr
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, cmd, capture_output=True, text=True, timeout=None):
        with self._lock:
            self.calls.append(cmd)
        if self.returncode != 0:
            return subprocess.CompletedProcess(cmd, self.returncode, '', self.stderr)

        source = Path(cmd[cmd.index('-i') + 1]).read_bytes()
        bitrate = cmd[cmd.index('-b:v') + 1]
        segment_pattern = cmd[cmd.index('-hls_segment_filename') + 1]
        playlist = Path(cmd[-1])

        segments = []
        for i in range(2):
            segment = Path(segment_pattern.replace('%03d', f"{i:03d}"))
            segment.write_bytes(b'\x47' + bitrate.encode() + source)
            segments.append(segment.name)

        lines = ['#EXTM3U', '#EXT-X-VERSION:3', '#EXT-X-TARGETDURATION:6']
        for name in segments:
            lines += ['#EXTINF:6.0,', name]
        lines.append('#EXT-X-ENDLIST')
        playlist.write_text('\n'.join(lines) + '\n')
        return subprocess.CompletedProcess(cmd, 0, '', '')


class RecordingProgressLog:
    def __init__(self):
        self.events = []
        self.forgotten = []
        self._lock = threading.Lock()

    def append(self, resource_id, message, progress=None):
        with self._lock:
            self.events.append((resource_id, message, progress))

    def forget(self, resource_id):
        with self._lock:
            self.forgotten.append(resource_id)

    def for_resource(self, resource_id):
        with self._lock:
            return [e for e in self.events if e[0] == resource_id]


@pytest.fixture
def store():
    return MemoryStore({'in/r1.mp4': b'source-video-bytes'})


@pytest.fixture
def ffmpeg():
    return FakeFFmpeg()


@pytest.fixture
def temp_dir(tmp_path):
    path = tmp_path / 'encoding_videos'
    path.mkdir()
    return path


@pytest.fixture
def engine(store, ffmpeg, temp_dir):
    return TranscodeEngine(store, temp_dir=temp_dir, ffmpeg_path='ffmpeg', runner=ffmpeg)


@pytest.fixture
def progress_log():
    return RecordingProgressLog()


@pytest.fixture
def tracker(engine, progress_log):
    tracker = JobTracker(engine, progress_log, max_workers=4)
    yield tracker
    tracker.shutdown(wait=True)
