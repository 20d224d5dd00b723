"""
Transcoding engine: download, HLS encoding, upload and cleanup for one job
"""

import os
import re
import shutil
import subprocess
import tempfile
import uuid
import logging
from pathlib import Path

from .errors import FetchError, EncodeError, PublishError, ManifestError

logger = logging.getLogger(__name__)

DEFAULT_TEMP_DIR = os.path.join(tempfile.gettempdir(), 'encoding_videos')
DEFAULT_SEGMENT_SECONDS = 6
DEFAULT_ENCODE_TIMEOUT = 3600

PLAYLIST_NAME = 'playlist.m3u8'
MANIFEST_NAME = 'master.m3u8'
SEGMENT_PATTERN = 'segment_%03d.ts'

CONTENT_TYPES = {
    '.m3u8': 'application/vnd.apple.mpegurl',
    '.ts': 'video/MP2T',
}

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]+')
_STDERR_TAIL = 2000


def _safe_name(value):
    return _UNSAFE_CHARS.sub('_', str(value)) or 'resource'


def resolve_ffmpeg_path(env_path=None):
    """
    Find a usable ffmpeg executable: FFMPEG_PATH (file or directory) first, then PATH.
    Returns None if nothing usable was found.
    """
    env_path = (env_path if env_path is not None else os.getenv('FFMPEG_PATH', '')).strip()
    candidates = []
    if env_path:
        if os.path.isdir(env_path):
            exe_name = 'ffmpeg.exe' if os.name == 'nt' else 'ffmpeg'
            candidates.append(os.path.join(env_path, exe_name))
        else:
            candidates.append(env_path)
    which_path = shutil.which('ffmpeg')
    if which_path:
        candidates.append(which_path)

    for c in candidates:
        if os.path.isabs(c) and not os.path.exists(c):
            logger.debug(f"FFmpeg candidate not found on disk: {c}")
            continue
        logger.info(f"Using ffmpeg executable: {c}")
        return c
    return None


class TranscodeEngine:
    """
    Handles all I/O for converting one source into an HLS package.

    The engine keeps no per-job state: everything a job owns lives in the
    downloaded file and working directory it hands back to the caller.
    """

    def __init__(self, store, temp_dir=None, ffmpeg_path=None,
                 segment_seconds=DEFAULT_SEGMENT_SECONDS,
                 encode_timeout=DEFAULT_ENCODE_TIMEOUT, runner=None):
        self.store = store
        self.temp_dir = Path(temp_dir or DEFAULT_TEMP_DIR)
        self.ffmpeg_path = ffmpeg_path
        self.segment_seconds = int(segment_seconds)
        self.encode_timeout = encode_timeout
        self.runner = runner or subprocess.run

    # ── Download ──────────────────────────────────────────────────────

    def fetch_source(self, resource_id, source_key) -> Path:
        """Download the source object into a file no other job can collide with."""
        suffix = Path(source_key).suffix
        local_path = self.temp_dir / f"input_{_safe_name(resource_id)}_{uuid.uuid4().hex}{suffix}"
        logger.info(f"Downloading source {source_key} -> {local_path}")
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            body = self.store.get(source_key)
            try:
                with open(local_path, 'wb') as f:
                    shutil.copyfileobj(body, f)
            finally:
                close = getattr(body, 'close', None)
                if close:
                    close()
        except Exception as e:
            self._remove_file(local_path)
            raise FetchError(f"Download failed for {source_key}: {e}") from e

        size = local_path.stat().st_size
        logger.info(f"✓ Downloaded {size / 1024 / 1024:.2f} MB")
        return local_path

    def prepare_workspace(self, resource_id) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        work_dir = tempfile.mkdtemp(prefix=f"output_{_safe_name(resource_id)}_", dir=self.temp_dir)
        return Path(work_dir)

    # ── Encoding ──────────────────────────────────────────────────────

    def build_encode_command(self, ffmpeg, local_path, output_dir, rendition):
        return [
            ffmpeg,
            '-y',
            '-i', str(local_path),
            '-c:v', 'libx264',
            '-preset', 'veryfast',
            '-c:a', 'aac',
            '-b:v', rendition.bitrate,
            '-maxrate', rendition.bitrate,
            '-bufsize', rendition.bufsize,
            '-vf', f"scale={rendition.width}:{rendition.height}",
            '-map_metadata', '-1',
            '-hls_time', str(self.segment_seconds),
            '-hls_list_size', '0',
            '-hls_segment_filename', str(Path(output_dir) / SEGMENT_PATTERN),
            '-f', 'hls',
            str(Path(output_dir) / PLAYLIST_NAME),
        ]

    def encode_rendition(self, local_path, work_dir, rendition) -> Path:
        """Run one ffmpeg invocation for a rendition and wait for it to exit."""
        ffmpeg = self.ffmpeg_path or resolve_ffmpeg_path()
        if not ffmpeg:
            raise EncodeError(f"FFmpeg not found or not executable; cannot encode {rendition.name}")

        output_dir = Path(work_dir) / rendition.name
        output_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_encode_command(ffmpeg, local_path, output_dir, rendition)

        logger.info(f"Encoding {rendition.name}: {' '.join(cmd[:6])} ... (truncated)")
        try:
            result = self.runner(cmd, capture_output=True, text=True, timeout=self.encode_timeout)
        except subprocess.TimeoutExpired as e:
            raise EncodeError(
                f"FFmpeg timed out after {self.encode_timeout}s encoding {rendition.name}",
                stderr=_tail(e.stderr),
            ) from e
        except OSError as e:
            raise EncodeError(f"FFmpeg could not be started for {rendition.name}: {e}") from e

        if result.returncode != 0:
            stderr = _tail(result.stderr)
            raise EncodeError(
                f"FFmpeg error encoding {rendition.name} (rc={result.returncode}): {stderr}",
                returncode=result.returncode,
                stderr=stderr,
            )

        playlist = output_dir / PLAYLIST_NAME
        if not playlist.exists():
            raise EncodeError(f"FFmpeg produced no playlist for {rendition.name}", returncode=0)
        logger.info(f"✓ {rendition.name} encoding completed")
        return playlist

    # ── Publishing ────────────────────────────────────────────────────

    def publish_renditions(self, work_dir, destination_prefix):
        """
        Upload every playlist and segment under work_dir, preserving relative paths.
        Returns the list of uploaded keys.
        """
        work_dir = Path(work_dir)
        uploaded = []
        for local_path in sorted(p for p in work_dir.rglob('*') if p.is_file()):
            content_type = CONTENT_TYPES.get(local_path.suffix.lower())
            if content_type is None:
                continue
            key = self.object_key(destination_prefix, local_path.relative_to(work_dir).as_posix())
            try:
                with open(local_path, 'rb') as f:
                    self.store.put(key, f, content_type)
            except Exception as e:
                raise PublishError(
                    f"Upload of {key} failed after {len(uploaded)} successful uploads: {e}"
                ) from e
            uploaded.append(key)

        logger.info(f"✓ Uploaded {len(uploaded)} files under {destination_prefix}")
        return uploaded

    @staticmethod
    def build_manifest(renditions) -> str:
        lines = ['#EXTM3U', '#EXT-X-VERSION:3']
        for rendition in renditions:
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bandwidth},RESOLUTION={rendition.resolution}"
            )
            lines.append(f"{rendition.name}/{PLAYLIST_NAME}")
        return '\n'.join(lines) + '\n'

    def publish_manifest(self, work_dir, destination_prefix, renditions) -> str:
        """Write master.m3u8 into the working directory and upload it. Returns its key."""
        content = self.build_manifest(renditions)
        key = self.manifest_key(destination_prefix)
        try:
            master_path = Path(work_dir) / MANIFEST_NAME
            master_path.write_text(content, encoding='utf-8')
            self.store.put(key, content.encode('utf-8'), CONTENT_TYPES['.m3u8'])
        except Exception as e:
            raise ManifestError(f"Manifest upload to {key} failed: {e}") from e
        logger.info(f"✓ Manifest published to {key}")
        return key

    @staticmethod
    def object_key(destination_prefix, relative):
        return f"{destination_prefix.rstrip('/')}/{relative}".replace("\\", "/")

    def playlist_key(self, destination_prefix, rendition):
        return self.object_key(destination_prefix, f"{rendition.name}/{PLAYLIST_NAME}")

    def manifest_key(self, destination_prefix):
        return self.object_key(destination_prefix, MANIFEST_NAME)

    # ── Cleanup ───────────────────────────────────────────────────────

    def cleanup(self, local_path, work_dir):
        """Remove the downloaded source and working directory. Never raises."""
        self._remove_file(local_path)
        if work_dir:
            try:
                if os.path.exists(work_dir):
                    shutil.rmtree(work_dir)
            except Exception as e:
                logger.warning(f"⚠ Cleanup error for {work_dir}: {e}")
        logger.info("✓ Temporary files cleaned up")

    @staticmethod
    def _remove_file(path):
        if not path:
            return
        try:
            if os.path.exists(path):
                os.remove(path)
        except Exception as e:
            logger.warning(f"⚠ Cleanup error for {path}: {e}")


def _tail(output):
    if not output:
        return ''
    if isinstance(output, bytes):
        output = output.decode('utf-8', errors='ignore')
    return output[-_STDERR_TAIL:]
