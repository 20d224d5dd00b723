import subprocess

import pytest

from transcoder.engine import TranscodeEngine
from transcoder.errors import FetchError, EncodeError, PublishError, ManifestError
from transcoder.renditions import QUALITY_PRESETS, resolve_ladder

from conftest import FakeFFmpeg


LADDER = resolve_ladder(['360p', '720p'])


def test_fetch_source_downloads_to_unique_files(engine, temp_dir):
    first = engine.fetch_source('r1', 'in/r1.mp4')
    second = engine.fetch_source('r1', 'in/r1.mp4')

    assert first != second
    assert first.parent == temp_dir and second.parent == temp_dir
    assert first.read_bytes() == b'source-video-bytes'
    assert first.suffix == '.mp4'


def test_fetch_source_missing_key_raises_fetch_error(engine, temp_dir):
    with pytest.raises(FetchError) as exc:
        engine.fetch_source('r1', 'in/missing.mp4')

    assert 'in/missing.mp4' in str(exc.value)
    assert list(temp_dir.iterdir()) == []


def test_prepare_workspace_is_fresh_per_call(engine):
    a = engine.prepare_workspace('r1')
    b = engine.prepare_workspace('r1')
    assert a != b
    assert a.is_dir() and b.is_dir()


def test_encode_command_uses_rendition_settings(engine, ffmpeg, tmp_path):
    source = engine.fetch_source('r1', 'in/r1.mp4')
    work_dir = engine.prepare_workspace('r1')

    playlist = engine.encode_rendition(source, work_dir, QUALITY_PRESETS['360p'])

    cmd = ffmpeg.calls[0]
    assert cmd[0] == 'ffmpeg'
    assert cmd[cmd.index('-c:v') + 1] == 'libx264'
    assert cmd[cmd.index('-c:a') + 1] == 'aac'
    assert cmd[cmd.index('-b:v') + 1] == '500k'
    assert cmd[cmd.index('-maxrate') + 1] == '500k'
    assert cmd[cmd.index('-bufsize') + 1] == '1000k'
    assert cmd[cmd.index('-vf') + 1] == 'scale=640:360'
    assert cmd[cmd.index('-hls_time') + 1] == '6'
    assert cmd[cmd.index('-hls_segment_filename') + 1] == str(work_dir / '360p' / 'segment_%03d.ts')
    assert playlist == work_dir / '360p' / 'playlist.m3u8'
    assert playlist.exists()


def test_encode_nonzero_exit_raises_with_stderr(store, temp_dir):
    failing = FakeFFmpeg(returncode=1, stderr='Invalid data found when processing input')
    engine = TranscodeEngine(store, temp_dir=temp_dir, ffmpeg_path='ffmpeg', runner=failing)
    source = engine.fetch_source('r1', 'in/r1.mp4')
    work_dir = engine.prepare_workspace('r1')

    with pytest.raises(EncodeError) as exc:
        engine.encode_rendition(source, work_dir, QUALITY_PRESETS['720p'])

    assert exc.value.returncode == 1
    assert 'Invalid data found' in exc.value.stderr
    assert '720p' in str(exc.value)


def test_encode_timeout_raises_encode_error(store, temp_dir):
    def runner(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs['timeout'], stderr=b'frame=  120')

    engine = TranscodeEngine(store, temp_dir=temp_dir, ffmpeg_path='ffmpeg',
                             encode_timeout=5, runner=runner)
    with pytest.raises(EncodeError) as exc:
        engine.encode_rendition(temp_dir / 'in.mp4', engine.prepare_workspace('r1'),
                                QUALITY_PRESETS['360p'])
    assert 'timed out' in str(exc.value)
    assert exc.value.stderr == 'frame=  120'


def test_encode_without_ffmpeg_raises(store, temp_dir, monkeypatch):
    monkeypatch.setattr('transcoder.engine.resolve_ffmpeg_path', lambda: None)
    engine = TranscodeEngine(store, temp_dir=temp_dir, runner=FakeFFmpeg())
    with pytest.raises(EncodeError):
        engine.encode_rendition(temp_dir / 'in.mp4', engine.prepare_workspace('r1'),
                                QUALITY_PRESETS['360p'])


def _encoded_workspace(engine):
    source = engine.fetch_source('r1', 'in/r1.mp4')
    work_dir = engine.prepare_workspace('r1')
    for rendition in LADDER:
        engine.encode_rendition(source, work_dir, rendition)
    return source, work_dir


def test_publish_renditions_preserves_structure_and_content_types(engine, store):
    _, work_dir = _encoded_workspace(engine)
    (work_dir / 'notes.txt').write_text('not part of the package')

    keys = engine.publish_renditions(work_dir, 'hls/r1/')

    assert sorted(keys) == keys
    assert set(keys) == {
        'hls/r1/360p/playlist.m3u8',
        'hls/r1/360p/segment_000.ts',
        'hls/r1/360p/segment_001.ts',
        'hls/r1/720p/playlist.m3u8',
        'hls/r1/720p/segment_000.ts',
        'hls/r1/720p/segment_001.ts',
    }
    assert store.content_types['hls/r1/720p/playlist.m3u8'] == 'application/vnd.apple.mpegurl'
    assert store.content_types['hls/r1/720p/segment_000.ts'] == 'video/MP2T'


def test_partial_publish_failure_raises_publish_error(engine, store):
    _, work_dir = _encoded_workspace(engine)
    store.fail_keys.add('hls/r1/720p/playlist.m3u8')

    with pytest.raises(PublishError) as exc:
        engine.publish_renditions(work_dir, 'hls/r1')

    assert 'hls/r1/720p/playlist.m3u8' in str(exc.value)
    assert 'after 3 successful uploads' in str(exc.value)


def test_manifest_lists_renditions_in_order_with_relative_paths(engine, store, temp_dir):
    work_dir = engine.prepare_workspace('r1')

    key = engine.publish_manifest(work_dir, 'hls/r1', LADDER)

    assert key == 'hls/r1/master.m3u8'
    content = store.objects[key].decode()
    assert content == (
        '#EXTM3U\n'
        '#EXT-X-VERSION:3\n'
        '#EXT-X-STREAM-INF:BANDWIDTH=500000,RESOLUTION=640x360\n'
        '360p/playlist.m3u8\n'
        '#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=1280x720\n'
        '720p/playlist.m3u8\n'
    )
    assert content.count('#EXT-X-STREAM-INF') == 2
    assert '://' not in content and '?' not in content
    assert store.content_types[key] == 'application/vnd.apple.mpegurl'
    assert (work_dir / 'master.m3u8').read_text() == content


def test_manifest_upload_failure_raises_manifest_error(engine, store):
    store.fail_keys.add('hls/r1/master.m3u8')
    with pytest.raises(ManifestError):
        engine.publish_manifest(engine.prepare_workspace('r1'), 'hls/r1', LADDER)


def test_cleanup_removes_download_and_workspace(engine):
    source, work_dir = _encoded_workspace(engine)

    engine.cleanup(source, work_dir)

    assert not source.exists()
    assert not work_dir.exists()


def test_cleanup_tolerates_missing_paths(engine, temp_dir):
    engine.cleanup(None, None)
    engine.cleanup(temp_dir / 'gone.mp4', temp_dir / 'gone')


def test_cleanup_swallows_removal_errors(engine, monkeypatch):
    source, work_dir = _encoded_workspace(engine)

    def boom(path):
        raise PermissionError(f"cannot remove {path}")

    monkeypatch.setattr('transcoder.engine.shutil.rmtree', boom)
    engine.cleanup(source, work_dir)

    assert not source.exists()
