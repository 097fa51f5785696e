"""Tests for FFmpegAssembler with ffmpeg and ffprobe stubbed out."""

import subprocess
import uuid

import httpx
import pytest

from docuvid.exceptions import AssemblyError, TransientAssemblyError
from docuvid.pipeline import assembly
from docuvid.pipeline.assembly import FFmpegAssembler
from docuvid.services.file_manager import FileManager


@pytest.fixture
def file_manager(tmp_path):
    return FileManager(tmp_path / "media", "/media")


@pytest.fixture
def ffmpeg_calls(monkeypatch):
    """Replace the ffmpeg steps; record what they were given."""
    calls = {}

    def fake_assemble(clip_paths, audio_paths, output_path):
        calls["clips"] = list(clip_paths)
        calls["audio"] = list(audio_paths)
        output_path.write_bytes(b"mp4")

    def fake_thumbnail(video_path, thumbnail_path):
        thumbnail_path.write_bytes(b"jpg")

    monkeypatch.setattr(assembly, "_assemble_video", fake_assemble)
    monkeypatch.setattr(assembly, "_extract_thumbnail", fake_thumbnail)
    monkeypatch.setattr(assembly, "_probe_duration", lambda path: 24.0)
    return calls


def clip_server(status_by_path=None):
    status_by_path = status_by_path or {}

    def handler(request):
        status = status_by_path.get(request.url.path, 200)
        return httpx.Response(status, content=f"clip {request.url.path}".encode())

    return httpx.MockTransport(handler)


async def test_clips_downloaded_and_concatenated_in_index_order(file_manager, ffmpeg_calls):
    video_id = uuid.uuid4()
    assembler = FFmpegAssembler(file_manager, transport=clip_server())

    result = await assembler.assemble(
        video_id,
        [(3, "https://cdn.example.com/3.mp4"), (0, "https://cdn.example.com/0.mp4"), (1, "https://cdn.example.com/1.mp4")],
        [],
    )

    assert [p.name for p in ffmpeg_calls["clips"]] == ["scene_000.mp4", "scene_001.mp4", "scene_003.mp4"]
    assert ffmpeg_calls["clips"][0].read_bytes() == b"clip /0.mp4"
    assert result.video_url == f"/media/{video_id}/output/final.mp4"
    assert result.thumbnail_url == f"/media/{video_id}/output/thumbnail.jpg"
    assert result.duration_seconds == 24.0


async def test_local_narration_and_clips_are_used_in_place(file_manager, ffmpeg_calls):
    video_id = uuid.uuid4()
    audio = file_manager.save_narration_audio(video_id, "validation", b"mp3")
    local_clip = file_manager.get_clip_path(video_id, 0)
    local_clip.write_bytes(b"already here")

    def no_network(request):
        raise AssertionError(f"unexpected download of {request.url}")

    assembler = FFmpegAssembler(file_manager, transport=httpx.MockTransport(no_network))
    await assembler.assemble(
        video_id,
        [(0, file_manager.media_url(local_clip))],
        [file_manager.media_url(audio), "/media/missing/audio/agency.mp3"],
    )

    assert ffmpeg_calls["clips"] == [local_clip]
    assert ffmpeg_calls["audio"] == [audio]


async def test_no_ready_scenes_is_an_error(file_manager, ffmpeg_calls):
    with pytest.raises(AssemblyError):
        await FFmpegAssembler(file_manager).assemble(uuid.uuid4(), [], [])


async def test_server_error_on_download_is_transient(file_manager, ffmpeg_calls):
    assembler = FFmpegAssembler(file_manager, transport=clip_server({"/1.mp4": 503}))

    with pytest.raises(TransientAssemblyError):
        await assembler.assemble(
            uuid.uuid4(),
            [(0, "https://cdn.example.com/0.mp4"), (1, "https://cdn.example.com/1.mp4")],
            [],
        )


async def test_missing_clip_is_permanent(file_manager, ffmpeg_calls):
    assembler = FFmpegAssembler(file_manager, transport=clip_server({"/0.mp4": 404}))

    with pytest.raises(AssemblyError) as exc_info:
        await assembler.assemble(uuid.uuid4(), [(0, "https://cdn.example.com/0.mp4")], [])

    assert not isinstance(exc_info.value, TransientAssemblyError)


async def test_ffmpeg_failure_becomes_assembly_error(file_manager, monkeypatch):
    def broken(clip_paths, audio_paths, output_path):
        raise subprocess.CalledProcessError(1, ["ffmpeg"], stderr=b"Invalid data found")

    monkeypatch.setattr(assembly, "_assemble_video", broken)
    assembler = FFmpegAssembler(file_manager, transport=clip_server())

    with pytest.raises(AssemblyError, match="Invalid data found"):
        await assembler.assemble(uuid.uuid4(), [(0, "https://cdn.example.com/0.mp4")], [])


async def test_thumbnail_failure_does_not_fail_assembly(file_manager, ffmpeg_calls, monkeypatch):
    def no_frame(video_path, thumbnail_path):
        raise subprocess.CalledProcessError(1, ["ffmpeg"], stderr=b"Output file is empty")

    monkeypatch.setattr(assembly, "_extract_thumbnail", no_frame)
    video_id = uuid.uuid4()
    assembler = FFmpegAssembler(file_manager, transport=clip_server())

    result = await assembler.assemble(video_id, [(0, "https://cdn.example.com/0.mp4")], [])

    assert result.video_url == f"/media/{video_id}/output/final.mp4"
    assert result.thumbnail_url is None
    assert result.duration_seconds == 24.0


def test_thumbnail_falls_back_to_first_frame_for_short_video(tmp_path, monkeypatch):
    offsets = []

    def fake_run(cmd, check, capture_output):
        offset = cmd[cmd.index("-ss") + 1]
        offsets.append(offset)
        if offset == "0":
            (tmp_path / "thumb.jpg").write_bytes(b"jpg")
        return subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(assembly.subprocess, "run", fake_run)

    assembly._extract_thumbnail(tmp_path / "final.mp4", tmp_path / "thumb.jpg")

    assert offsets == ["1", "0"]
    assert (tmp_path / "thumb.jpg").exists()
