"""Final video assembly with ffmpeg (layer 7).

Downloads the ready scene clips, concatenates them in scene order with the
concat demuxer, lays the narration track over the result, and extracts a
thumbnail frame and the total duration.

Gap policy: failed scenes are skipped, not replaced with filler.
"""

import asyncio
import json
import logging
import subprocess
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from docuvid.exceptions import AssemblyError, TransientAssemblyError
from docuvid.services.file_manager import FileManager

logger = logging.getLogger(__name__)


@dataclass
class AssemblyResult:
    video_url: str
    thumbnail_url: Optional[str]
    duration_seconds: Optional[float]


class FFmpegAssembler:
    """Assembles ready scene clips and narration audio into one MP4."""

    def __init__(
        self,
        file_manager: Optional[FileManager] = None,
        *,
        download_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._file_manager = file_manager or FileManager()
        self._download_timeout = download_timeout
        self._transport = transport

    async def assemble(
        self,
        video_id: uuid.UUID,
        scene_videos: list[tuple[int, str]],
        narration_audio: list[str],
    ) -> AssemblyResult:
        """Build the final video.

        Args:
            video_id: Run id, used for the output directory.
            scene_videos: (scene_index, video_url) for ready scenes.
            narration_audio: Media URLs of ready narration segments, in speaking order.

        Raises:
            TransientAssemblyError: Clip download failed in a way worth retrying.
            AssemblyError: ffmpeg failed or inputs are unusable.
        """
        if not scene_videos:
            raise AssemblyError("No ready scenes to assemble")

        ordered = sorted(scene_videos, key=lambda item: item[0])
        clip_paths = await self._download_clips(video_id, ordered)
        audio_paths = [
            path
            for path in (self._file_manager.resolve_media_url(url) for url in narration_audio)
            if path is not None and path.exists()
        ]

        output_path = self._file_manager.get_output_path(video_id, "final.mp4")
        thumbnail_path = self._file_manager.get_output_path(video_id, "thumbnail.jpg")
        logger.info(
            f"Video {video_id}: assembling {len(clip_paths)} clips "
            f"(scenes {[index for index, _ in ordered]}) with {len(audio_paths)} narration segments"
        )

        try:
            await asyncio.to_thread(_assemble_video, clip_paths, audio_paths, output_path)
            duration = await asyncio.to_thread(_probe_duration, output_path)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr or "No error output"
            if isinstance(stderr, bytes):
                stderr = stderr.decode(errors="replace")
            raise AssemblyError(f"ffmpeg failed: {stderr[-500:]}") from e
        except FileNotFoundError as e:
            raise AssemblyError("ffmpeg not found on PATH") from e

        # Thumbnail is optional
        try:
            await asyncio.to_thread(_extract_thumbnail, output_path, thumbnail_path)
        except subprocess.CalledProcessError as e:
            logger.warning(f"Video {video_id}: thumbnail extraction failed (exit {e.returncode})")

        return AssemblyResult(
            video_url=self._file_manager.media_url(output_path),
            thumbnail_url=self._file_manager.media_url(thumbnail_path) if thumbnail_path.exists() else None,
            duration_seconds=duration,
        )

    async def _download_clips(
        self,
        video_id: uuid.UUID,
        ordered: list[tuple[int, str]],
    ) -> list[Path]:
        paths = []
        async with httpx.AsyncClient(
            timeout=self._download_timeout,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            for scene_index, url in ordered:
                local = self._file_manager.resolve_media_url(url)
                if local is not None and local.exists():
                    paths.append(local)
                    continue
                path = self._file_manager.get_clip_path(video_id, scene_index)
                try:
                    response = await client.get(url)
                except httpx.TransportError as e:
                    raise TransientAssemblyError(
                        f"Clip download for scene {scene_index} failed: {type(e).__name__}"
                    ) from e
                if response.status_code == 429 or response.status_code >= 500:
                    raise TransientAssemblyError(
                        f"Clip download for scene {scene_index} returned {response.status_code}"
                    )
                if not response.is_success:
                    raise AssemblyError(
                        f"Clip download for scene {scene_index} returned {response.status_code}"
                    )
                await asyncio.to_thread(path.write_bytes, response.content)
                paths.append(path)
        return paths


def _assemble_video(clip_paths: list[Path], audio_paths: list[Path], output_path: Path) -> None:
    """Concatenate clips (concat demuxer) and mux narration when present."""
    work_dir = output_path.parent
    video_list = work_dir / "concat_list.txt"
    audio_list = work_dir / "narration_list.txt"
    silent_path = work_dir / "scenes.mp4"

    try:
        _write_concat_list(video_list, clip_paths)
        # -safe 0 allows absolute paths in the list file
        subprocess.run(
            [
                "ffmpeg", "-y",
                "-f", "concat", "-safe", "0",
                "-i", str(video_list),
                "-c", "copy",
                str(silent_path if audio_paths else output_path),
            ],
            check=True,
            capture_output=True,
        )

        if audio_paths:
            _write_concat_list(audio_list, audio_paths)
            subprocess.run(
                [
                    "ffmpeg", "-y",
                    "-i", str(silent_path),
                    "-f", "concat", "-safe", "0",
                    "-i", str(audio_list),
                    "-map", "0:v:0", "-map", "1:a:0",
                    "-c:v", "copy", "-c:a", "aac",
                    str(output_path),
                ],
                check=True,
                capture_output=True,
            )
        logger.info(f"Assembly complete: {output_path}")
    finally:
        for temp in (video_list, audio_list, silent_path):
            if temp.exists():
                temp.unlink()


def _write_concat_list(list_file: Path, paths: list[Path]) -> None:
    with open(list_file, "w") as f:
        for path in paths:
            f.write(f"file '{path.resolve()}'\n")


def _extract_thumbnail(video_path: Path, thumbnail_path: Path) -> None:
    """Grab a frame at 1s, or the first frame when the video is shorter."""
    if thumbnail_path.exists():
        thumbnail_path.unlink()
    for offset in ("1", "0"):
        subprocess.run(
            [
                "ffmpeg", "-y",
                "-ss", offset,
                "-i", str(video_path),
                "-frames:v", "1",
                str(thumbnail_path),
            ],
            check=offset == "0",
            capture_output=True,
        )
        if thumbnail_path.exists():
            return


def _probe_duration(video_path: Path) -> Optional[float]:
    result = subprocess.run(
        [
            "ffprobe", "-v", "error",
            "-show_entries", "format=duration",
            "-of", "json",
            str(video_path),
        ],
        check=True,
        capture_output=True,
        text=True,
    )
    try:
        return round(float(json.loads(result.stdout)["format"]["duration"]), 2)
    except (KeyError, ValueError, TypeError):
        return None
