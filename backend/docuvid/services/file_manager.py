"""
File management service for docuvid.

Stores generated media under a per-video directory with path traversal
protection, and maps those files to and from their public media URLs.
"""
import uuid
from pathlib import Path
from typing import Optional

from docuvid.config import settings


class FileManager:
    """
    Manage media files for documentary videos.

    Creates structured directories:
    - {base_dir}/{video_id}/clips/ - Downloaded scene clips
    - {base_dir}/{video_id}/audio/ - Narration segment audio
    - {base_dir}/{video_id}/output/ - Final video and thumbnail

    Files are served by the API under url_prefix (the /media static mount).
    """

    def __init__(self, base_dir: str | Path | None = None, url_prefix: Optional[str] = None):
        if base_dir is None:
            base_dir = settings.storage.media_dir
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.url_prefix = (url_prefix or settings.storage.media_url_prefix).rstrip("/")

    def get_video_dir(self, video_id: uuid.UUID) -> Path:
        """
        Get or create the video directory with its subdirectories.

        Raises:
            ValueError: If video_id resolves outside base_dir
        """
        video_dir = (self.base_dir / str(video_id)).resolve()

        if not video_dir.is_relative_to(self.base_dir):
            raise ValueError("Invalid video path")

        video_dir.mkdir(exist_ok=True)
        (video_dir / "clips").mkdir(exist_ok=True)
        (video_dir / "audio").mkdir(exist_ok=True)
        (video_dir / "output").mkdir(exist_ok=True)

        return video_dir

    def get_clip_path(self, video_id: uuid.UUID, scene_index: int) -> Path:
        return self.get_video_dir(video_id) / "clips" / f"scene_{scene_index:03d}.mp4"

    def get_output_path(self, video_id: uuid.UUID, filename: str) -> Path:
        return self.get_video_dir(video_id) / "output" / filename

    def save_narration_audio(self, video_id: uuid.UUID, segment_type: str, data: bytes) -> Path:
        path = self.get_video_dir(video_id) / "audio" / f"{segment_type}.mp3"
        path.write_bytes(data)
        return path

    def media_url(self, path: Path) -> str:
        """Public URL for a file under base_dir."""
        relative = Path(path).resolve().relative_to(self.base_dir)
        return f"{self.url_prefix}/{relative.as_posix()}"

    def resolve_media_url(self, url: str) -> Optional[Path]:
        """Local path for a media URL, or None if it is not one of ours."""
        if not url.startswith(self.url_prefix + "/"):
            return None
        path = (self.base_dir / url[len(self.url_prefix) + 1:]).resolve()
        if not path.is_relative_to(self.base_dir):
            return None
        return path
