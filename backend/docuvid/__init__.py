"""Docuvid - documentary video generation from a short text prompt.

This module provides startup validation functions to ensure required
dependencies are available before pipeline execution begins.
Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies() -> None:
    """Validate that ffmpeg and ffprobe are available.

    Assembly shells out to both, so the API and CLI call this on startup to
    fail fast with installation instructions.

    Raises:
        RuntimeError: If ffmpeg or ffprobe is not found or not functional.
    """
    for binary in ("ffmpeg", "ffprobe"):
        try:
            result = subprocess.run(
                [binary, "-version"],
                capture_output=True,
                check=True,
                text=True,
            )
            version_line = result.stdout.split("\n")[0]
            logger.info(f"{binary} validated: {version_line}")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{binary} not found on PATH. Install ffmpeg to assemble documentary videos.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e
