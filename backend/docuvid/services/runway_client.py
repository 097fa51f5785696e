"""Runway text-to-video task client.

Submits asynchronous generation tasks and polls them to completion:
- submit(prompt, duration) -> task id
- poll(task_id) -> TaskStatus(running | done | failed)

Transient failures (timeouts, connection errors, 429, 5xx) are retried with
exponential backoff via tenacity; anything else raises PermanentProviderError
immediately. Task lookup tries /v1/tasks and then /v1/generations, since Runway
has served task state from both; a lookup is only retried when neither path
answered.

Usage:
    client = RunwayClient.from_settings()
    task_id = await client.submit(prompt, duration=8)
    status = await client.poll(task_id)
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from docuvid.config import settings
from docuvid.exceptions import PermanentProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# Allowed clip durations per Runway model
MODEL_DURATIONS: dict[str, list[int]] = {
    "gen4.5": [5, 8, 10],
    "gen3a_turbo": [5, 8, 10],
    "veo3": [4, 6, 8],
    "veo3.1": [4, 6, 8],
    "veo3.1_fast": [4, 6, 8],
}
DEFAULT_DURATIONS = [5, 8, 10]

DONE_STATUSES = {"SUCCEEDED", "SUCCESS", "COMPLETED"}
FAILED_STATUSES = {"FAILED", "ERROR", "CANCELLED"}
TASK_LOOKUP_PATHS = ("/v1/tasks/{task_id}", "/v1/generations/{task_id}")


@dataclass
class TaskStatus:
    """Result of one poll."""

    state: str  # "running" | "done" | "failed"
    video_url: Optional[str] = None
    reason: Optional[str] = None


def normalize_duration(duration: float, model: str, max_duration: int) -> int:
    """Snap a requested duration to the nearest value the model accepts."""
    allowed = MODEL_DURATIONS.get(model, DEFAULT_DURATIONS)
    if not duration or duration <= 0:
        return allowed[0]
    clamped = min(duration, max_duration)
    return min(allowed, key=lambda d: abs(d - clamped))


def map_task_status(raw_status: Optional[str]) -> str:
    """Map a Runway task status to running/done/failed."""
    status = (raw_status or "").upper()
    if status in DONE_STATUSES:
        return "done"
    if status in FAILED_STATUSES:
        return "failed"
    # PENDING, RUNNING, IN_PROGRESS, THROTTLED and anything new
    return "running"


def _first_url(value: Any) -> Optional[str]:
    """Pull a URL out of a string, {"url": ...} dict or list of either."""
    if isinstance(value, str):
        return value if value.startswith(("http://", "https://")) else None
    if isinstance(value, dict):
        url = value.get("url")
        if isinstance(url, str):
            return url
        video = value.get("video")
        if isinstance(video, dict) and isinstance(video.get("url"), str):
            return video["url"]
        return None
    if isinstance(value, list) and value:
        return _first_url(value[0])
    return None


def extract_video_url(data: dict) -> Optional[str]:
    """Find the video URL across the response shapes Runway has returned."""
    for key in ("output", "outputs", "result", "video", "artifacts", "asset", "assets"):
        url = _first_url(data.get(key))
        if url:
            return url
    video_url = data.get("videoUrl")
    return video_url if isinstance(video_url, str) else None


def extract_task_id(data: dict) -> Optional[str]:
    for key in ("id", "taskId", "jobId", "uuid"):
        value = data.get(key)
        if value:
            return str(value)
    return None


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class RunwayClient:
    """Async client for Runway's task API."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        api_base: str = "https://api.dev.runwayml.com",
        api_version: str = "2024-11-06",
        model: str = "veo3.1",
        ratio: str = "1280:720",
        max_duration_seconds: int = 8,
        max_prompt_chars: int = 1000,
        max_attempts: int = 4,
        base_delay: float = 2.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._api_version = api_version
        self.model = model
        self.ratio = ratio
        self.max_duration_seconds = max_duration_seconds
        self.max_prompt_chars = max_prompt_chars
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls) -> "RunwayClient":
        cfg = settings.runway
        return cls(
            cfg.api_key,
            api_base=cfg.api_base,
            api_version=cfg.api_version,
            model=cfg.model,
            ratio=cfg.ratio,
            max_duration_seconds=cfg.max_duration_seconds,
            max_prompt_chars=cfg.max_prompt_chars,
            max_attempts=settings.pipeline.retry_max_attempts,
            base_delay=settings.pipeline.retry_base_delay,
            timeout=cfg.request_timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise PermanentProviderError("Runway API key not configured")
        return {
            "Authorization": f"Bearer {self._api_key}",
            "X-Runway-Version": self._api_version,
        }

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._base_delay, max=60)
            + wait_random(0, self._base_delay),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request, classifying transport errors as transient."""
        try:
            return await self._client.request(
                method, f"{self._api_base}{path}", headers=self._headers(), **kwargs
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Runway request timed out: {path}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Runway connection error: {type(e).__name__}: {e}") from e

    async def submit(self, prompt: str, duration: float) -> str:
        """Create a text-to-video task and return its id."""
        if len(prompt) > self.max_prompt_chars:
            logger.warning(
                f"Runway prompt is {len(prompt)} chars, truncating to {self.max_prompt_chars}"
            )
            prompt = prompt[: self.max_prompt_chars]
        body = {
            "model": self.model,
            "promptText": prompt,
            "duration": normalize_duration(duration, self.model, self.max_duration_seconds),
            "ratio": self.ratio,
            "audio": False,
        }
        return await self._retrying()(self._submit_once, body)

    async def _submit_once(self, body: dict) -> str:
        response = await self._send("POST", "/v1/text_to_video", json=body)
        if _is_transient_status(response.status_code):
            raise TransientProviderError(
                f"Runway submit returned {response.status_code}",
                details=response.text[:300],
                status_code=response.status_code,
            )
        if not response.is_success:
            raise PermanentProviderError(
                f"Runway rejected task ({response.status_code})",
                details=response.text[:300],
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise PermanentProviderError("Runway submit returned malformed JSON") from e
        task_id = extract_task_id(data) if isinstance(data, dict) else None
        if not task_id:
            raise PermanentProviderError("Runway submit response had no task id")
        logger.info(f"Runway task submitted: {task_id}")
        return task_id

    async def poll(self, task_id: str) -> TaskStatus:
        """Look up a task. Never mutates provider state."""
        return await self._retrying()(self._poll_once, task_id)

    async def _poll_once(self, task_id: str) -> TaskStatus:
        last_error = ""
        transient: Optional[TransientProviderError] = None
        for template in TASK_LOOKUP_PATHS:
            try:
                response = await self._send("GET", template.format(task_id=task_id))
            except TransientProviderError as e:
                transient = e
                continue
            if _is_transient_status(response.status_code):
                transient = TransientProviderError(
                    f"Runway task lookup returned {response.status_code}",
                    details=response.text[:300],
                    status_code=response.status_code,
                )
                continue
            if response.is_success:
                try:
                    data = response.json()
                except ValueError:
                    return TaskStatus(state="failed", reason="Runway task lookup returned malformed JSON")
                return self._parse_task(task_id, data)
            last_error = f"{response.status_code} {response.text[:200]}"

        # A path that was only temporarily unavailable may still hold the task
        if transient is not None:
            raise transient
        return TaskStatus(
            state="failed",
            reason=f"Task lookup failed on all endpoints: {last_error}".strip(),
        )

    def _parse_task(self, task_id: str, data: dict) -> TaskStatus:
        state = map_task_status(data.get("status"))
        if state == "done":
            video_url = extract_video_url(data)
            if not video_url:
                logger.warning(f"Runway task {task_id} completed without a video URL")
                return TaskStatus(state="failed", reason="Task completed without a video URL")
            return TaskStatus(state="done", video_url=video_url)
        if state == "failed":
            reason = data.get("failure_reason") or data.get("failure") or data.get("error")
            return TaskStatus(state="failed", reason=str(reason or "Runway task failed"))
        return TaskStatus(state="running")
