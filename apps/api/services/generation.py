"""
Generation orchestrator.

Submits image-to-video jobs to the provider and resolves them on demand
through ``check_status``. A job moves from ``processing`` to exactly one of
``completed`` or ``failed`` and is never polled again after that.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import math
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from config import settings
from services.errors import (
    GenerationTimeout,
    NO_VIDEO_MESSAGE,
    PollTransientError,
    ProviderRequestError,
    StorageUploadError,
    SubmissionFailed,
    UPLOAD_FAILED_MESSAGE,
    WatermarkError,
    sanitize_error,
)
from services.job_store import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    JobRecord,
    JobStore,
    new_job_id,
)
from services.providers.types import (
    AspectRatio,
    GenerationRequest,
    ObjectStorage,
    VideoProvider,
    Watermarker,
    WatermarkPosition,
)

logger = logging.getLogger(__name__)

TONE_MODIFIERS = {
    "friendly": "in a cheerful and playful tone",
    "calm": "in a calm and sincere tone",
    "excited": "in an excited and energetic tone",
    "sad": "in a sad and emotional tone",
    "funny": "in a funny and sarcastic tone",
    "professional": "in a professional and clear tone",
}

INTENT_CONTEXT = {
    "adoption": ". The video has a warm, hopeful feeling suitable for adoption or rescue.",
    "apology": ". The video conveys sincerity and heartfelt emotion.",
    "celebration": ". The video is joyful and celebratory.",
    "funny": ". The video is humorous and entertaining.",
    "business": ". The video is professional and clear for promotional purposes.",
    "memorial": ". The video is respectful and touching, suitable for a tribute.",
}

STYLE_DIRECTIVES = (
    " Preserve the exact visual style, lighting, and quality of the input image."
    " If the image is photorealistic, maintain photorealism."
    " If it's a cartoon or illustration, maintain that style."
    " Use natural lip-sync and realistic movements."
)


def compute_duration(
    text: str,
    chars_per_second: int = 15,
    min_seconds: int = 4,
    max_seconds: int = 8,
) -> int:
    """Clip length in seconds so the spoken line roughly fits."""
    estimated = math.ceil(len(text or "") / chars_per_second)
    return max(min_seconds, min(estimated, max_seconds))


def build_prompt(
    prompt: str,
    *,
    tone: Optional[str] = None,
    intent: Optional[str] = None,
    background: Optional[str] = None,
    duration_seconds: Optional[int] = None,
) -> str:
    tone_modifier = TONE_MODIFIERS.get(tone, "") if tone else "in a friendly tone"
    text = (
        "A talking dog video that exactly matches the visual style of the input image. "
        f'The dog should appear to be speaking {tone_modifier}, saying: "{prompt}"'
    )
    if background and background.strip():
        text += f". The scene is set in {background.strip()}"
    if intent and intent in INTENT_CONTEXT:
        text += INTENT_CONTEXT[intent]
    text += STYLE_DIRECTIVES
    if duration_seconds:
        text += f" The video should be {duration_seconds} seconds long."
    return text


def guess_image_mime(path: str) -> str:
    suffix = Path(path).suffix.lower()
    if suffix == ".png":
        return "image/png"
    if suffix == ".webp":
        return "image/webp"
    return "image/jpeg"


@dataclass(frozen=True)
class GenerationOptions:
    tone: Optional[str] = None
    intent: Optional[str] = None
    background: Optional[str] = None
    aspect_ratio: AspectRatio = "16:9"
    generate_audio: bool = True
    admission_mode: Optional[str] = None


@dataclass(frozen=True)
class SubmissionResult:
    job_id: str
    operation_name: str
    duration_seconds: int


@dataclass(frozen=True)
class StatusResult:
    job_id: str
    status: str
    result_url: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_FAILED)

    @classmethod
    def from_record(cls, job: JobRecord) -> "StatusResult":
        return cls(
            job_id=job.id,
            status=job.status,
            result_url=job.result_url,
            error_message=job.error_message,
        )


def _read_base64(path: str) -> str:
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


def _write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


def _remove_quietly(paths: List[Path]) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove staging file %s: %s", path, exc)


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        provider: VideoProvider,
        job_store: JobStore,
        storage: ObjectStorage,
        watermarker: Optional[Watermarker],
        staging_dir: str,
        watermark_enabled: bool = True,
        watermark_text: str = "MakeMyDogTalk.com",
        watermark_font_size: int = 24,
        watermark_opacity: float = 0.3,
        watermark_position: WatermarkPosition = "bottom-center",
        chars_per_second: int = 15,
        min_duration_seconds: int = 4,
        max_duration_seconds: int = 8,
        storage_prefix: str = "videos",
    ) -> None:
        self.provider = provider
        self.job_store = job_store
        self.storage = storage
        self.watermarker = watermarker
        self.staging_dir = Path(staging_dir)
        self.watermark_enabled = watermark_enabled
        self.watermark_text = watermark_text
        self.watermark_font_size = watermark_font_size
        self.watermark_opacity = watermark_opacity
        self.watermark_position = watermark_position
        self.chars_per_second = chars_per_second
        self.min_duration_seconds = min_duration_seconds
        self.max_duration_seconds = max_duration_seconds
        self.storage_prefix = storage_prefix.strip("/")

    def compute_duration(self, text: str) -> int:
        return compute_duration(
            text,
            chars_per_second=self.chars_per_second,
            min_seconds=self.min_duration_seconds,
            max_seconds=self.max_duration_seconds,
        )

    async def submit_generation(
        self,
        prompt: str,
        image_path: str,
        options: Optional[GenerationOptions] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> SubmissionResult:
        """Start a generation. Raises ``SubmissionFailed`` with a user-safe message."""
        options = options or GenerationOptions()
        try:
            image_base64 = await asyncio.to_thread(_read_base64, image_path)
        except OSError as exc:
            logger.error("Could not read source image %s: %s", image_path, exc)
            raise SubmissionFailed("Could not read the uploaded image. Please try again.") from exc

        duration = self.compute_duration(prompt)
        request = GenerationRequest(
            prompt=build_prompt(
                prompt,
                tone=options.tone,
                intent=options.intent,
                background=options.background,
                duration_seconds=duration,
            ),
            image_base64=image_base64,
            mime_type=guess_image_mime(image_path),
            duration_seconds=duration,
            aspect_ratio=options.aspect_ratio,
            generate_audio=options.generate_audio,
        )

        try:
            operation_name = await self.provider.submit(request)
        except ProviderRequestError as exc:
            logger.error(
                "Video submission rejected (status=%s): %s | raw=%s",
                exc.status_code,
                exc,
                exc.raw,
            )
            raise SubmissionFailed(sanitize_error(exc)) from exc
        except Exception as exc:
            logger.exception("Video submission crashed")
            raise SubmissionFailed(sanitize_error(exc)) from exc

        try:
            job = await self.job_store.create(
                JobRecord(
                    id=new_job_id(),
                    operation_name=operation_name,
                    status=STATUS_PROCESSING,
                    prompt=prompt,
                    source_image_ref=image_path,
                    owner_id=owner_id,
                    admission_mode=options.admission_mode,
                    duration_seconds=duration,
                    aspect_ratio=options.aspect_ratio,
                    generate_audio=options.generate_audio,
                )
            )
        except Exception as exc:
            logger.exception("Could not record job for operation %s", operation_name)
            raise SubmissionFailed(sanitize_error(exc)) from exc
        logger.info("Generation job %s submitted as %s", job.id, operation_name)
        return SubmissionResult(job_id=job.id, operation_name=operation_name, duration_seconds=duration)

    async def check_status(self, job_id: str) -> Optional[StatusResult]:
        """Resolve a job's current state. Returns None only for an unknown job id."""
        job = await self.job_store.get_by_id(job_id)
        if job is None:
            return None
        if job.is_terminal or not job.operation_name:
            return StatusResult.from_record(job)

        try:
            poll = await self.provider.poll(job.operation_name)
        except PollTransientError as exc:
            logger.warning("Transient poll failure for job %s: %s", job_id, exc)
            return StatusResult.from_record(job)
        except Exception as exc:
            logger.exception("Unexpected poll failure for job %s", job_id)
            return await self._finish(job_id, status=STATUS_FAILED, error_message=sanitize_error(exc))

        if not poll.done:
            return StatusResult(job_id=job_id, status=STATUS_PROCESSING)

        if poll.error_message:
            logger.warning("Provider reported failure for job %s: %s", job_id, poll.error_message)
            return await self._finish(
                job_id, status=STATUS_FAILED, error_message=sanitize_error(poll.error_message)
            )

        # The provider may return several samples; only the first is kept.
        video = poll.videos[0] if poll.videos else None
        if video is None or not video.has_payload:
            return await self._finish(job_id, status=STATUS_FAILED, error_message=NO_VIDEO_MESSAGE)

        try:
            payload = await self.provider.fetch_video(video)
        except PollTransientError as exc:
            logger.warning("Could not fetch finished video for job %s: %s", job_id, exc)
            return StatusResult.from_record(job)
        except Exception as exc:
            logger.exception("Finished video for job %s could not be decoded", job_id)
            return await self._finish(job_id, status=STATUS_FAILED, error_message=sanitize_error(exc))
        if not payload:
            return await self._finish(job_id, status=STATUS_FAILED, error_message=NO_VIDEO_MESSAGE)

        return await self._publish(job_id, payload)

    async def _publish(self, job_id: str, payload: bytes) -> StatusResult:
        staged = self.staging_dir / f"{job_id}_{uuid.uuid4().hex[:8]}.mp4"
        cleanup = [staged]
        try:
            await asyncio.to_thread(_write_bytes, staged, payload)
            final_path = await self._watermark(staged, cleanup)
            try:
                url = await self.storage.upload(str(final_path), f"{self.storage_prefix}/{job_id}.mp4")
            except StorageUploadError as exc:
                logger.error("Upload failed for job %s: %s", job_id, exc)
                return await self._finish(job_id, status=STATUS_FAILED, error_message=UPLOAD_FAILED_MESSAGE)
            except Exception:
                logger.exception("Upload failed for job %s", job_id)
                return await self._finish(job_id, status=STATUS_FAILED, error_message=UPLOAD_FAILED_MESSAGE)
        except OSError as exc:
            logger.error("Could not stage video for job %s: %s", job_id, exc)
            return await self._finish(job_id, status=STATUS_FAILED, error_message=UPLOAD_FAILED_MESSAGE)
        finally:
            await asyncio.to_thread(_remove_quietly, cleanup)

        return await self._finish(job_id, status=STATUS_COMPLETED, result_url=url)

    async def _watermark(self, staged: Path, cleanup: List[Path]) -> Path:
        if not self.watermark_enabled or self.watermarker is None:
            return staged
        try:
            if not await self.watermarker.is_available():
                logger.warning("Watermark tool unavailable; publishing without watermark")
                return staged
            output = await self.watermarker.apply(
                str(staged),
                text=self.watermark_text,
                font_size=self.watermark_font_size,
                opacity=self.watermark_opacity,
                position=self.watermark_position,
            )
        except WatermarkError as exc:
            logger.warning("Watermarking failed, publishing original: %s", exc)
            return staged
        except Exception:
            logger.exception("Watermarking crashed, publishing original")
            return staged
        watermarked = Path(output)
        cleanup.append(watermarked)
        return watermarked

    async def _finish(
        self,
        job_id: str,
        *,
        status: str,
        result_url: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> StatusResult:
        updated = await self.job_store.update(
            job_id,
            expected_status=STATUS_PROCESSING,
            status=status,
            result_url=result_url,
            error_message=error_message,
            completed_at=datetime.now(timezone.utc),
        )
        if updated is None:
            return StatusResult(job_id=job_id, status=status, result_url=result_url, error_message=error_message)
        # A concurrent check may have finalized first; its stored result wins.
        return StatusResult.from_record(updated)


async def wait_for_completion(
    orchestrator: GenerationOrchestrator,
    job_id: str,
    *,
    max_attempts: Optional[int] = None,
    interval: Optional[float] = None,
) -> StatusResult:
    """Poll ``check_status`` until the job is terminal or the attempt cap is hit.

    Attempts and interval default to ``POLL_MAX_ATTEMPTS`` and ``POLL_INTERVAL_SECONDS``.
    """
    if max_attempts is None:
        max_attempts = int(settings.POLL_MAX_ATTEMPTS)
    if interval is None:
        interval = float(settings.POLL_INTERVAL_SECONDS)
    for attempt in range(1, max_attempts + 1):
        result = await orchestrator.check_status(job_id)
        if result is None:
            raise LookupError(f"Generation job {job_id} not found")
        if result.is_terminal:
            return result
        logger.debug("Job %s still processing (attempt %s/%s)", job_id, attempt, max_attempts)
        if attempt < max_attempts:
            await asyncio.sleep(interval)
    raise GenerationTimeout(f"Video generation timed out after {max_attempts} attempts")


def build_orchestrator(
    settings,
    *,
    provider: VideoProvider,
    job_store: JobStore,
    storage: ObjectStorage,
    watermarker: Optional[Watermarker],
) -> GenerationOrchestrator:
    os.makedirs(settings.VIDEO_STAGING_DIR, exist_ok=True)
    return GenerationOrchestrator(
        provider=provider,
        job_store=job_store,
        storage=storage,
        watermarker=watermarker,
        staging_dir=settings.VIDEO_STAGING_DIR,
        watermark_enabled=settings.WATERMARK_ENABLED,
        watermark_text=settings.WATERMARK_TEXT,
        watermark_font_size=settings.WATERMARK_FONT_SIZE,
        watermark_opacity=settings.WATERMARK_OPACITY,
        watermark_position=settings.WATERMARK_POSITION,
        chars_per_second=settings.DURATION_CHARS_PER_SECOND,
        min_duration_seconds=settings.DURATION_MIN_SECONDS,
        max_duration_seconds=settings.DURATION_MAX_SECONDS,
    )
