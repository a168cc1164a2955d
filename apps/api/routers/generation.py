"""
Talking-dog video generation endpoints.
"""

import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from config import settings
from routers.auth_scope import get_caller_identity, get_current_identity
from routers.deps import get_access_ledger, get_admission_controller, get_job_store, get_orchestrator
from services.access_ledger import AccessLedger
from services.admission import MODE_FREE, AdmissionController
from services.errors import AdmissionDenied, SubmissionFailed
from services.generation import GenerationOptions, GenerationOrchestrator
from services.identity import Identity, is_privileged
from services.job_store import JobStore

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
ASPECT_RATIOS = {"16:9", "9:16", "1:1"}
PROMPT_MIN_LENGTH = 5
PROMPT_MAX_LENGTH = 500


class GenerateVideoResponse(BaseModel):
    job_id: str
    status: str
    mode: str
    duration_seconds: int
    credits_remaining: Optional[int] = None


class VideoStatusResponse(BaseModel):
    job_id: str
    status: str
    result_url: Optional[str] = None
    error_message: Optional[str] = None


class VideoSummary(BaseModel):
    job_id: str
    status: str
    prompt: str
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    aspect_ratio: Optional[str] = None
    duration_seconds: Optional[int] = None
    created_at: Optional[datetime] = None


def _sanitize_filename(filename: str) -> str:
    base = Path(filename).name
    return re.sub(r"[^A-Za-z0-9._-]", "_", base) or "image.jpg"


def _validate_prompt(prompt: str) -> str:
    text = (prompt or "").strip()
    if len(text) < PROMPT_MIN_LENGTH:
        raise HTTPException(status_code=400, detail=f"Prompt must be at least {PROMPT_MIN_LENGTH} characters.")
    if len(text) > PROMPT_MAX_LENGTH:
        raise HTTPException(status_code=400, detail=f"Prompt must be at most {PROMPT_MAX_LENGTH} characters.")
    return text


async def _store_upload(image: UploadFile) -> Path:
    original_filename = _sanitize_filename(image.filename or "image.jpg")
    suffix = Path(original_filename).suffix.lower()
    if suffix not in ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail="Unsupported image type. Upload a JPG, PNG or WEBP image.",
        )

    upload_dir = Path(settings.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    destination = upload_dir / f"{uuid.uuid4()}_{original_filename}"
    max_bytes = int(settings.MAX_UPLOAD_BYTES)

    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await image.read(1024 * 1024)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_bytes:
                    out.close()
                    destination.unlink(missing_ok=True)
                    raise HTTPException(
                        status_code=413,
                        detail=f"Image too large. Max upload size is {max_bytes // (1024 * 1024)}MB.",
                    )
                out.write(chunk)
    finally:
        await image.close()

    if total_size == 0:
        destination.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail="Uploaded image is empty.")
    return destination


@router.post("/generate-video", response_model=GenerateVideoResponse, status_code=202)
async def generate_video(
    image: UploadFile = File(...),
    prompt: str = Form(...),
    tone: Optional[str] = Form(default=None),
    intent: Optional[str] = Form(default=None),
    background: Optional[str] = Form(default=None),
    aspect_ratio: str = Form(default="16:9"),
    generate_audio: bool = Form(default=True),
    use_credit: bool = Form(default=False),
    identity: Identity = Depends(get_caller_identity),
    admission: AdmissionController = Depends(get_admission_controller),
    ledger: AccessLedger = Depends(get_access_ledger),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Admit the caller, submit the generation and return the job id to poll."""
    text = _validate_prompt(prompt)
    if aspect_ratio not in ASPECT_RATIOS:
        raise HTTPException(status_code=422, detail="aspect_ratio must be one of 16:9, 9:16, 1:1.")
    image_path = await _store_upload(image)

    decision = await admission.admit(
        identity,
        wants_to_spend_credit=use_credit,
        is_privileged_override=is_privileged(identity, settings.ADMIN_EMAILS),
    )
    if not decision.allowed:
        image_path.unlink(missing_ok=True)
        raise AdmissionDenied(decision)

    options = GenerationOptions(
        tone=tone,
        intent=intent,
        background=background,
        aspect_ratio=aspect_ratio,
        generate_audio=generate_audio,
        admission_mode=decision.mode,
    )
    try:
        submission = await orchestrator.submit_generation(
            text,
            str(image_path),
            options,
            owner_id=identity.account_id,
        )
    except SubmissionFailed as exc:
        await admission.refund(identity, decision)
        image_path.unlink(missing_ok=True)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except Exception:
        await admission.refund(identity, decision)
        image_path.unlink(missing_ok=True)
        raise

    if decision.mode == MODE_FREE:
        await ledger.record_free_use(identity.key)

    return GenerateVideoResponse(
        job_id=submission.job_id,
        status="processing",
        mode=decision.mode,
        duration_seconds=submission.duration_seconds,
        credits_remaining=decision.new_balance,
    )


@router.get("/video-status/{job_id}", response_model=VideoStatusResponse)
async def video_status(
    job_id: str,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.check_status(job_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Generation job not found")
    return VideoStatusResponse(
        job_id=result.job_id,
        status=result.status,
        result_url=result.result_url,
        error_message=result.error_message,
    )


@router.get("/videos", response_model=List[VideoSummary])
async def list_videos(
    identity: Identity = Depends(get_current_identity),
    job_store: JobStore = Depends(get_job_store),
):
    """The caller's generation history, newest first."""
    jobs = await job_store.list_for_owner(identity.account_id)
    return [
        VideoSummary(
            job_id=job.id,
            status=job.status,
            prompt=job.prompt,
            result_url=job.result_url,
            error_message=job.error_message,
            aspect_ratio=job.aspect_ratio,
            duration_seconds=job.duration_seconds,
            created_at=job.created_at,
        )
        for job in jobs
    ]
