"""Public collaborator contracts for the generation pipeline."""

from services.providers.types import (
    GeneratedVideo,
    GenerationRequest,
    ObjectStorage,
    PollResult,
    VideoProvider,
    Watermarker,
)

__all__ = [
    "GeneratedVideo",
    "GenerationRequest",
    "ObjectStorage",
    "PollResult",
    "VideoProvider",
    "Watermarker",
]
