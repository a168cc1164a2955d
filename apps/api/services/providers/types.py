"""Collaborator contracts consumed by the generation orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Literal, Optional


AspectRatio = Literal["16:9", "9:16", "1:1"]
WatermarkPosition = Literal["bottom-center", "bottom-right", "bottom-left", "top-center"]


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    image_base64: str
    mime_type: str
    duration_seconds: int
    aspect_ratio: AspectRatio = "16:9"
    generate_audio: bool = True


@dataclass(frozen=True)
class GeneratedVideo:
    """One sample returned by the provider, either inline bytes or a storage URI."""

    bytes_base64: Optional[str] = None
    uri: Optional[str] = None
    mime_type: str = "video/mp4"

    @property
    def has_payload(self) -> bool:
        return bool(self.bytes_base64 or self.uri)


@dataclass(frozen=True)
class PollResult:
    done: bool
    error_message: Optional[str] = None
    videos: List[GeneratedVideo] = field(default_factory=list)


class VideoProvider(ABC):
    @abstractmethod
    async def submit(self, request: GenerationRequest) -> str:
        """Start a long-running generation and return its operation handle."""
        raise NotImplementedError

    @abstractmethod
    async def poll(self, operation_name: str) -> PollResult:
        raise NotImplementedError

    @abstractmethod
    async def fetch_video(self, video: GeneratedVideo) -> bytes:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class Watermarker(ABC):
    @abstractmethod
    async def is_available(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def apply(
        self,
        input_path: str,
        *,
        text: str,
        font_size: int,
        opacity: float,
        position: WatermarkPosition,
        output_path: Optional[str] = None,
    ) -> str:
        raise NotImplementedError


class ObjectStorage(ABC):
    @abstractmethod
    async def upload(self, local_path: str, destination_key: str) -> str:
        """Upload a file and return its public URL."""
        raise NotImplementedError
