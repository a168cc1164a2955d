"""Text watermark overlay rendered with ffmpeg."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Dict, Optional, Tuple

import ffmpeg

from services.errors import WatermarkError
from services.providers.types import Watermarker, WatermarkPosition

logger = logging.getLogger(__name__)

POSITIONS: Dict[str, Tuple[str, str]] = {
    "bottom-center": ("(w-text_w)/2", "h-th-40"),
    "bottom-right": ("w-text_w-20", "h-th-40"),
    "bottom-left": ("20", "h-th-40"),
    "top-center": ("(w-text_w)/2", "20"),
}


def _escape_drawtext(text: str) -> str:
    return text.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def drawtext_filter(text: str, font_size: int, opacity: float, position: str) -> str:
    x, y = POSITIONS.get(position, POSITIONS["bottom-center"])
    return (
        f"drawtext=text='{_escape_drawtext(text)}':fontcolor=white@{opacity}"
        f":fontsize={int(font_size)}:x={x}:y={y}"
    )


def watermarked_path(input_path: str) -> str:
    root, ext = os.path.splitext(input_path)
    return f"{root}_watermarked{ext or '.mp4'}"


class FfmpegWatermarker(Watermarker):
    def __init__(self, binary: str = "ffmpeg") -> None:
        self._binary = binary

    async def is_available(self) -> bool:
        return shutil.which(self._binary) is not None

    def _render(self, input_path: str, output_path: str, vf: str) -> None:
        # Audio is stream-copied; only the video stream is re-encoded.
        (
            ffmpeg
            .input(input_path)
            .output(output_path, vf=vf, **{"codec:a": "copy"})
            .overwrite_output()
            .run(cmd=self._binary, quiet=True)
        )

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
        if not os.path.exists(input_path):
            raise WatermarkError(f"Input video file not found: {input_path}")
        target = output_path or watermarked_path(input_path)
        vf = drawtext_filter(text, font_size, opacity, position)
        try:
            await asyncio.to_thread(self._render, input_path, target, vf)
        except ffmpeg.Error as exc:
            stderr = exc.stderr.decode(errors="replace") if exc.stderr else str(exc)
            logger.error("ffmpeg watermarking failed: %s", stderr)
            raise WatermarkError("Failed to add watermark") from exc
        except FileNotFoundError as exc:
            raise WatermarkError("ffmpeg is not installed") from exc

        if not os.path.exists(target):
            raise WatermarkError("Watermarked video file was not created")
        logger.info("Watermarked video created: %s (%s bytes)", target, os.path.getsize(target))
        return target
