from __future__ import annotations

import logging
import math
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Callable

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from timeline_compiler.errors import CancelledError, LocalRenderError
from timeline_compiler.models.compile_models import (
    CompilationResult,
    CompileTier,
    RenderFidelity,
    generate_artifact_name,
)
from timeline_compiler.models.timeline_models import ClipReference, SourceAsset, Timeline
from timeline_compiler.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

FRAME_BATCH = 15
DEFAULT_PLACEHOLDER_COLOR = (32, 32, 40)
LABEL_COLOR = (235, 235, 235)


def round_half_up(seconds: float, rate: float) -> int:
    """Round seconds * rate half up, using the decimal values as written."""
    product = Decimal(str(seconds)) * Decimal(str(rate))
    return int(product.to_integral_value(rounding=ROUND_HALF_UP))


def frames_for_duration(duration_seconds: float, frame_rate: float) -> int:
    return max(0, round_half_up(duration_seconds, frame_rate))


def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    try:
        return ImageFont.truetype("DejaVuSans.ttf", size)
    except OSError:
        return ImageFont.load_default()


class FallbackRenderer:
    """Renders a timeline on this machine with OpenCV when the service is out of reach.

    Output is video only, at a fixed frame rate and a reduced resolution.
    Each clip contributes exactly round_half_up(duration * frame_rate)
    frames; a clip whose source cannot be decoded is replaced by a
    labelled placeholder card of the same length.
    """

    def __init__(
        self,
        output_dir: str | Path,
        frame_rate: float = 30.0,
        width: int = 1280,
        height: int = 720,
        placeholder_color: tuple[int, int, int] = DEFAULT_PLACEHOLDER_COLOR,
        writer_factory: Callable[..., Any] | None = None,
        capture_factory: Callable[[str], Any] | None = None,
    ):
        if frame_rate <= 0:
            raise ValueError("frame_rate must be > 0")
        self.output_dir = Path(output_dir)
        self.frame_rate = float(frame_rate)
        self.width = int(width)
        self.height = int(height)
        self.placeholder_color = placeholder_color
        self._writer_factory = writer_factory or cv2.VideoWriter
        self._capture_factory = capture_factory or cv2.VideoCapture

    def render_locally(
        self,
        timeline: Timeline,
        on_progress: Callable[[float], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CompilationResult:
        clips = timeline.sorted_clips()
        if not clips:
            raise LocalRenderError("Timeline has no clips to render")

        self.output_dir.mkdir(parents=True, exist_ok=True)
        artifact_name = generate_artifact_name()
        output_path = self.output_dir / artifact_name

        total_frames = sum(
            frames_for_duration(clip.trim_duration_seconds, self.frame_rate) for clip in clips
        )
        state = {"written": 0}

        def _advance(count: int) -> None:
            state["written"] += count
            if on_progress and total_frames > 0:
                on_progress(min(1.0, state["written"] / total_frames))

        writer = self._writer_factory(
            str(output_path),
            cv2.VideoWriter_fourcc(*"mp4v"),
            self.frame_rate,
            (self.width, self.height),
        )
        if not writer.isOpened():
            raise LocalRenderError(f"Failed to create output video writer at {output_path}")

        decoded_clip_ids: list[str] = []
        placeholder_clip_ids: list[str] = []
        finished = False
        try:
            for clip in clips:
                self._check_cancelled(cancel_token)
                frame_count = frames_for_duration(clip.trim_duration_seconds, self.frame_rate)
                asset = timeline.get_asset(clip.source_asset_id)

                written = 0
                if asset is not None:
                    written = self._write_clip_frames(
                        writer, clip, asset, frame_count, _advance, cancel_token
                    )

                if written > 0:
                    decoded_clip_ids.append(clip.id)
                else:
                    logger.warning(
                        f"Clip {clip.id} could not be decoded locally, using placeholder"
                    )
                    self._write_placeholder(writer, clip, frame_count, _advance, cancel_token)
                    placeholder_clip_ids.append(clip.id)

            if not decoded_clip_ids:
                raise LocalRenderError("No clip in the timeline could be decoded locally")
            finished = True
        finally:
            writer.release()
            if not finished:
                output_path.unlink(missing_ok=True)

        duration = total_frames / self.frame_rate
        logger.info(
            f"Rendered {artifact_name} locally: {total_frames} frames, "
            f"{len(placeholder_clip_ids)} placeholder clip(s)"
        )
        return CompilationResult(
            artifact_location=str(output_path),
            artifact_name=artifact_name,
            tier=CompileTier.LOCAL,
            fidelity=RenderFidelity.APPROXIMATE,
            metadata={
                "frame_count": total_frames,
                "duration_seconds": round(duration, 6),
                "frame_rate": self.frame_rate,
                "width": self.width,
                "height": self.height,
                "decoded_clip_ids": decoded_clip_ids,
                "placeholder_clip_ids": placeholder_clip_ids,
            },
        )

    def _check_cancelled(self, cancel_token: CancellationToken | None) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise CancelledError()

    def _write_clip_frames(
        self,
        writer: Any,
        clip: ClipReference,
        asset: SourceAsset,
        frame_count: int,
        advance: Callable[[int], None],
        cancel_token: CancellationToken | None,
    ) -> int:
        """Write the clip's frames from its source; 0 means nothing decoded."""
        capture = self._capture_factory(str(asset.path))
        try:
            if not capture.isOpened():
                return 0

            source_fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
            if not math.isfinite(source_fps) or source_fps <= 0:
                source_fps = self.frame_rate

            start_index = round_half_up(clip.trim_start_seconds, source_fps)
            if start_index > 0:
                capture.set(cv2.CAP_PROP_POS_FRAMES, start_index)

            position = start_index - 1
            last_frame = None
            exhausted = False
            written = 0
            batch = 0
            for k in range(frame_count):
                target = start_index + int(math.floor(k * source_fps / self.frame_rate + 1e-9))
                while not exhausted and position < target:
                    ok, frame = capture.read()
                    if not ok:
                        exhausted = True
                        if last_frame is not None:
                            logger.debug(f"Source for clip {clip.id} ended early, holding last frame")
                        break
                    position += 1
                    last_frame = frame

                if last_frame is None:
                    return 0

                writer.write(self._fit_frame(last_frame))
                written += 1
                batch += 1
                if batch >= FRAME_BATCH:
                    advance(batch)
                    batch = 0
                    self._check_cancelled(cancel_token)

            if batch:
                advance(batch)
            return written
        finally:
            capture.release()

    def _write_placeholder(
        self,
        writer: Any,
        clip: ClipReference,
        frame_count: int,
        advance: Callable[[int], None],
        cancel_token: CancellationToken | None,
    ) -> None:
        frame = self.placeholder_frame(clip.display_label)
        for start in range(0, frame_count, FRAME_BATCH):
            self._check_cancelled(cancel_token)
            count = min(FRAME_BATCH, frame_count - start)
            for _ in range(count):
                writer.write(frame)
            advance(count)

    def placeholder_frame(self, label: str) -> np.ndarray:
        image = Image.new("RGB", (self.width, self.height), self.placeholder_color)
        draw = ImageDraw.Draw(image)
        font = _load_font(max(12, self.height // 12))

        bbox = draw.textbbox((0, 0), label, font=font)
        text_width = bbox[2] - bbox[0]
        text_height = bbox[3] - bbox[1]
        position = ((self.width - text_width) // 2, (self.height - text_height) // 2)
        draw.text(position, label, font=font, fill=LABEL_COLOR)

        return cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)

    def _fit_frame(self, frame: np.ndarray) -> np.ndarray:
        """Scale into the output size keeping aspect ratio, padded with black."""
        source_height, source_width = frame.shape[:2]
        if source_width == self.width and source_height == self.height:
            return frame

        scale = min(self.width / source_width, self.height / source_height)
        fitted_width = max(1, int(source_width * scale))
        fitted_height = max(1, int(source_height * scale))
        resized = cv2.resize(frame, (fitted_width, fitted_height), interpolation=cv2.INTER_AREA)

        canvas = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        x = (self.width - fitted_width) // 2
        y = (self.height - fitted_height) // 2
        canvas[y : y + fitted_height, x : x + fitted_width] = resized[:, :, :3]
        return canvas
