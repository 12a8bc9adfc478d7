"""
Tests for the local OpenCV fallback renderer.

Most tests use fake capture/writer objects so frame selection can be
checked exactly; one test round-trips a real file through OpenCV.
"""

from pathlib import Path

import cv2
import numpy as np
import pytest

from timeline_compiler.errors import CancelledError, LocalRenderError
from timeline_compiler.models.compile_models import CompileTier, RenderFidelity
from timeline_compiler.models.timeline_models import ClipReference, SourceAsset, Timeline
from timeline_compiler.operators.fallback_renderer import (
    FallbackRenderer,
    frames_for_duration,
    round_half_up,
)
from timeline_compiler.utils.cancellation import CancellationToken

WIDTH = 128
HEIGHT = 72


# =============================================================================
# FAKES
# =============================================================================


class FakeCapture:
    """Frame n of the source is filled with the value n % 256."""

    def __init__(self, frame_count: int, fps: float = 30.0, opened: bool = True):
        self.frame_count = frame_count
        self.fps = fps
        self.opened = opened
        self.position = 0
        self.released = False

    def isOpened(self):
        return self.opened

    def get(self, prop):
        if prop == cv2.CAP_PROP_FPS:
            return self.fps
        if prop == cv2.CAP_PROP_FRAME_COUNT:
            return self.frame_count
        return 0

    def set(self, prop, value):
        if prop == cv2.CAP_PROP_POS_FRAMES:
            self.position = int(value)
        return True

    def read(self):
        if self.position >= self.frame_count:
            return False, None
        frame = np.full((HEIGHT, WIDTH, 3), self.position % 256, dtype=np.uint8)
        self.position += 1
        return True, frame

    def release(self):
        self.released = True


class FakeWriter:
    def __init__(self, path, fourcc, fps, size):
        self.path = Path(path)
        self.fps = fps
        self.size = size
        self.frames: list[np.ndarray] = []
        self.released = False
        self.path.write_bytes(b"partial")

    def isOpened(self):
        return True

    def write(self, frame):
        self.frames.append(frame)

    def release(self):
        self.released = True


class Harness:
    def __init__(self, sources: dict[str, FakeCapture]):
        self.sources = sources
        self.writers: list[FakeWriter] = []
        self.opened: list[FakeCapture] = []

    def capture(self, path: str) -> FakeCapture:
        capture = self.sources.get(Path(path).stem) or FakeCapture(0, opened=False)
        self.opened.append(capture)
        return capture

    def writer(self, *args) -> FakeWriter:
        writer = FakeWriter(*args)
        self.writers.append(writer)
        return writer

    @property
    def frames(self) -> list[np.ndarray]:
        return self.writers[-1].frames


@pytest.fixture
def renderer_for(tmp_path):
    def _build(sources: dict[str, FakeCapture]) -> tuple[FallbackRenderer, Harness]:
        harness = Harness(sources)
        renderer = FallbackRenderer(
            tmp_path / "out",
            frame_rate=30,
            width=WIDTH,
            height=HEIGHT,
            writer_factory=harness.writer,
            capture_factory=harness.capture,
        )
        return renderer, harness

    return _build


def _single_clip_timeline(make_asset, trim_start=0.0, duration=1.0) -> Timeline:
    return Timeline(
        clips=[
            ClipReference(
                id="only",
                source_asset_id="asset-a",
                trim_start_seconds=trim_start,
                trim_duration_seconds=duration,
            )
        ],
        assets={"asset-a": make_asset("asset-a")},
    )


# =============================================================================
# ROUNDING
# =============================================================================


class TestFrameCounts:
    def test_round_half_up(self):
        assert round_half_up(2.5, 1) == 3
        assert round_half_up(3.5, 1) == 4
        assert round_half_up(2.49, 1) == 2

    def test_round_half_up_uses_written_decimals(self):
        # 0.35 * 30 is 10.499999999999998 in binary floating point
        assert round_half_up(0.35, 30) == 11
        assert round_half_up(0.15, 10) == 2
        assert round_half_up(1.05, 10) == 11

    @pytest.mark.parametrize(
        "duration,expected",
        [(2.0, 60), (3.0, 90), (1.0, 30), (0.05, 2), (0.55, 17), (0.35, 11), (1 / 3, 10)],
    )
    def test_frames_for_duration(self, duration, expected):
        assert frames_for_duration(duration, 30) == expected


# =============================================================================
# RENDERING
# =============================================================================


class TestRenderLocally:
    def test_six_second_timeline_has_180_frames(self, renderer_for, three_clip_timeline):
        renderer, harness = renderer_for(
            {"asset-a": FakeCapture(300), "asset-b": FakeCapture(300)}
        )
        result = renderer.render_locally(three_clip_timeline)

        assert len(harness.frames) == 180
        assert result.metadata["frame_count"] == 180
        assert result.metadata["duration_seconds"] == pytest.approx(6.0, abs=3 / 30)
        assert result.metadata["decoded_clip_ids"] == ["clip-1", "clip-2", "clip-3"]
        assert result.metadata["placeholder_clip_ids"] == []
        assert result.tier == CompileTier.LOCAL
        assert result.fidelity == RenderFidelity.APPROXIMATE
        assert result.artifact_name.startswith("compiled-")
        assert Path(result.artifact_location).name == result.artifact_name

    def test_segments_follow_timeline_order_and_trim(self, renderer_for, three_clip_timeline):
        renderer, harness = renderer_for(
            {"asset-a": FakeCapture(300), "asset-b": FakeCapture(300)}
        )
        renderer.render_locally(three_clip_timeline)
        frames = harness.frames

        # clip-1: asset-a from 0s, clip-2: asset-b from 1s, clip-3: asset-a from 4s
        assert frames[0][0, 0, 0] == 0
        assert frames[60][0, 0, 0] == 30
        assert frames[150][0, 0, 0] == 120

    def test_trim_start_seeks_source(self, renderer_for, make_asset):
        renderer, harness = renderer_for({"asset-a": FakeCapture(300)})
        renderer.render_locally(_single_clip_timeline(make_asset, trim_start=2.0))
        assert harness.frames[0][0, 0, 0] == 60

    def test_resamples_higher_source_frame_rate(self, renderer_for, make_asset):
        renderer, harness = renderer_for({"asset-a": FakeCapture(300, fps=60)})
        renderer.render_locally(_single_clip_timeline(make_asset, duration=0.2))
        assert [int(frame[0, 0, 0]) for frame in harness.frames] == [0, 2, 4, 6, 8, 10]

    def test_holds_last_frame_when_source_ends_early(self, renderer_for, make_asset):
        renderer, harness = renderer_for({"asset-a": FakeCapture(10)})
        result = renderer.render_locally(_single_clip_timeline(make_asset, duration=1.0))

        values = [int(frame[0, 0, 0]) for frame in harness.frames]
        assert len(values) == 30
        assert values[:10] == list(range(10))
        assert set(values[10:]) == {9}
        assert result.metadata["decoded_clip_ids"] == ["only"]

    def test_undecodable_clip_becomes_placeholder(self, renderer_for, three_clip_timeline):
        renderer, harness = renderer_for({"asset-a": FakeCapture(300)})
        result = renderer.render_locally(three_clip_timeline)

        assert len(harness.frames) == 180
        assert result.metadata["placeholder_clip_ids"] == ["clip-2"]
        assert result.metadata["decoded_clip_ids"] == ["clip-1", "clip-3"]

        placeholder = renderer.placeholder_frame("clip-2")
        assert np.array_equal(harness.frames[60], placeholder)
        assert np.array_equal(harness.frames[149], placeholder)

    def test_placeholder_is_deterministic(self, renderer_for):
        renderer, _ = renderer_for({})
        first = renderer.placeholder_frame("Intro")
        assert first.shape == (HEIGHT, WIDTH, 3)
        assert np.array_equal(first, renderer.placeholder_frame("Intro"))

    def test_no_decodable_clip_raises_and_removes_output(self, renderer_for, three_clip_timeline):
        renderer, harness = renderer_for({})
        with pytest.raises(LocalRenderError):
            renderer.render_locally(three_clip_timeline)

        writer = harness.writers[-1]
        assert writer.released
        assert not writer.path.exists()

    def test_cancellation_removes_output(self, renderer_for, three_clip_timeline):
        renderer, harness = renderer_for(
            {"asset-a": FakeCapture(300), "asset-b": FakeCapture(300)}
        )
        token = CancellationToken()

        def _cancel_midway(fraction):
            if fraction > 0.2:
                token.cancel()

        with pytest.raises(CancelledError):
            renderer.render_locally(three_clip_timeline, on_progress=_cancel_midway, cancel_token=token)

        assert not harness.writers[-1].path.exists()
        assert len(harness.frames) < 180

    def test_captures_are_released(self, renderer_for, three_clip_timeline):
        renderer, harness = renderer_for({"asset-a": FakeCapture(300)})
        renderer.render_locally(three_clip_timeline)
        assert harness.opened
        assert all(capture.released for capture in harness.opened)

    def test_progress_reaches_one(self, renderer_for, three_clip_timeline):
        renderer, _ = renderer_for({"asset-a": FakeCapture(300), "asset-b": FakeCapture(300)})
        fractions: list[float] = []
        renderer.render_locally(three_clip_timeline, on_progress=fractions.append)
        assert fractions == sorted(fractions)
        assert fractions[-1] == pytest.approx(1.0)

    def test_frames_are_letterboxed(self, renderer_for):
        renderer, _ = renderer_for({})
        square = np.full((100, 100, 3), 200, dtype=np.uint8)
        fitted = renderer._fit_frame(square)

        assert fitted.shape == (HEIGHT, WIDTH, 3)
        assert fitted[:, :20].max() == 0
        assert fitted[HEIGHT // 2, WIDTH // 2, 0] == 200


class TestRealVideo:
    def test_round_trip_through_opencv(self, tmp_path):
        source_path = tmp_path / "source.mp4"
        writer = cv2.VideoWriter(
            str(source_path), cv2.VideoWriter_fourcc(*"mp4v"), 10.0, (64, 48)
        )
        if not writer.isOpened():
            pytest.skip("OpenCV build cannot write mp4v")
        for index in range(30):
            writer.write(np.full((48, 64, 3), index * 8, dtype=np.uint8))
        writer.release()

        asset = SourceAsset(
            asset_id="src",
            name="source.mp4",
            path=str(source_path),
            size_bytes=source_path.stat().st_size,
        )
        timeline = Timeline(
            clips=[
                ClipReference(id="a", source_asset_id="src", trim_duration_seconds=1.0),
                ClipReference(
                    id="b",
                    source_asset_id="src",
                    trim_start_seconds=1.0,
                    trim_duration_seconds=0.5,
                    timeline_position_seconds=1.0,
                ),
            ],
            assets={"src": asset},
        )
        renderer = FallbackRenderer(tmp_path / "out", frame_rate=10, width=64, height=48)
        result = renderer.render_locally(timeline)

        capture = cv2.VideoCapture(result.artifact_location)
        try:
            frames = 0
            while True:
                ok, _ = capture.read()
                if not ok:
                    break
                frames += 1
        finally:
            capture.release()

        assert result.metadata["frame_count"] == 15
        assert frames == 15
