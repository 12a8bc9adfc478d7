from __future__ import annotations

import logging
import shlex

from timeline_compiler.errors import EmptyTimelineError, UnresolvedAssetError
from timeline_compiler.models.compile_models import (
    ConcatNode,
    FilterGraphDescriptor,
    GraphInput,
    TrimNode,
)
from timeline_compiler.models.timeline_models import ClipReference, Timeline

logger = logging.getLogger(__name__)


class TimelineToFilterGraph:
    def __init__(
        self,
        timeline: Timeline,
        asset_refs: dict[str, str] | None = None,
        width: int = 1920,
        height: int = 1080,
        frame_rate: float = 30.0,
        sample_rate: int = 48000,
    ):
        self.timeline = timeline
        self.asset_refs = asset_refs
        self.width = width
        self.height = height
        self.frame_rate = frame_rate
        self.sample_rate = sample_rate

        self._inputs: list[GraphInput] = []
        self._input_index_map: dict[str, int] = {}

    def build(self) -> FilterGraphDescriptor:
        self._inputs = []
        self._input_index_map = {}

        clips = self.timeline.sorted_clips()
        if not clips:
            raise EmptyTimelineError()

        self._collect_inputs(clips)

        trim_nodes = [
            self._clip_to_trim_node(clip, index) for index, clip in enumerate(clips)
        ]
        concat = ConcatNode(
            segments=tuple((node.video_label, node.audio_label) for node in trim_nodes)
        )

        return FilterGraphDescriptor(
            inputs=tuple(self._inputs),
            trim_nodes=tuple(trim_nodes),
            concat=concat,
            width=self.width,
            height=self.height,
            frame_rate=self.frame_rate,
            sample_rate=self.sample_rate,
        )

    def _resolve_ref(self, clip: ClipReference) -> str:
        if self.asset_refs is None:
            return clip.source_asset_id
        ref = self.asset_refs.get(clip.source_asset_id)
        if not ref:
            raise UnresolvedAssetError(clip.id, clip.source_asset_id)
        return ref

    def _collect_inputs(self, clips: list[ClipReference]) -> None:
        for clip in clips:
            ref = self._resolve_ref(clip)
            if ref not in self._input_index_map:
                graph_input = GraphInput(index=len(self._inputs), asset_ref=ref)
                self._inputs.append(graph_input)
                self._input_index_map[ref] = graph_input.index

    def _clip_to_trim_node(self, clip: ClipReference, index: int) -> TrimNode:
        input_index = self._input_index_map[self._resolve_ref(clip)]
        return TrimNode(
            index=index,
            clip_id=clip.id,
            input_index=input_index,
            start_seconds=clip.trim_start_seconds,
            duration_seconds=clip.trim_duration_seconds,
            video_label=f"v{index}",
            audio_label=f"a{index}",
        )


class FilterGraphToFFmpeg:
    """Renders a FilterGraphDescriptor in ffmpeg -filter_complex syntax.

    ``audio_inputs`` lists the graph input indexes that carry an audio
    stream; segments cut from the others get generated silence so the
    concat node always receives one audio stream per segment. None means
    every input has audio.
    """

    def __init__(
        self,
        descriptor: FilterGraphDescriptor,
        audio_inputs: set[int] | None = None,
    ):
        self.descriptor = descriptor
        self.audio_inputs = audio_inputs

        self._video_filters: list[str] = []
        self._audio_filters: list[str] = []

    def build(self) -> str:
        self._video_filters = []
        self._audio_filters = []

        for node in self.descriptor.trim_nodes:
            self._process_video_segment(node)
            self._process_audio_segment(node)

        concat = self._concat_segments()
        return ";".join(self._video_filters + self._audio_filters + [concat])

    def _has_audio(self, input_index: int) -> bool:
        return self.audio_inputs is None or input_index in self.audio_inputs

    def _process_video_segment(self, node: TrimNode) -> None:
        width = self.descriptor.width
        height = self.descriptor.height
        filters = [
            f"trim=start={_fmt(node.start_seconds)}:duration={_fmt(node.duration_seconds)}",
            "setpts=PTS-STARTPTS",
            f"scale={width}:{height}:force_original_aspect_ratio=decrease",
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black",
            "setsar=1",
            f"fps={_fmt(self.descriptor.frame_rate)}",
            "format=yuv420p",
        ]
        self._video_filters.append(
            f"[{node.input_index}:v]{','.join(filters)}[{node.video_label}]"
        )

    def _process_audio_segment(self, node: TrimNode) -> None:
        if not self._has_audio(node.input_index):
            self._audio_filters.append(
                self._generate_silence(node.duration_seconds, node.audio_label)
            )
            return

        filters = [
            f"atrim=start={_fmt(node.start_seconds)}:duration={_fmt(node.duration_seconds)}",
            "asetpts=PTS-STARTPTS",
            f"aresample={self.descriptor.sample_rate}",
            "aformat=sample_fmts=fltp:channel_layouts=stereo",
        ]
        self._audio_filters.append(
            f"[{node.input_index}:a]{','.join(filters)}[{node.audio_label}]"
        )

    def _generate_silence(self, duration: float, label: str) -> str:
        sample_rate = self.descriptor.sample_rate
        return (
            f"anullsrc=channel_layout=stereo:sample_rate={sample_rate},"
            f"atrim=duration={_fmt(duration)},asetpts=PTS-STARTPTS,"
            f"aformat=sample_fmts=fltp:channel_layouts=stereo[{label}]"
        )

    def _concat_segments(self) -> str:
        concat = self.descriptor.concat
        inputs = "".join(f"[{video}][{audio}]" for video, audio in concat.segments)
        return (
            f"{inputs}concat=n={len(concat.segments)}:v=1:a=1"
            f"[{concat.video_output}][{concat.audio_output}]"
        )


def _fmt(value: float) -> str:
    text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    return text or "0"


def compile_filter_graph(
    timeline: Timeline,
    asset_refs: dict[str, str] | None = None,
    *,
    width: int = 1920,
    height: int = 1080,
    frame_rate: float = 30.0,
    sample_rate: int = 48000,
) -> FilterGraphDescriptor:
    converter = TimelineToFilterGraph(
        timeline,
        asset_refs,
        width=width,
        height=height,
        frame_rate=frame_rate,
        sample_rate=sample_rate,
    )
    descriptor = converter.build()
    logger.debug(
        f"Compiled filter graph: {len(descriptor.trim_nodes)} segments, "
        f"{len(descriptor.inputs)} inputs"
    )
    return descriptor


def to_filter_complex(
    descriptor: FilterGraphDescriptor, audio_inputs: set[int] | None = None
) -> str:
    return FilterGraphToFFmpeg(descriptor, audio_inputs).build()


def build_output_options(descriptor: FilterGraphDescriptor) -> list[str]:
    return [
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-crf",
        "23",
        "-pix_fmt",
        "yuv420p",
        "-r",
        _fmt(descriptor.frame_rate),
        "-c:a",
        "aac",
        "-b:a",
        "192k",
        "-ar",
        str(descriptor.sample_rate),
        "-ac",
        "2",
        "-movflags",
        "+faststart",
    ]


def build_ffmpeg_command(
    descriptor: FilterGraphDescriptor,
    input_paths: list[str],
    output_path: str,
    audio_inputs: set[int] | None = None,
    ffmpeg_bin: str = "ffmpeg",
) -> list[str]:
    """argv for one ffmpeg run; input_paths follow descriptor.inputs order."""
    if len(input_paths) != len(descriptor.inputs):
        raise ValueError(
            f"Expected {len(descriptor.inputs)} input paths, got {len(input_paths)}"
        )

    cmd = [ffmpeg_bin, "-y"]
    for path in input_paths:
        cmd.extend(["-i", path])

    cmd.extend(["-filter_complex", to_filter_complex(descriptor, audio_inputs)])
    cmd.extend(["-map", f"[{descriptor.concat.video_output}]"])
    cmd.extend(["-map", f"[{descriptor.concat.audio_output}]"])
    cmd.extend(build_output_options(descriptor))
    cmd.append(output_path)
    return cmd


def build_command_string(cmd: list[str]) -> str:
    return shlex.join(cmd)
