from __future__ import annotations

import logging
import re
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable

from timeline_compiler.errors import TranscodeError
from timeline_compiler.utils.ffmpeg_builder import build_command_string

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 200


class FFmpegRunner:
    """Runs ffmpeg / ffprobe as child processes for the compile service."""

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        timeout_seconds: int = 7200,
        popen: Callable[..., Any] = subprocess.Popen,
        run: Callable[..., Any] = subprocess.run,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.timeout_seconds = timeout_seconds
        self._popen = popen
        self._run = run

    def execute(
        self,
        cmd: list[str],
        duration_seconds: float | None = None,
        progress_callback: Callable[[float], None] | None = None,
        on_start: Callable[[Any], None] | None = None,
    ) -> str:
        """Run one ffmpeg command; returns the output path (last argv element).

        ``progress_callback`` receives the completed fraction, computed from
        ``out_time_ms`` against ``duration_seconds`` (or the input Duration
        line when no duration is given). ``on_start`` receives the process
        handle so callers can kill it.
        """
        output_path = cmd[-1]
        cmd_with_progress = cmd[:-1] + ["-progress", "pipe:1", cmd[-1]]

        logger.info("Executing FFmpeg...")
        logger.debug(f"Command: {_truncate(build_command_string(cmd_with_progress))}")

        try:
            process = self._popen(
                cmd_with_progress,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise TranscodeError(f"Failed to execute FFmpeg: {e}") from e

        if on_start:
            on_start(process)

        duration = duration_seconds
        last_fraction = 0.0
        output_tail: list[str] = []
        timed_out = False

        def _kill_process_on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            process.kill()

        timer = threading.Timer(self.timeout_seconds, _kill_process_on_timeout)
        timer.daemon = True
        timer.start()

        if process.stdout is None:
            timer.cancel()
            raise TranscodeError("FFmpeg did not provide a stdout stream")

        try:
            for line in process.stdout:
                line = line.strip()
                if line:
                    output_tail.append(line)
                    if len(output_tail) > OUTPUT_TAIL_LINES:
                        output_tail = output_tail[-OUTPUT_TAIL_LINES:]

                if not duration and line.startswith("Duration:"):
                    duration = parse_duration_line(line)

                if line.startswith("out_time_ms="):
                    fraction = parse_progress_fraction(line, duration)
                    if fraction is not None and fraction > last_fraction:
                        last_fraction = fraction
                        if progress_callback:
                            progress_callback(fraction)

            process.wait()
        finally:
            timer.cancel()

        tail_text = "\n".join(output_tail[-40:])
        if timed_out:
            raise TranscodeError(
                f"FFmpeg timed out after {self.timeout_seconds}s. Output tail:\n{tail_text}"
            )
        if process.returncode != 0:
            raise TranscodeError(
                f"FFmpeg failed (code {process.returncode}). Output:\n{tail_text}"
            )
        if output_tail:
            logger.debug("FFmpeg output (tail): %s", "\n".join(output_tail[-20:]))

        if progress_callback and last_fraction < 1.0:
            progress_callback(1.0)
        return output_path

    def probe_has_audio(self, path: str | Path) -> bool:
        cmd = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-select_streams",
            "a",
            "-show_entries",
            "stream=index",
            "-of",
            "csv=p=0",
            str(path),
        ]
        try:
            result = self._run(cmd, capture_output=True, text=True, check=True)
        except (FileNotFoundError, subprocess.CalledProcessError) as exc:
            logger.warning("Failed to probe audio streams of %s: %s", path, exc)
            return False
        return bool(result.stdout.strip())


def parse_duration_line(line: str) -> float | None:
    match = re.search(r"Duration: (\d+):(\d+):(\d+(?:\.\d+)?)", line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_progress_fraction(line: str, duration: float | None) -> float | None:
    if not duration or duration <= 0:
        return None
    try:
        time_us = int(line.split("=", 1)[1])
    except (ValueError, IndexError):
        return None
    return max(0.0, min(1.0, (time_us / 1_000_000) / duration))


def _truncate(text: str, limit: int = 4000) -> str:
    if len(text) > limit:
        return f"{text[:limit]}... [truncated]"
    return text
