"""FFmpeg/ffprobe wrappers for probing, encoding and thumbnail extraction.

None of these retry. Failures are translated into the pipeline error types
and the orchestrator decides what happens next.
"""

import json
import logging
import os
from typing import Optional, Sequence

from streamvault.core.config import settings
from streamvault.core.exceptions import EncodeError, ProbeError
from streamvault.core.logging import log_warning
from streamvault.core.metrics import TOOL_INVOCATIONS_TOTAL
from streamvault.modules.transcoding.runner import (
    MediaToolRunner,
    ToolLaunchError,
    ToolResult,
    ToolTimeout,
)
from streamvault.modules.transcoding.schemas import ProbeResult, RenditionProfile

logger = logging.getLogger(__name__)


def _run_tool(
    runner: MediaToolRunner,
    tool: str,
    args: Sequence[str],
    timeout: float,
) -> ToolResult:
    """Invoke a tool and count the outcome. Timeouts and launch errors propagate."""
    try:
        result = runner.invoke(args, timeout)
    except ToolTimeout:
        TOOL_INVOCATIONS_TOTAL.labels(tool=tool, result="timeout").inc()
        raise
    except ToolLaunchError:
        TOOL_INVOCATIONS_TOTAL.labels(tool=tool, result="launch_error").inc()
        raise
    TOOL_INVOCATIONS_TOTAL.labels(tool=tool, result="ok" if result.ok else "error").inc()
    return result


def _format_kbps(bits_per_second: str) -> str:
    return f"{int(float(bits_per_second)) // 1000}k"


class MediaProbe:
    """Extracts duration, codec, bitrate and geometry of the first video stream."""

    def __init__(
        self,
        runner: MediaToolRunner,
        ffprobe_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.runner = runner
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH
        self.timeout = timeout or settings.TRANSCODE_PROBE_TIMEOUT_SECONDS

    def build_probe_command(self, input_path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=duration,codec_name,bit_rate,width,height:format=duration,bit_rate",
            "-of", "json",
            input_path,
        ]

    def probe(self, input_path: str, timeout: Optional[float] = None) -> ProbeResult:
        """Probe a local media file.

        Args:
            input_path: File in scratch space
            timeout: Override for the configured probe timeout

        Returns:
            ProbeResult for the first video stream

        Raises:
            ProbeError: Tool failure, timeout or unusable output
        """
        args = self.build_probe_command(input_path)
        try:
            result = _run_tool(self.runner, "ffprobe", args, timeout or self.timeout)
        except (ToolTimeout, ToolLaunchError) as e:
            raise ProbeError(str(e)) from e

        if not result.ok:
            raise ProbeError(
                f"ffprobe exited with status {result.exit_status}: {result.stderr_tail()}"
            )
        return self.parse_probe_output(result.stdout)

    @staticmethod
    def parse_probe_output(stdout: str) -> ProbeResult:
        """Turn ffprobe JSON into a ProbeResult.

        Stream-level duration and bitrate win; container-level values are the
        fallback since many containers only record them there.
        """
        try:
            data = json.loads(stdout)
        except (json.JSONDecodeError, TypeError) as e:
            raise ProbeError(f"ffprobe output is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ProbeError("ffprobe output is not a JSON object")

        streams = data.get("streams") or []
        if not streams or not isinstance(streams[0], dict):
            raise ProbeError("No video stream found")
        stream = streams[0]
        fmt = data.get("format") or {}

        codec = stream.get("codec_name")
        if not codec:
            raise ProbeError("Video stream has no codec_name")

        raw_duration = stream.get("duration") or fmt.get("duration")
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError) as e:
            raise ProbeError(f"Unusable duration in probe output: {raw_duration!r}") from e

        raw_bitrate = stream.get("bit_rate") or fmt.get("bit_rate")
        try:
            bitrate = _format_kbps(raw_bitrate) if raw_bitrate else None
        except (TypeError, ValueError) as e:
            raise ProbeError(f"Unusable bit_rate in probe output: {raw_bitrate!r}") from e

        width = stream.get("width")
        height = stream.get("height")

        return ProbeResult(
            duration_seconds=duration,
            codec_video=codec,
            bitrate=bitrate,
            width=int(width) if width else None,
            height=int(height) if height else None,
        )


class RenditionEncoder:
    """Encodes one rendition profile from a local source file."""

    def __init__(
        self,
        runner: MediaToolRunner,
        ffmpeg_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.timeout = timeout or settings.TRANSCODE_ENCODE_TIMEOUT_SECONDS

    def build_encode_command(
        self,
        input_path: str,
        output_path: str,
        profile: RenditionProfile,
    ) -> list[str]:
        """Build FFmpeg command for one profile.

        Args:
            input_path: Source file
            output_path: Destination in scratch space
            profile: Rendition profile

        Returns:
            FFmpeg command as list of arguments
        """
        return [
            self.ffmpeg_path,
            "-y",  # Overwrite output
            "-i", input_path,
            # Video settings
            "-c:v", profile.video_codec,
            "-b:v", profile.video_bitrate,
            "-s", profile.dimensions,
            # Audio settings
            "-c:a", profile.audio_codec,
            "-b:a", profile.audio_bitrate,
            "-preset", profile.preset,
            # Output format
            "-movflags", "+faststart",
            "-f", profile.container,
            output_path,
        ]

    def encode(
        self,
        input_path: str,
        output_path: str,
        profile: RenditionProfile,
        timeout: Optional[float] = None,
    ) -> int:
        """Encode a rendition and return the output size in bytes.

        Raises:
            EncodeError: Tool failure, timeout or missing/empty output
        """
        args = self.build_encode_command(input_path, output_path, profile)
        try:
            result = _run_tool(self.runner, "ffmpeg", args, timeout or self.timeout)
        except (ToolTimeout, ToolLaunchError) as e:
            raise EncodeError(f"{profile.name}: {e}", profile=profile.name) from e

        if not result.ok:
            raise EncodeError(
                f"{profile.name}: ffmpeg exited with status {result.exit_status}: "
                f"{result.stderr_tail()}",
                profile=profile.name,
            )

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            raise EncodeError(f"{profile.name}: ffmpeg produced no output", profile=profile.name)

        return os.path.getsize(output_path)


class ThumbnailExtractor:
    """Grabs a single JPEG frame. Failure is reported, never raised."""

    def __init__(
        self,
        runner: MediaToolRunner,
        ffmpeg_path: Optional[str] = None,
        timeout: Optional[float] = None,
        offset_seconds: Optional[float] = None,
    ):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.timeout = timeout or settings.TRANSCODE_THUMBNAIL_TIMEOUT_SECONDS
        self.offset_seconds = (
            settings.TRANSCODE_THUMBNAIL_OFFSET_SECONDS if offset_seconds is None else offset_seconds
        )

    def frame_offset(self, duration_seconds: Optional[float] = None) -> float:
        """Seek position, pulled back to mid-clip for videos shorter than the offset."""
        if duration_seconds and 0 < duration_seconds <= self.offset_seconds:
            return round(duration_seconds / 2, 3)
        return self.offset_seconds

    def build_thumbnail_command(self, input_path: str, output_path: str, offset: float) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{offset:g}",
            "-i", input_path,
            "-frames:v", "1",
            "-q:v", "2",
            output_path,
        ]

    def extract(
        self,
        input_path: str,
        output_path: str,
        duration_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """Extract a thumbnail.

        Returns:
            ``output_path`` on success, None when no usable frame was produced
        """
        args = self.build_thumbnail_command(
            input_path, output_path, self.frame_offset(duration_seconds)
        )
        try:
            result = _run_tool(self.runner, "ffmpeg", args, timeout or self.timeout)
        except (ToolTimeout, ToolLaunchError) as e:
            log_warning(logger, "Thumbnail extraction failed", error=str(e))
            return None

        if not result.ok:
            log_warning(
                logger,
                "Thumbnail extraction failed",
                exit_status=result.exit_status,
                stderr=result.stderr_tail(500),
            )
            return None

        if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
            log_warning(logger, "Thumbnail extraction produced an empty file")
            return None

        return output_path
