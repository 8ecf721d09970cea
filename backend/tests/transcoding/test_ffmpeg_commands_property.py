"""Property-based tests for the ffprobe/ffmpeg wrappers.

**Feature: media-ingest, Property 14: Media Tool Invocation**
**Validates: Requirements 3.1, 3.2, 3.3**
"""

import json
import sys

import pytest
from hypothesis import given, settings, strategies as st

from streamvault.core.exceptions import EncodeError, ProbeError
from streamvault.modules.transcoding.ffmpeg import MediaProbe, RenditionEncoder, ThumbnailExtractor
from streamvault.modules.transcoding.runner import SubprocessToolRunner, ToolResult, ToolTimeout
from streamvault.modules.transcoding.schemas import RenditionProfile, load_profiles, parse_bitrate_kbps

PROFILE_720P = RenditionProfile(name="720p", width=1280, height=720, video_bitrate="2500k")


class ScriptedRunner:
    """Returns one canned result, optionally writing the output file."""

    def __init__(self, result: ToolResult = None, output: bytes = None, error: Exception = None):
        self.result = result or ToolResult(stdout="", exit_status=0)
        self.output = output
        self.error = error
        self.calls = []

    def invoke(self, args, timeout):
        self.calls.append((list(args), timeout))
        if self.error is not None:
            raise self.error
        if self.output is not None:
            with open(args[-1], "wb") as f:
                f.write(self.output)
        return self.result


class TestProbe:
    """Tests for MediaProbe."""

    def test_probe_command(self) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        probe = MediaProbe(ScriptedRunner(), ffprobe_path="ffprobe")

        assert probe.build_probe_command("/tmp/source.mp4") == [
            "ffprobe",
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=duration,codec_name,bit_rate,width,height:format=duration,bit_rate",
            "-of", "json",
            "/tmp/source.mp4",
        ]

    @given(
        duration=st.floats(min_value=0.1, max_value=86400, allow_nan=False, allow_infinity=False),
        bits_per_second=st.integers(min_value=1000, max_value=200_000_000),
        codec=st.sampled_from(["h264", "hevc", "vp9", "av1", "mpeg4"]),
    )
    @settings(max_examples=100)
    def test_parse_stream_fields(self, duration: float, bits_per_second: int, codec: str) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        stdout = json.dumps({
            "streams": [{
                "codec_name": codec,
                "duration": str(duration),
                "bit_rate": str(bits_per_second),
                "width": 1280,
                "height": 720,
            }],
        })

        result = MediaProbe.parse_probe_output(stdout)

        assert result.duration_seconds == pytest.approx(duration)
        assert result.codec_video == codec
        assert result.bitrate == f"{bits_per_second // 1000}k"
        assert (result.width, result.height) == (1280, 720)
        assert result.degraded is False

    def test_container_values_fill_gaps(self) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        stdout = json.dumps({
            "streams": [{"codec_name": "vp9", "width": 640, "height": 360}],
            "format": {"duration": "61.5", "bit_rate": "900000"},
        })

        result = MediaProbe.parse_probe_output(stdout)

        assert result.duration_seconds == 61.5
        assert result.bitrate == "900k"

    def test_missing_bitrate_is_none(self) -> None:
        result = MediaProbe.parse_probe_output('{"streams": [{"codec_name": "h264", "duration": "10"}]}')

        assert result.bitrate is None
        assert result.width is None

    @pytest.mark.parametrize("stdout", [
        "",
        "not json",
        "[]",
        '{"streams": []}',
        '{"streams": [{"duration": "10"}]}',
        '{"streams": [{"codec_name": "h264"}]}',
        '{"streams": [{"codec_name": "h264", "duration": "N/A"}]}',
    ])
    def test_unusable_output_raises(self, stdout: str) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        with pytest.raises(ProbeError):
            MediaProbe.parse_probe_output(stdout)

    def test_nonzero_exit_raises_with_stderr(self) -> None:
        runner = ScriptedRunner(ToolResult(stdout="", exit_status=1, stderr="moov atom not found"))

        with pytest.raises(ProbeError, match="moov atom not found"):
            MediaProbe(runner).probe("/tmp/source.mp4")

    def test_timeout_raises_probe_error(self) -> None:
        runner = ScriptedRunner(error=ToolTimeout(["ffprobe"], 120))

        with pytest.raises(ProbeError) as exc_info:
            MediaProbe(runner).probe("/tmp/source.mp4", timeout=5)

        assert exc_info.value.retryable is True
        assert runner.calls[0][1] == 5


class TestEncoder:
    """Tests for RenditionEncoder."""

    def test_encode_command(self) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        encoder = RenditionEncoder(ScriptedRunner(), ffmpeg_path="ffmpeg")

        assert encoder.build_encode_command("in.mp4", "out.mp4", PROFILE_720P) == [
            "ffmpeg", "-y",
            "-i", "in.mp4",
            "-c:v", "libx264",
            "-b:v", "2500k",
            "-s", "1280x720",
            "-c:a", "aac",
            "-b:a", "128k",
            "-preset", "medium",
            "-movflags", "+faststart",
            "-f", "mp4",
            "out.mp4",
        ]

    @given(profile=st.sampled_from(load_profiles()))
    @settings(max_examples=20)
    def test_every_profile_sets_its_geometry_and_bitrate(self, profile: RenditionProfile) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        args = RenditionEncoder(ScriptedRunner()).build_encode_command("in.mp4", "out.mp4", profile)

        assert args[args.index("-s") + 1] == f"{profile.width}x{profile.height}"
        assert args[args.index("-b:v") + 1] == profile.video_bitrate
        assert args[-1] == "out.mp4"

    def test_encode_returns_output_size(self, tmp_path) -> None:
        output = tmp_path / "out.mp4"
        encoder = RenditionEncoder(ScriptedRunner(output=b"x" * 321))

        assert encoder.encode("in.mp4", str(output), PROFILE_720P) == 321

    @pytest.mark.parametrize("runner", [
        ScriptedRunner(ToolResult(stdout="", exit_status=187, stderr="Conversion failed!")),
        ScriptedRunner(error=ToolTimeout(["ffmpeg"], 3600)),
        ScriptedRunner(),
        ScriptedRunner(output=b""),
    ])
    def test_failures_name_the_profile(self, tmp_path, runner: ScriptedRunner) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        with pytest.raises(EncodeError) as exc_info:
            RenditionEncoder(runner).encode("in.mp4", str(tmp_path / "out.mp4"), PROFILE_720P)

        assert exc_info.value.profile == "720p"
        assert exc_info.value.stage == "encoding"
        assert "720p" in str(exc_info.value)


class TestThumbnail:
    """Tests for ThumbnailExtractor."""

    def test_thumbnail_command(self) -> None:
        extractor = ThumbnailExtractor(ScriptedRunner(), ffmpeg_path="ffmpeg", offset_seconds=5.0)

        assert extractor.build_thumbnail_command("in.mp4", "thumb.jpg", 5.0) == [
            "ffmpeg", "-y", "-ss", "5", "-i", "in.mp4", "-frames:v", "1", "-q:v", "2", "thumb.jpg",
        ]

    @given(duration=st.floats(min_value=0.01, max_value=5.0, allow_nan=False))
    @settings(max_examples=100)
    def test_short_clips_seek_to_middle(self, duration: float) -> None:
        """**Feature: media-ingest, Property 12: Non-fatal Thumbnail**"""
        extractor = ThumbnailExtractor(ScriptedRunner(), offset_seconds=5.0)

        assert extractor.frame_offset(duration) == round(duration / 2, 3)

    @given(duration=st.floats(min_value=5.001, max_value=86400, allow_nan=False, allow_infinity=False))
    @settings(max_examples=100)
    def test_long_clips_use_offset(self, duration: float) -> None:
        """**Feature: media-ingest, Property 12: Non-fatal Thumbnail**"""
        extractor = ThumbnailExtractor(ScriptedRunner(), offset_seconds=5.0)

        assert extractor.frame_offset(duration) == 5.0

    def test_success_returns_path(self, tmp_path) -> None:
        output = tmp_path / "thumbnail.jpg"
        extractor = ThumbnailExtractor(ScriptedRunner(output=b"\xff\xd8\xff"))

        assert extractor.extract("in.mp4", str(output), duration_seconds=60) == str(output)

    @pytest.mark.parametrize("runner", [
        ScriptedRunner(ToolResult(stdout="", exit_status=1, stderr="Output file is empty")),
        ScriptedRunner(error=ToolTimeout(["ffmpeg"], 120)),
        ScriptedRunner(output=b""),
    ])
    def test_failure_returns_none(self, tmp_path, runner: ScriptedRunner) -> None:
        """**Feature: media-ingest, Property 12: Non-fatal Thumbnail**"""
        extractor = ThumbnailExtractor(runner)

        assert extractor.extract("in.mp4", str(tmp_path / "thumbnail.jpg")) is None


class TestProfiles:
    """Tests for the rendition profile table."""

    def test_default_ladder(self) -> None:
        profiles = load_profiles()

        assert [p.name for p in profiles] == ["360p", "480p", "720p", "1080p"]
        assert [p.bitrate_kbps for p in profiles] == [500, 1000, 2500, 5000]
        assert profiles[-1].dimensions == "1920x1080"

    def test_duplicate_names_rejected(self) -> None:
        entry = {"name": "720p", "width": 1280, "height": 720, "video_bitrate": "2500k"}

        with pytest.raises(ValueError, match="Duplicate"):
            load_profiles([entry, dict(entry)])

    def test_empty_table_rejected(self) -> None:
        with pytest.raises(ValueError):
            load_profiles([])

    @pytest.mark.parametrize("bitrate,kbps", [("500k", 500), ("5M", 5000), ("2.5M", 2500), ("128000", 128)])
    def test_parse_bitrate(self, bitrate: str, kbps: int) -> None:
        assert parse_bitrate_kbps(bitrate) == kbps

    @pytest.mark.parametrize("bitrate", ["", "fast", "-1k", "5G"])
    def test_invalid_bitrate_rejected(self, bitrate: str) -> None:
        with pytest.raises(ValueError):
            parse_bitrate_kbps(bitrate)


LATIN1_STDERR_SCRIPT = (
    "import sys; sys.stderr.buffer.write(b'title: caf\\xe9 \\xff\\xfe'); sys.exit(1)"
)


class TestSubprocessRunner:
    """Tests for the subprocess-backed runner."""

    def test_undecodable_stderr_is_replaced(self) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**"""
        result = SubprocessToolRunner().invoke([sys.executable, "-c", LATIN1_STDERR_SCRIPT], 30)

        assert result.exit_status == 1
        assert result.stderr.startswith("title: caf")
        assert "\ufffd" in result.stderr

    def test_undecodable_stderr_becomes_probe_error(self) -> None:
        """**Feature: media-ingest, Property 14: Media Tool Invocation**

        A failing tool with non-UTF-8 diagnostics SHALL surface as a retryable
        ProbeError, not a decoding crash.
        """
        probe = MediaProbe(SubprocessToolRunner(), ffprobe_path=sys.executable)
        probe.build_probe_command = lambda input_path: [sys.executable, "-c", LATIN1_STDERR_SCRIPT]

        with pytest.raises(ProbeError) as exc_info:
            probe.probe("/tmp/source.mp4", timeout=30)

        assert exc_info.value.retryable
