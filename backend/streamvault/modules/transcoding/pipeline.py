"""Transcode orchestrator.

Runs one attempt of a transcode job for a SourceFile:

    queued -> downloading -> probing -> encoding (k of N)
           -> thumbnail_extracting -> publishing -> done

Every stage boundary is committed so pollers see progress. Each attempt
starts from the beginning in its own scratch directory, which is removed on
every exit path. Retryable failures schedule another attempt until the
attempt budget runs out; JobTimeout and missing references fail the job
outright.
"""

import logging
import os
import tempfile
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from streamvault.core.config import settings
from streamvault.core.exceptions import (
    DownloadError,
    EncodeError,
    JobSuperseded,
    JobTimeout,
    NotFoundReference,
    ProbeError,
    PublishError,
    StreamVaultError,
    TranscodeError,
    truncate_error,
)
from streamvault.core.logging import bind_job, log_error, log_info, log_warning
from streamvault.core.metrics import TRANSCODE_JOBS_TOTAL, TRANSCODE_STAGE_DURATION_SECONDS
from streamvault.core.storage import ObjectVisibility, Storage
from streamvault.core.tracing import create_span, record_exception
from streamvault.modules.job.tasks import RETRY_CONFIGS, RetryConfig
from streamvault.modules.media.keys import file_extension, rendition_key, thumbnail_key
from streamvault.modules.media.models import JobStage, MediaStatus
from streamvault.modules.media.repository import (
    AssetRepository,
    RenditionRepository,
    SourceFileRepository,
)
from streamvault.modules.transcoding.ffmpeg import MediaProbe, RenditionEncoder, ThumbnailExtractor
from streamvault.modules.transcoding.runner import MediaToolRunner
from streamvault.modules.transcoding.schemas import (
    DEGRADED_PROBE_RESULT,
    EncodedRendition,
    ProbeResult,
    RenditionProfile,
    load_profiles,
)

logger = logging.getLogger(__name__)

CONTAINER_CONTENT_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
}

# progress_percent reported at the start of each stage
STAGE_PROGRESS = {
    JobStage.DOWNLOADING: 5,
    JobStage.PROBING: 10,
    JobStage.ENCODING: 15,
    JobStage.THUMBNAIL_EXTRACTING: 85,
    JobStage.PUBLISHING: 90,
}


class AttemptOutcome(str, Enum):
    """How a single attempt ended."""

    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class AttemptResult:
    """Result of TranscodeOrchestrator.run_attempt."""

    outcome: AttemptOutcome
    source_file_id: int
    attempt: int
    error: Optional[str] = None
    retry_delay: Optional[float] = None
    renditions: tuple[str, ...] = ()
    failed_renditions: tuple[str, ...] = ()
    thumbnail_key: Optional[str] = None


@dataclass(frozen=True)
class JobContext:
    """Immutable per-attempt context handed to every stage."""

    source_file_id: int
    asset_id: int
    job_token: str
    source_key: str
    attempt: int
    max_attempts: int
    deadline: float
    scratch_dir: str = ""

    def remaining(self, now: Optional[float] = None) -> float:
        """Seconds left before the attempt deadline."""
        return self.deadline - (time.monotonic() if now is None else now)

    def span_attributes(self) -> dict:
        return {
            "source_file.id": self.source_file_id,
            "asset.id": self.asset_id,
            "job.attempt": self.attempt,
        }


@dataclass
class _Repos:
    assets: AssetRepository
    source_files: SourceFileRepository
    renditions: RenditionRepository

    @classmethod
    def for_session(cls, session: AsyncSession) -> "_Repos":
        return cls(
            assets=AssetRepository(session),
            source_files=SourceFileRepository(session),
            renditions=RenditionRepository(session),
        )


class TranscodeOrchestrator:
    """Drives probe, encode, thumbnail and publish for one SourceFile.

    External tools are reached through the injected MediaToolRunner and the
    object store through Storage, so the whole pipeline runs against fakes in
    tests.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        storage: Storage,
        runner: MediaToolRunner,
        profiles: Optional[Sequence[RenditionProfile]] = None,
        retry_config: Optional[RetryConfig] = None,
        job_timeout: Optional[float] = None,
        allow_degraded_probe: Optional[bool] = None,
        allow_partial_renditions: Optional[bool] = None,
        scratch_dir: Optional[str] = None,
        timeout_errors: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the orchestrator.

        Args:
            session_maker: Factory for database sessions
            storage: Object store gateway
            runner: Executes ffmpeg/ffprobe
            profiles: Rendition profiles, defaults to TRANSCODE_PROFILES
            retry_config: Attempt budget and delays, defaults to the transcode config
            job_timeout: Per-attempt deadline in seconds
            allow_degraded_probe: Continue with default metadata when probing fails
            allow_partial_renditions: Publish whatever renditions succeeded
            scratch_dir: Parent directory for per-attempt scratch space
            timeout_errors: Exceptions raised by an outer watchdog that mean the
                deadline passed, e.g. Celery's SoftTimeLimitExceeded
            clock: Monotonic clock, injectable for tests
        """
        self.session_maker = session_maker
        self.storage = storage
        self.runner = runner
        self.profiles = list(profiles) if profiles is not None else load_profiles()
        self.retry_config = retry_config or RETRY_CONFIGS["transcode"]
        self.job_timeout = job_timeout or settings.TRANSCODE_JOB_TIMEOUT_SECONDS
        self.allow_degraded_probe = (
            settings.TRANSCODE_ALLOW_DEGRADED_PROBE
            if allow_degraded_probe is None else allow_degraded_probe
        )
        self.allow_partial_renditions = (
            settings.TRANSCODE_ALLOW_PARTIAL_RENDITIONS
            if allow_partial_renditions is None else allow_partial_renditions
        )
        self.scratch_dir = scratch_dir or settings.TRANSCODE_SCRATCH_DIR
        self.timeout_errors = timeout_errors
        self.clock = clock

        self.probe = MediaProbe(runner)
        self.encoder = RenditionEncoder(runner)
        self.thumbnails = ThumbnailExtractor(runner)

    # ==================== Attempt lifecycle ====================

    async def run_attempt(self, source_file_id: int, job_token: str, attempt: int = 1) -> AttemptResult:
        """Run one attempt of the job that owns ``job_token``.

        Pipeline failures never escape: they are recorded on the SourceFile
        and reported in the returned AttemptResult. Only unexpected errors
        are re-raised after the SourceFile has been failed.

        Raises:
            NotFoundReference: If the SourceFile does not exist
        """
        bind_job(job_token, source_file_id, attempt)
        deadline = self.clock() + self.job_timeout

        async with self.session_maker() as session:
            repos = _Repos.for_session(session)

            source_file = await repos.source_files.get_by_id(source_file_id)
            if source_file is None:
                raise NotFoundReference("SourceFile", source_file_id)

            ctx = JobContext(
                source_file_id=source_file_id,
                asset_id=source_file.asset_id,
                job_token=job_token,
                source_key=source_file.storage_key,
                attempt=attempt,
                max_attempts=self.retry_config.max_attempts,
                deadline=deadline,
            )

            if source_file.job_token != job_token:
                return self._superseded(ctx)

            if not await repos.source_files.begin_attempt(source_file_id, job_token, attempt):
                await session.rollback()
                return self._superseded(ctx)
            await session.commit()

            log_info(
                logger,
                "Transcode attempt started",
                source_file_id=source_file_id,
                attempt=attempt,
                max_attempts=ctx.max_attempts,
            )

            try:
                if await repos.assets.get_by_id(ctx.asset_id) is None:
                    raise NotFoundReference("Asset", ctx.asset_id)

                with tempfile.TemporaryDirectory(
                    prefix=f"transcode-{source_file_id}-", dir=self.scratch_dir
                ) as scratch:
                    with create_span("transcode.attempt", attributes=ctx.span_attributes()):
                        return await self._run_stages(session, repos, replace(ctx, scratch_dir=scratch))
            except JobSuperseded:
                await session.rollback()
                return self._superseded(ctx)
            except (TranscodeError, NotFoundReference) as e:
                return await self._handle_failure(session, repos, ctx, e)
            except self.timeout_errors as e:
                timeout = JobTimeout(f"Job exceeded its time limit: {type(e).__name__}")
                return await self._handle_failure(session, repos, ctx, timeout)
            except Exception as e:
                log_error(logger, "Unexpected transcode error", exception=e, source_file_id=source_file_id)
                await self._fail_quietly(session, repos, ctx, f"Unexpected error: {type(e).__name__}: {e}")
                raise

    async def _handle_failure(
        self,
        session: AsyncSession,
        repos: _Repos,
        ctx: JobContext,
        error: Exception,
    ) -> AttemptResult:
        await session.rollback()
        message = truncate_error(str(error))
        retryable = getattr(error, "retryable", False)

        if retryable and self.retry_config.should_retry(ctx.attempt):
            delay = self.retry_config.calculate_delay(ctx.attempt)
            next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
            owned = await repos.source_files.mark_retry_scheduled(
                ctx.source_file_id, ctx.job_token, message, next_retry_at
            )
            outcome = AttemptOutcome.RETRY_SCHEDULED
        else:
            delay = None
            owned = await repos.source_files.mark_failed(ctx.source_file_id, ctx.job_token, message)
            outcome = AttemptOutcome.FAILED

        if not owned:
            await session.rollback()
            return self._superseded(ctx)

        await repos.renditions.fail_in_flight(ctx.source_file_id, message)
        await session.commit()

        TRANSCODE_JOBS_TOTAL.labels(outcome=outcome.value).inc()
        if outcome == AttemptOutcome.RETRY_SCHEDULED:
            log_warning(
                logger,
                "Transcode attempt failed, retry scheduled",
                source_file_id=ctx.source_file_id,
                attempt=ctx.attempt,
                stage=getattr(error, "stage", None),
                retry_in_seconds=delay,
                error=message,
            )
        else:
            log_error(
                logger,
                "Transcode failed",
                source_file_id=ctx.source_file_id,
                attempt=ctx.attempt,
                stage=getattr(error, "stage", None),
                error_type=type(error).__name__,
                error=message,
            )

        return AttemptResult(
            outcome=outcome,
            source_file_id=ctx.source_file_id,
            attempt=ctx.attempt,
            error=message,
            retry_delay=delay,
        )

    async def _fail_quietly(self, session: AsyncSession, repos: _Repos, ctx: JobContext, message: str) -> None:
        """Fail the SourceFile on the way out of an unexpected error."""
        try:
            await session.rollback()
            await repos.source_files.mark_failed(ctx.source_file_id, ctx.job_token, message)
            await repos.renditions.fail_in_flight(ctx.source_file_id, message)
            await session.commit()
            TRANSCODE_JOBS_TOTAL.labels(outcome=AttemptOutcome.FAILED.value).inc()
        except Exception as e:
            # The original error is re-raised by the caller
            log_error(logger, "Could not record transcode failure", exception=e, source_file_id=ctx.source_file_id)

    def _superseded(self, ctx: JobContext) -> AttemptResult:
        TRANSCODE_JOBS_TOTAL.labels(outcome=AttemptOutcome.SUPERSEDED.value).inc()
        log_warning(
            logger,
            "Transcode attempt no longer owns its source file, stopping",
            source_file_id=ctx.source_file_id,
            attempt=ctx.attempt,
        )
        return AttemptResult(
            outcome=AttemptOutcome.SUPERSEDED,
            source_file_id=ctx.source_file_id,
            attempt=ctx.attempt,
        )

    # ==================== Stages ====================

    async def _run_stages(self, session: AsyncSession, repos: _Repos, ctx: JobContext) -> AttemptResult:
        source_path = await self._download(session, repos, ctx)
        probe = await self._probe(session, repos, ctx, source_path)
        encoded, failed = await self._encode_all(session, repos, ctx, source_path)
        thumbnail_path = await self._extract_thumbnail(session, repos, ctx, source_path, probe)
        thumb_key = await self._publish(session, repos, ctx, encoded, thumbnail_path)

        if failed:
            status = MediaStatus.PARTIALLY_COMPLETED
            summary = "Renditions failed: " + "; ".join(f"{name}: {error}" for name, error in failed)
        else:
            status = MediaStatus.COMPLETED
            summary = None

        if not await repos.source_files.mark_completed(ctx.source_file_id, ctx.job_token, status, summary):
            raise JobSuperseded("Source file was re-dispatched during publishing")
        await session.commit()

        outcome = AttemptOutcome(status.value)
        TRANSCODE_JOBS_TOTAL.labels(outcome=outcome.value).inc()
        log_info(
            logger,
            "Transcode finished",
            source_file_id=ctx.source_file_id,
            attempt=ctx.attempt,
            status=status.value,
            renditions=[e.profile.name for e in encoded],
        )
        return AttemptResult(
            outcome=outcome,
            source_file_id=ctx.source_file_id,
            attempt=ctx.attempt,
            error=summary,
            renditions=tuple(e.profile.name for e in encoded),
            failed_renditions=tuple(name for name, _ in failed),
            thumbnail_key=thumb_key,
        )

    @asynccontextmanager
    async def _stage(self, session: AsyncSession, repos: _Repos, ctx: JobContext, stage: JobStage):
        self._check_deadline(ctx, stage)
        await self._set_progress(session, repos, ctx, stage, STAGE_PROGRESS[stage])
        started = time.monotonic()
        try:
            with create_span(f"transcode.{stage.value}", attributes=ctx.span_attributes()):
                try:
                    yield
                except Exception as e:
                    record_exception(e, attributes={"transcode.stage": stage.value})
                    raise
        finally:
            TRANSCODE_STAGE_DURATION_SECONDS.labels(stage=stage.value).observe(time.monotonic() - started)

    async def _set_progress(
        self,
        session: AsyncSession,
        repos: _Repos,
        ctx: JobContext,
        stage: JobStage,
        progress: int,
    ) -> None:
        if not await repos.source_files.set_stage(ctx.source_file_id, ctx.job_token, stage, progress):
            raise JobSuperseded(f"Lost ownership entering {stage.value}")
        await session.commit()

    async def _download(self, session: AsyncSession, repos: _Repos, ctx: JobContext) -> str:
        extension = file_extension(ctx.source_key) or "bin"
        source_path = os.path.join(ctx.scratch_dir, f"source.{extension}")

        async with self._stage(session, repos, ctx, JobStage.DOWNLOADING):
            try:
                size = self.storage.download(ctx.source_key, source_path)
            except (StreamVaultError, OSError) as e:
                raise DownloadError(f"Could not download {ctx.source_key}: {e}") from e

        log_info(logger, "Source downloaded", source_file_id=ctx.source_file_id, bytes=size)
        return source_path

    async def _probe(
        self,
        session: AsyncSession,
        repos: _Repos,
        ctx: JobContext,
        source_path: str,
    ) -> ProbeResult:
        async with self._stage(session, repos, ctx, JobStage.PROBING):
            try:
                probe = self.probe.probe(source_path, timeout=self._tool_timeout(ctx, self.probe.timeout))
            except ProbeError as e:
                self._raise_if_expired(ctx, e)
                if not self.allow_degraded_probe:
                    raise
                log_warning(
                    logger,
                    "Probe failed, continuing with default metadata",
                    source_file_id=ctx.source_file_id,
                    error=str(e),
                )
                return DEGRADED_PROBE_RESULT

            recorded = await repos.source_files.record_probe(
                ctx.source_file_id,
                ctx.job_token,
                duration_seconds=probe.duration_seconds,
                codec_video=probe.codec_video,
                bitrate=probe.bitrate,
                width=probe.width,
                height=probe.height,
            )
            if not recorded:
                raise JobSuperseded("Lost ownership while recording probe metadata")
            await session.commit()
        return probe

    async def _encode_all(
        self,
        session: AsyncSession,
        repos: _Repos,
        ctx: JobContext,
        source_path: str,
    ) -> tuple[list[EncodedRendition], list[tuple[str, str]]]:
        encoded: list[EncodedRendition] = []
        failed: list[tuple[str, str]] = []
        total = len(self.profiles)
        span = STAGE_PROGRESS[JobStage.THUMBNAIL_EXTRACTING] - STAGE_PROGRESS[JobStage.ENCODING]

        async with self._stage(session, repos, ctx, JobStage.ENCODING):
            for index, profile in enumerate(self.profiles):
                progress = STAGE_PROGRESS[JobStage.ENCODING] + (span * index) // total
                await self._set_progress(session, repos, ctx, JobStage.ENCODING, progress)

                rendition = await repos.renditions.upsert(
                    source_file_id=ctx.source_file_id,
                    name=profile.name,
                    width=profile.width,
                    height=profile.height,
                    bitrate_kbps=profile.bitrate_kbps,
                    codec_video=profile.video_codec,
                    codec_audio=profile.audio_codec,
                    format=profile.container,
                )
                await repos.renditions.mark_processing(rendition.id)
                await session.commit()

                output_path = os.path.join(
                    ctx.scratch_dir, f"{ctx.source_file_id}-{profile.name}.{profile.container}"
                )
                try:
                    size = self.encoder.encode(
                        source_path,
                        output_path,
                        profile,
                        timeout=self._tool_timeout(ctx, self.encoder.timeout),
                    )
                except EncodeError as e:
                    await repos.renditions.mark_failed(rendition.id, str(e))
                    await session.commit()
                    self._raise_if_expired(ctx, e)
                    if not self.allow_partial_renditions:
                        raise
                    log_warning(
                        logger,
                        "Rendition failed, continuing with remaining profiles",
                        source_file_id=ctx.source_file_id,
                        profile=profile.name,
                        error=str(e),
                    )
                    failed.append((profile.name, str(e)))
                    continue

                await repos.renditions.mark_completed(rendition.id, size)
                await session.commit()
                encoded.append(EncodedRendition(profile, rendition.id, output_path, size))
                log_info(
                    logger,
                    "Rendition encoded",
                    source_file_id=ctx.source_file_id,
                    profile=profile.name,
                    position=f"{index + 1}/{total}",
                    bytes=size,
                )

        if not encoded:
            raise EncodeError("All renditions failed: " + "; ".join(e for _, e in failed))
        return encoded, failed

    async def _extract_thumbnail(
        self,
        session: AsyncSession,
        repos: _Repos,
        ctx: JobContext,
        source_path: str,
        probe: ProbeResult,
    ) -> Optional[str]:
        async with self._stage(session, repos, ctx, JobStage.THUMBNAIL_EXTRACTING):
            return self.thumbnails.extract(
                source_path,
                os.path.join(ctx.scratch_dir, "thumbnail.jpg"),
                duration_seconds=probe.duration_seconds,
                timeout=self._tool_timeout(ctx, self.thumbnails.timeout),
            )

    async def _publish(
        self,
        session: AsyncSession,
        repos: _Repos,
        ctx: JobContext,
        encoded: list[EncodedRendition],
        thumbnail_path: Optional[str],
    ) -> str:
        async with self._stage(session, repos, ctx, JobStage.PUBLISHING):
            for item in encoded:
                key = rendition_key(ctx.source_file_id, item.profile.name, item.profile.container)
                try:
                    size = self.storage.put_file(
                        key,
                        item.path,
                        visibility=ObjectVisibility.PRIVATE,
                        content_type=CONTAINER_CONTENT_TYPES.get(
                            item.profile.container, "application/octet-stream"
                        ),
                    )
                except (StreamVaultError, OSError) as e:
                    raise PublishError(f"Could not store rendition {item.profile.name}: {e}") from e
                await repos.renditions.record_published(item.rendition_id, key, size)

            thumb_key = ""
            if thumbnail_path:
                key = thumbnail_key(ctx.source_file_id)
                try:
                    self.storage.put_file(
                        key,
                        thumbnail_path,
                        visibility=ObjectVisibility.PUBLIC,
                        content_type="image/jpeg",
                    )
                except (StreamVaultError, OSError) as e:
                    raise PublishError(f"Could not store thumbnail: {e}") from e
                thumb_key = key

            await repos.assets.set_thumbnail_key(ctx.asset_id, thumb_key)
        return thumb_key

    # ==================== Deadline ====================

    def _check_deadline(self, ctx: JobContext, stage: JobStage) -> None:
        if ctx.remaining(self.clock()) <= 0:
            raise JobTimeout(
                f"Job exceeded {self.job_timeout:.0f}s before {stage.value}", stage=stage.value
            )

    def _tool_timeout(self, ctx: JobContext, configured: float) -> float:
        """Tool timeout clipped to what is left of the attempt deadline."""
        remaining = ctx.remaining(self.clock())
        if remaining <= 0:
            raise JobTimeout(f"Job exceeded {self.job_timeout:.0f}s")
        return min(configured, remaining)

    def _raise_if_expired(self, ctx: JobContext, error: TranscodeError) -> None:
        if ctx.remaining(self.clock()) <= 0:
            raise JobTimeout(
                f"Job exceeded {self.job_timeout:.0f}s during {error.stage}: {error}",
                stage=error.stage,
            ) from error
