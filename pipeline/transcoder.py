"""
Rendition transcoding.

One ffmpeg process per ladder rendition, each writing into its own
subdirectory of the asset directory. Processes are supervised with a
per-job timeout and are always reaped, whether they finish, fail, time
out, or are cancelled because a sibling failed.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, NamedTuple, Optional

from api.enums import JobStatus
from api.errors import EncodeError, EncoderUnavailableError
from api.metrics import TRANSCODE_JOB_DURATION_SECONDS, TRANSCODE_JOBS_ACTIVE, TRANSCODE_JOBS_TOTAL
from config import PipelineConfig, Rendition

logger = logging.getLogger(__name__)

SEGMENT_FILENAME = "segment_%03d.ts"


@dataclass
class TranscodeJob:
    """One rendition encode and its outcome."""

    rendition: Rendition
    source_path: Path
    output_dir: Path
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    elapsed: float = 0.0
    encoded_seconds: float = 0.0

    @property
    def label(self) -> str:
        return self.rendition.label

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / self.rendition.playlist_name

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED


class FFmpegResult(NamedTuple):
    success: bool
    error: Optional[str]
    timed_out: bool = False


def build_rendition_command(
    source_path: Path, output_dir: Path, rendition: Rendition, ffmpeg_path: str = "ffmpeg"
) -> List[str]:
    """Build the ffmpeg argument list that encodes one HLS rendition into output_dir."""
    return [
        ffmpeg_path,
        "-y",
        "-i",
        str(source_path),
        "-c:v",
        "libx264",
        "-profile:v",
        "baseline",
        "-level",
        "3.0",
        "-pix_fmt",
        "yuv420p",
        "-crf",
        "23",
        "-preset",
        "veryfast",
        "-b:v",
        f"{rendition.video_bitrate}k",
        "-c:a",
        "aac",
        "-b:a",
        f"{rendition.audio_bitrate}k",
        "-vf",
        f"scale={rendition.width}:{rendition.height}",
        "-hls_time",
        str(rendition.segment_duration),
        "-hls_list_size",
        "0",
        "-hls_flags",
        "independent_segments",
        "-hls_segment_filename",
        str(output_dir / SEGMENT_FILENAME),
        "-progress",
        "pipe:1",
        "-f",
        "hls",
        str(output_dir / rendition.playlist_name),
    ]


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill an ffmpeg subprocess if it is still running and wait for it to exit.

    The process may exit between the returncode check and kill(); that race
    is expected and ignored.
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg_with_progress(
    cmd: List[str],
    timeout: float,
    progress_callback: Optional[Callable[[float], Awaitable[None]]] = None,
    context: str = "FFmpeg",
) -> FFmpegResult:
    """
    Run an ffmpeg command with a hard timeout, reporting encoded time as it goes.

    The process is always reaped before returning, including when the calling
    task is cancelled.

    Args:
        cmd: ffmpeg command as list of arguments (must include ``-progress pipe:1``)
        timeout: Seconds after which the process is killed
        progress_callback: Optional async callback receiving encoded seconds
        context: Description for logging

    Returns:
        FFmpegResult(success, error, timed_out)

    Raises:
        EncoderUnavailableError: If the executable cannot be started at all
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,  # stderr is not read; a full pipe would block ffmpeg
        )
    except OSError as e:
        raise EncoderUnavailableError(f"Could not start {cmd[0]}: {e}") from e

    loop = asyncio.get_running_loop()
    start_time = loop.time()
    timed_out = False

    async def read_progress():
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()

            # out_time_ms is reported in microseconds despite the name
            if line_str.startswith("out_time_ms=") and progress_callback:
                try:
                    await progress_callback(int(line_str.split("=", 1)[1]) / 1_000_000.0)
                except (ValueError, IndexError):
                    pass

    async def drain_and_wait():
        await read_progress()
        await process.wait()

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        logger.warning(f"{context} exceeded {timeout:.0f}s limit, killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    # Killing the process closes stdout, which ends drain_and_wait
    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await drain_and_wait()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = loop.time() - start_time
        return FFmpegResult(False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)", True)

    if process.returncode != 0:
        return FFmpegResult(False, f"{context} exited with code {process.returncode}")

    return FFmpegResult(True, None)


class TranscodeOrchestrator:
    """
    Encodes every rendition of the configured ladder for one source file.

    At most ``max_concurrent_jobs`` encoders run at once. The first job that
    fails or times out cancels the others; run() returns only after every job
    has reached a terminal status.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config

    def check_encoder(self) -> None:
        """Raise EncoderUnavailableError if the ffmpeg executable cannot be found."""
        if shutil.which(self.config.ffmpeg_path) is None:
            raise EncoderUnavailableError(f"Encoder executable not found: {self.config.ffmpeg_path}")

    def plan_jobs(self, source_path: Path, asset_dir: Path) -> List[TranscodeJob]:
        return [
            TranscodeJob(rendition=rendition, source_path=source_path, output_dir=asset_dir / rendition.folder_name)
            for rendition in self.config.ladder
        ]

    async def run(self, source_path: Path, asset_dir: Path) -> List[TranscodeJob]:
        """
        Transcode source_path into asset_dir, one subdirectory per rendition.

        Returns:
            The jobs in ladder order, all succeeded

        Raises:
            EncoderUnavailableError: If ffmpeg cannot be invoked
            EncodeError: If any job failed or timed out (``timed_out`` set accordingly)
        """
        self.check_encoder()

        jobs = self.plan_jobs(Path(source_path), Path(asset_dir))
        semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)
        tasks = [asyncio.create_task(self._run_job(job, semaphore), name=f"transcode-{job.label}") for job in jobs]

        logger.info(
            f"Transcoding {Path(source_path).name} into {len(jobs)} renditions "
            f"(max {self.config.max_concurrent_jobs} concurrent)"
        )

        job_error: Optional[BaseException] = None
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                failed = False
                for task in done:
                    if task.cancelled():
                        continue
                    if task.exception() is not None:
                        job_error = task.exception()
                        failed = True
                    elif not task.result().succeeded:
                        failed = True
                if failed and pending:
                    logger.warning(f"Rendition failed, cancelling {len(pending)} remaining job(s)")
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    pending = set()
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if isinstance(job_error, EncoderUnavailableError):
            raise job_error
        if job_error is not None:
            raise EncodeError(
                f"Transcoding {Path(source_path).name} aborted: {type(job_error).__name__}: {job_error}",
                failed_renditions=[job.label for job in jobs if job.status == JobStatus.FAILED],
                jobs=jobs,
            ) from job_error

        not_succeeded = [job for job in jobs if not job.succeeded]
        if not_succeeded:
            failed_jobs = [job for job in not_succeeded if job.status != JobStatus.CANCELLED]
            timed_out = any(job.status == JobStatus.TIMED_OUT for job in jobs)
            details = "; ".join(f"{job.label}: {job.error}" for job in failed_jobs)
            raise EncodeError(
                f"{len(failed_jobs)} of {len(jobs)} renditions failed ({details})",
                timed_out=timed_out,
                failed_renditions=[job.label for job in failed_jobs],
                jobs=jobs,
            )

        logger.info(f"All {len(jobs)} renditions encoded for {Path(source_path).name}")
        return jobs

    async def _run_job(self, job: TranscodeJob, semaphore: asyncio.Semaphore) -> TranscodeJob:
        try:
            async with semaphore:
                await self._encode(job)
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            job.error = "Cancelled after another rendition failed"
            TRANSCODE_JOBS_TOTAL.labels(status=job.status.value).inc()
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = f"{type(e).__name__}: {e}"
            TRANSCODE_JOBS_TOTAL.labels(status=job.status.value).inc()
            raise
        return job

    async def _encode(self, job: TranscodeJob) -> None:
        job.output_dir.mkdir(parents=True, exist_ok=True)
        job.status = JobStatus.RUNNING

        async def on_progress(seconds: float):
            job.encoded_seconds = seconds

        cmd = build_rendition_command(job.source_path, job.output_dir, job.rendition, self.config.ffmpeg_path)
        loop = asyncio.get_running_loop()
        started = loop.time()
        TRANSCODE_JOBS_ACTIVE.inc()
        try:
            result = await run_ffmpeg_with_progress(
                cmd,
                timeout=self.config.job_timeout,
                progress_callback=on_progress,
                context=f"ffmpeg {job.label}",
            )
        finally:
            TRANSCODE_JOBS_ACTIVE.dec()
            job.elapsed = loop.time() - started

        if result.timed_out:
            job.status = JobStatus.TIMED_OUT
            job.error = result.error
        elif not result.success:
            job.status = JobStatus.FAILED
            job.error = result.error
        elif not job.playlist_path.exists():
            job.status = JobStatus.FAILED
            job.error = f"ffmpeg exited cleanly but produced no {job.rendition.playlist_name}"
        else:
            job.status = JobStatus.SUCCEEDED

        TRANSCODE_JOBS_TOTAL.labels(status=job.status.value).inc()
        TRANSCODE_JOB_DURATION_SECONDS.labels(rendition=job.label).observe(job.elapsed)
        if job.succeeded:
            logger.info(f"Rendition {job.label} done in {job.elapsed:.1f}s")
        else:
            logger.error(f"Rendition {job.label} {job.status.value}: {job.error}")
