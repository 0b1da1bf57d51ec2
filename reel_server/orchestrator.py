"""
Job orchestration for /process.

A job walks admitted -> fetching -> normalizing -> concatenating ->
overlaying -> audio_mixing -> streaming -> cleaned, and can drop into failed
from any step before streaming. Clip downloads run concurrently; every later
stage consumes the previous stage's output and runs strictly in order.
Blocking work (downloads, ffmpeg, ffprobe, file writes) is pushed to the
default executor so the event loop keeps serving other requests.
"""

import asyncio
import base64
import binascii
import functools
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CapacityError, JobError, ProbeError, ReelServerError, ValidationError
from .filtergraph import audio_command, check_clip_lengths, concat_command, normalize_command, overlay_command
from .models import AudioSource, AudioUrl, InlineAudio, ProcessRequest

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    ADMITTED = "admitted"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    CONCATENATING = "concatenating"
    OVERLAYING = "overlaying"
    AUDIO_MIXING = "audio_mixing"
    STREAMING = "streaming"
    CLEANED = "cleaned"
    FAILED = "failed"


def new_job_id() -> str:
    return secrets.token_hex(8)


@dataclass
class Job:
    id: str
    workdir: Path
    state: JobState = JobState.ADMITTED
    current: Optional[Path] = None
    holds_slot: bool = True

    def path(self, name: str) -> Path:
        return self.workdir / name

    def advance(self, artifact: Path) -> None:
        self.current = artifact


@dataclass
class RenderResult:
    path: Path
    duration: float
    size: int


class JobSlots:
    """Counts jobs between admission and cleanup; rejects instead of queueing."""

    def __init__(self, limit: int):
        self.limit = limit
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        return self._active

    def acquire(self) -> None:
        with self._lock:
            if self._active >= self.limit:
                raise CapacityError(self._active, self.limit)
            self._active += 1

    def release(self) -> None:
        with self._lock:
            if self._active > 0:
                self._active -= 1


def audio_source(request: ProcessRequest) -> Optional[AudioSource]:
    if request.audio_url and request.audio_data:
        raise ValidationError("Provide either audio_url or audio_data, not both")
    if request.audio_data:
        try:
            return InlineAudio(base64.b64decode(request.audio_data))
        except (binascii.Error, ValueError) as e:
            raise ValidationError("audio_data is not valid base64") from e
    if request.audio_url:
        return AudioUrl(str(request.audio_url))
    return None


class Orchestrator:
    def __init__(self, settings, fetcher, engine, prober, fonts, cleanup, slots: Optional[JobSlots] = None):
        self.settings = settings
        self.fetcher = fetcher
        self.engine = engine
        self.prober = prober
        self.fonts = fonts
        self.cleanup = cleanup
        self.slots = slots or JobSlots(settings.max_jobs)

    # ----------------- admission -----------------

    def validate(self, request: ProcessRequest) -> Optional[AudioSource]:
        if not request.clips:
            raise ValidationError("No clips provided")
        return audio_source(request)

    def admit(self) -> Job:
        self.slots.acquire()
        job_id = new_job_id()
        job = Job(id=job_id, workdir=Path(self.settings.jobs_dir) / job_id)
        try:
            job.workdir.mkdir(parents=True, exist_ok=False)
        except OSError:
            self._release(job)
            raise
        logger.info("[%s] Admitted (%d/%d active)", job.id, self.slots.active, self.slots.limit)
        return job

    def _release(self, job: Job) -> None:
        if job.holds_slot:
            job.holds_slot = False
            self.slots.release()

    def _fail(self, job: Job) -> None:
        job.state = JobState.FAILED
        self.cleanup.schedule(str(job.workdir), delay=0)
        self._release(job)

    def finish(self, job: Job) -> None:
        """Called once the response stream ends, successfully or not."""
        self.cleanup.schedule(str(job.workdir), delay=self.settings.cleanup_delay)
        job.state = JobState.CLEANED
        self._release(job)
        logger.info("[%s] Finished, cleanup in %ss", job.id, self.settings.cleanup_delay)

    # ----------------- pipeline -----------------

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def render(self, job: Job, request: ProcessRequest, audio: Optional[AudioSource] = None) -> RenderResult:
        ok = False
        try:
            result = await self._run_stages(job, request, audio)
            ok = True
        except ReelServerError as e:
            logger.error("[%s] Error: %s", job.id, e.message)
            raise
        except Exception as e:
            logger.exception("[%s] Unexpected error", job.id)
            raise JobError(str(e) or type(e).__name__) from e
        finally:
            if not ok:
                self._fail(job)
        job.state = JobState.STREAMING
        return result

    async def _fetch_all(self, urls: List[str], paths: List[Path]) -> None:
        results = await asyncio.gather(
            *(self._call(self.fetcher.fetch, url, str(p)) for url, p in zip(urls, paths)),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, BaseException):
                raise r

    async def _raw_duration(self, job: Job, path: Path) -> Optional[float]:
        # streamed webm/mkv often carry no container duration until remuxed
        try:
            return await self._call(self.prober.duration, str(path))
        except ProbeError as e:
            logger.warning("[%s] Duration of %s unknown before normalizing: %s", job.id, path.name, e.message)
            return None

    async def _run_stages(self, job: Job, request: ProcessRequest, audio: Optional[AudioSource]) -> RenderResult:
        output = request.output
        crossfade = request.crossfade

        # ---- STEP 1: download all clips (parallel) ----
        job.state = JobState.FETCHING
        logger.info("[%s] Downloading %d clips in parallel...", job.id, len(request.clips))
        clip_paths = [job.path(f"clip_{i}.mp4") for i in range(len(request.clips))]
        await self._fetch_all([str(c.url) for c in request.clips], clip_paths)
        logger.info("[%s] All %d clips downloaded", job.id, len(clip_paths))

        if len(clip_paths) > 1:
            # reject clips shorter than the crossfade before any transcoding
            raw = [await self._raw_duration(job, p) for p in clip_paths]
            check_clip_lengths(raw, crossfade)

        # ---- STEP 2: normalize ----
        job.state = JobState.NORMALIZING
        logger.info("[%s] Normalizing clips to %dx%d @ %dfps...", job.id, output.width, output.height, output.fps)
        norm_paths = []
        for i, src in enumerate(clip_paths):
            dst = job.path(f"norm_{i}.mp4")
            await self._call(self.engine.run, normalize_command(str(src), str(dst), output))
            norm_paths.append(dst)

        # ---- STEP 3: crossfade concat ----
        if len(norm_paths) == 1:
            job.advance(norm_paths[0])
        else:
            job.state = JobState.CONCATENATING
            logger.info("[%s] Concatenating %d clips with %ss crossfade...", job.id, len(norm_paths), crossfade)
            durations = [await self._call(self.prober.duration, str(p)) for p in norm_paths]
            logger.info("[%s] Clip durations: %s", job.id, durations)
            concat_path = job.path("concat.mp4")
            cmd = concat_command([str(p) for p in norm_paths], durations, crossfade, str(concat_path))
            await self._call(self.engine.run, cmd)
            job.advance(concat_path)

        # ---- STEP 4: overlays + video fades (one re-encode) ----
        overlay = request.overlay
        if overlay.has_content or request.has_fades:
            job.state = JobState.OVERLAYING
            logger.info("[%s] Adding overlays + video fades (single pass)...", job.id)
            logo_path = None
            if overlay.logo_url:
                logo_path = job.path("logo.png")
                await self._call(self.fetcher.fetch, str(overlay.logo_url), str(logo_path))
            font_path = None
            if overlay.text:
                font_path = await self._call(self.fonts.resolve, overlay)
            duration = None
            if request.fade_out > 0:
                duration = await self._call(self.prober.duration, str(job.current))
            overlay_path = job.path("overlay.mp4")
            cmd = overlay_command(
                str(job.current),
                str(overlay_path),
                height=output.height,
                overlay=overlay,
                logo_path=str(logo_path) if logo_path else None,
                font_path=font_path,
                fade_in=request.fade_in,
                fade_out=request.fade_out,
                duration=duration,
            )
            await self._call(self.engine.run, cmd)
            job.advance(overlay_path)

        # ---- STEP 5: audio track ----
        if audio is not None:
            job.state = JobState.AUDIO_MIXING
            audio_path = job.path("audio.mp3")
            if isinstance(audio, InlineAudio):
                logger.info("[%s] Adding audio (base64, %dKB)...", job.id, round(len(audio.data) / 1024))
                await self._call(audio_path.write_bytes, audio.data)
            else:
                logger.info("[%s] Adding audio (url)...", job.id)
                await self._call(self.fetcher.fetch, audio.url, str(audio_path))
            video_duration = await self._call(self.prober.duration, str(job.current))
            with_audio = job.path("with_audio.mp4")
            cmd = audio_command(
                str(job.current),
                str(audio_path),
                str(with_audio),
                duration=video_duration,
                fade_in=request.fade_in,
                fade_out=request.fade_out,
            )
            await self._call(self.engine.run, cmd)
            job.advance(with_audio)

        final = job.current
        final_duration = await self._call(self.prober.duration, str(final))
        size = os.path.getsize(final)
        logger.info("[%s] Done! Duration: %.1fs, Size: %.1fMB", job.id, final_duration, size / 1024 / 1024)
        return RenderResult(path=final, duration=final_duration, size=size)

    # ----------------- /probe -----------------

    async def probe_url(self, url: str) -> Dict[str, Any]:
        workdir = Path(self.settings.jobs_dir) / new_job_id()
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            path = workdir / "input.mp4"
            await self._call(self.fetcher.fetch, str(url), str(path))
            return await self._call(self.prober.metadata, str(path))
        finally:
            self.cleanup.schedule(str(workdir))
