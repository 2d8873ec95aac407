import logging
import os
import shutil
import threading
import time
import uuid
from concurrent.futures import Future

from alerts import send_alert
from audio import estimate_bpm, is_target_format, transcode
from config import Settings
from downloader import Downloader
from errors import ConversionError, MissingArtifactError, UpstreamBlockedError
from models import ConversionJob, JobStatus, Song, StemFile, StemKind, TrackMetadata
from runner import ProcessRunner
from separation import StemSeparator
from store import JobStore, SongStore, StemStore

logger = logging.getLogger(__name__)

RESTART_MESSAGE = "Interrupted by server restart"


def job_to_dict(job: ConversionJob) -> dict:
    return {
        "id": job.id,
        "url": job.url,
        "status": job.status.value,
        "error_message": job.error_msg,
        "title": job.title,
        "artist": job.artist,
        "thumbnail": job.thumbnail_url,
        "duration": job.duration,
        "key": job.song_key,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
    }


class JobRunner:
    """Runs each submitted job on its own thread and keeps its future until it finishes.

    Jobs never wait for each other: a yt-dlp or Demucs call blocks only the
    thread of the job that made it.
    """

    def __init__(self):
        self._tasks: dict[str, Future] = {}
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._closed = False

    def launch(self, job_id: str, fn, *args) -> Future:
        future: Future = Future()
        thread = threading.Thread(
            target=self._run, args=(future, fn, args), daemon=True, name=f"conversion-{job_id[:8]}"
        )
        with self._lock:
            if self._closed:
                raise RuntimeError("Job runner is shut down")
            self._tasks[job_id] = future
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        future.add_done_callback(lambda _f: self._forget(job_id))
        thread.start()
        return future

    @staticmethod
    def _run(future: Future, fn, args):
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn(*args))
        except BaseException as e:
            future.set_exception(e)

    def _forget(self, job_id: str):
        with self._lock:
            self._tasks.pop(job_id, None)

    def get(self, job_id: str) -> Future | None:
        with self._lock:
            return self._tasks.get(job_id)

    def active_jobs(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def shutdown(self, wait: bool = False):
        """Stop accepting jobs. Running jobs finish on their own threads."""
        with self._lock:
            self._closed = True
            threads = list(self._threads)
        if wait:
            for thread in threads:
                thread.join()


class ConversionPipeline:
    """URL -> metadata -> MP3 -> optional stems, tracked through a polled job record.

    PENDING is written synchronously by `submit`; everything after runs on a
    background task that always ends in DONE or ERROR.
    """

    def __init__(
        self,
        settings: Settings,
        jobs: JobStore,
        songs: SongStore,
        stems: StemStore,
        downloader: Downloader,
        separator: StemSeparator,
        runner: ProcessRunner,
        job_runner: JobRunner | None = None,
    ):
        self.settings = settings
        self.jobs = jobs
        self.songs = songs
        self.stems = stems
        self.downloader = downloader
        self.separator = separator
        self.runner = runner
        self.job_runner = job_runner or JobRunner()

    def submit(self, url: str | None, user_id: str, enable_stems: bool = False) -> tuple[ConversionJob, Future]:
        url = (url or "").strip()
        if not url:
            raise ValueError("URL not provided")

        job = self.jobs.create(url, user_id)
        logger.info(f"Job {job.id} created for {url} (stems={enable_stems})")
        future = self.job_runner.launch(job.id, self.run, job.id, url, user_id, enable_stems)
        return job, future

    def poll_status(self, job_id: str) -> dict | None:
        job = self.jobs.get(job_id)
        return job_to_dict(job) if job else None

    def run(self, job_id: str, url: str, user_id: str, enable_stems: bool = False) -> JobStatus | None:
        if not self.jobs.set_processing(job_id):
            logger.warning(f"Job {job_id} is no longer pending, not processing it")
            return None
        logger.info(f"Processing job {job_id}")

        try:
            metadata = self.downloader.fetch_metadata(url)
            self.jobs.attach_metadata(job_id, metadata)

            song = self._create_song(job_id, url, user_id, metadata)

            if enable_stems:
                self._create_stems(song)

            self.jobs.complete(job_id)
            logger.info(f"Job {job_id} completed: song {song.id} at {song.file_path}")
            return JobStatus.DONE

        except Exception as e:
            error_msg = str(e) or e.__class__.__name__
            if isinstance(e, ConversionError):
                logger.error(f"Job {job_id} failed: {error_msg}")
            else:
                logger.error(f"Job {job_id} failed: {error_msg}", exc_info=True)
            self.jobs.fail(job_id, error_msg)
            if isinstance(e, UpstreamBlockedError):
                self._alert_blocked(url, user_id, error_msg)
            return JobStatus.ERROR

    def _create_song(self, job_id: str, url: str, user_id: str, metadata: TrackMetadata) -> Song:
        song_id = str(uuid.uuid4())
        os.makedirs(self.settings.uploads_dir, exist_ok=True)
        output_template = os.path.join(self.settings.uploads_dir, f"{song_id}.%(ext)s")

        logger.info(f"Job {job_id}: downloading audio from {url}")
        self.downloader.extract_audio(url, output_template)

        # yt-dlp can exit 0 after writing a different extension
        file_path = os.path.join(self.settings.uploads_dir, f"{song_id}.mp3")
        if not os.path.exists(file_path):
            raise MissingArtifactError("yt-dlp did not produce the expected MP3 file")

        bpm = self._estimate_bpm(file_path)
        return self.songs.create(song_id, metadata, file_path, user_id, job_id, bpm=bpm)

    def _estimate_bpm(self, file_path: str) -> int | None:
        if not self.settings.analyze_bpm:
            return None
        try:
            return estimate_bpm(file_path)
        except Exception as e:
            logger.warning(f"BPM analysis failed for {file_path}: {e}")
            return None

    def _create_stems(self, song: Song):
        if not os.path.exists(song.file_path):
            raise MissingArtifactError("Main audio file not found, cannot generate stems")

        self.stems.delete_for_song(song.id)

        # Engine output stays outside the publicly served stems directory until it is complete
        work_dir = os.path.join(self.settings.data_dir, ".tmp", f"{song.id}-{int(time.time() * 1000)}")
        os.makedirs(work_dir, exist_ok=True)
        os.makedirs(self.settings.stems_dir, exist_ok=True)
        written: list[str] = []

        try:
            sources = self.separator.separate(song.file_path, work_dir)

            missing = [kind.value for kind in StemKind if not os.path.exists(sources.get(kind, ""))]
            if missing:
                raise MissingArtifactError(f"Stem not found after separation: {', '.join(missing)}")

            items = []
            for kind in StemKind:
                source = sources[kind]
                target = os.path.join(self.settings.stems_dir, f"{song.id}_{kind.value.lower()}.mp3")
                # ffmpeg creates the output before it can fail
                written.append(target)
                if is_target_format(source):
                    shutil.copyfile(source, target)
                else:
                    transcode(
                        self.runner,
                        source,
                        target,
                        ffmpeg_cmd=self.settings.ffmpeg_cmd,
                        timeout=self.settings.transcode_timeout_s,
                    )
                items.append(StemFile(kind=kind, file_path=target, volume=100))

            self.stems.replace_for_song(song.id, items)
            logger.info(f"Created {len(items)} stems for song {song.id}")

        except Exception:
            for path in written:
                if os.path.exists(path):
                    os.unlink(path)
            raise

        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            logger.info(f"Cleaned up separation directory: {work_dir}")

    def _alert_blocked(self, url: str, user_id: str, error_msg: str):
        send_alert(
            self.settings,
            subject=f"[{self.settings.app_name}] YouTube bot-check failed",
            body=(
                "A conversion failed because YouTube is requiring sign-in verification.\n\n"
                f"User: {user_id}\n"
                f"URL: {url}\n\n"
                "Fix: upload fresh cookies through the admin API (POST /admin/youtube-cookies).\n\n"
                f"Error: {error_msg}"
            ),
        )


def fail_orphaned_jobs(jobs: JobStore):
    """Close out jobs a previous process left PENDING or PROCESSING.

    Called during startup before any new job is accepted. Statuses only move
    forward, so orphans end as ERROR instead of being requeued.
    """
    count = jobs.fail_orphaned(RESTART_MESSAGE)
    if count:
        logger.warning(f"Marked {count} unfinished job(s) from a previous run as ERROR")
    else:
        logger.info("No unfinished jobs found on startup")
