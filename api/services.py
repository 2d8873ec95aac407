from dataclasses import dataclass

from config import Settings
from database import Database
from downloader import Downloader
from runner import ProcessRunner
from separation import StemSeparator
from store import JobStore, SongStore, StemStore, UserStore
from worker import ConversionPipeline, JobRunner


@dataclass
class Services:
    settings: Settings
    database: Database
    runner: ProcessRunner
    users: UserStore
    jobs: JobStore
    songs: SongStore
    stems: StemStore
    downloader: Downloader
    separator: StemSeparator
    pipeline: ConversionPipeline


def build_services(settings: Settings, runner: ProcessRunner | None = None) -> Services:
    runner = runner or ProcessRunner()
    database = Database(settings.db_path)
    jobs = JobStore(database)
    songs = SongStore(database)
    stems = StemStore(database)
    downloader = Downloader(settings, runner)
    separator = StemSeparator(settings, runner)
    pipeline = ConversionPipeline(
        settings,
        jobs,
        songs,
        stems,
        downloader,
        separator,
        runner,
        JobRunner(),
    )
    return Services(
        settings=settings,
        database=database,
        runner=runner,
        users=UserStore(database),
        jobs=jobs,
        songs=songs,
        stems=stems,
        downloader=downloader,
        separator=separator,
        pipeline=pipeline,
    )
