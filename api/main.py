import asyncio
import logging
import os
from contextlib import asynccontextmanager

from config import Settings
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from routers import admin, auth, convert, library
from services import Services, build_services
from worker import fail_orphaned_jobs

logger = logging.getLogger(__name__)


def _log_environment(services: Services):
    settings = services.settings
    engine = services.separator.select_engine()
    logger.info(f"Uploads: {settings.uploads_dir}")
    logger.info(f"Stems: {settings.stems_dir}")
    logger.info(f"Stem separation: {engine.name if engine else 'unavailable'}")

    cookies_file = settings.resolve_cookies_file()
    if settings.cookies_from_browser:
        logger.info(f"yt-dlp cookies: browser={settings.cookies_from_browser}")
    elif cookies_file:
        logger.info(f"yt-dlp cookies: file={cookies_file}")
    else:
        logger.info("yt-dlp cookies: not configured")
    if settings.cookies_file and not cookies_file:
        logger.warning(f"Cookie file not found: {settings.cookies_file}")


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up %s API", settings.app_name)
        for directory in (settings.data_dir, settings.uploads_dir, settings.stems_dir):
            os.makedirs(directory, exist_ok=True)
        services.database.init_db()
        fail_orphaned_jobs(services.jobs)
        await asyncio.to_thread(_log_environment, services)
        yield
        logger.info("Shutting down %s API", settings.app_name)
        services.pipeline.job_runner.shutdown(wait=False)

    app = FastAPI(title=settings.app_name + " API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.frontend_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Admin-Token"],
    )

    app.include_router(auth.router)
    app.include_router(convert.router)
    app.include_router(library.router)
    app.include_router(admin.router)

    app.mount("/uploads", StaticFiles(directory=settings.uploads_dir, check_dir=False), name="uploads")
    app.mount("/stems", StaticFiles(directory=settings.stems_dir, check_dir=False), name="stems")

    @app.get("/api/health")
    def health():
        return {"ok": True}

    return app


def _configure_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


_settings = Settings.from_env()
_configure_logging(_settings)
app = create_app(_settings)
