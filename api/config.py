import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_ORIGINS = ("http://localhost:5173", "http://localhost:4173", "http://localhost:3000")


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _number(env: Mapping[str, str], name: str, default, cast=float):
    """Numeric variable; unset or blank means the default."""
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _strip_browser_prefix(value: str) -> str:
    value = value.strip()
    for prefix in ("browser:", "browser-"):
        if value.lower().startswith(prefix):
            return value[len(prefix):].strip()
    return value


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed around by reference."""

    app_name: str = "Music Converter"
    data_dir: str = "./data"
    db_path: str = "./data/converter.db"
    uploads_dir: str = "./data/uploads"
    stems_dir: str = "./data/stems"

    ytdlp_cmd: str = "yt-dlp"
    ffmpeg_cmd: str = "ffmpeg"
    separation_python: str = "python3"
    demucs_model: str = "htdemucs"

    cookies_file: Optional[str] = None
    cookies_from_browser: Optional[str] = None
    cookies_candidates: tuple[str, ...] = ()
    cookies_upload_path: str = "./data/cookies/youtube.txt"

    extract_timeout_s: Optional[float] = 300
    separation_timeout_s: Optional[float] = 1800
    transcode_timeout_s: Optional[float] = 300

    analyze_bpm: bool = True

    admin_token: str = ""
    frontend_origins: tuple[str, ...] = DEFAULT_ORIGINS
    log_level: str = "INFO"

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    alert_from: str = ""
    alert_to: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        data_dir = env.get("DATA_DIR", "./data")

        venv_python = os.path.join(data_dir, "venv_spleeter", "bin", "python")
        separation_python = env.get("SEPARATION_PYTHON") or (
            venv_python if os.path.exists(venv_python) else "python3"
        )

        upload_path = os.path.join(data_dir, "cookies", "youtube.txt")
        cookies_file = env.get("YTDLP_COOKIES_FILE") or None
        if cookies_file:
            candidates = (cookies_file,)
        else:
            home = env.get("HOME", os.path.expanduser("~"))
            candidates = (
                upload_path,
                os.path.join(home, "Downloads", "youtube_cookies.txt"),
                os.path.join(home, "Downloads", "cookies.txt"),
            )

        origins = tuple(o.strip() for o in env.get("FRONTEND_ORIGINS", "").split(",") if o.strip())

        return cls(
            app_name=env.get("APP_NAME", "Music Converter"),
            data_dir=data_dir,
            db_path=env.get("DB_PATH", os.path.join(data_dir, "converter.db")),
            uploads_dir=env.get("UPLOADS_DIR", os.path.join(data_dir, "uploads")),
            stems_dir=env.get("STEMS_DIR", os.path.join(data_dir, "stems")),
            ytdlp_cmd=env.get("YTDLP_CMD", "yt-dlp"),
            ffmpeg_cmd=env.get("FFMPEG_CMD", "ffmpeg"),
            separation_python=separation_python,
            demucs_model=env.get("DEMUCS_MODEL", "htdemucs"),
            cookies_file=cookies_file,
            cookies_from_browser=_strip_browser_prefix(env.get("YTDLP_COOKIES_FROM_BROWSER", "")) or None,
            cookies_candidates=candidates,
            cookies_upload_path=cookies_file or upload_path,
            extract_timeout_s=_number(env, "EXTRACT_TIMEOUT_S", 300.0) or None,
            separation_timeout_s=_number(env, "SEPARATION_TIMEOUT_S", 1800.0) or None,
            transcode_timeout_s=_number(env, "TRANSCODE_TIMEOUT_S", 300.0) or None,
            analyze_bpm=_bool(env.get("ANALYZE_BPM") or "true"),
            admin_token=env.get("ADMIN_TOKEN", ""),
            frontend_origins=origins or DEFAULT_ORIGINS,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            smtp_host=env.get("SMTP_HOST", ""),
            smtp_port=_number(env, "SMTP_PORT", 587, int),
            smtp_user=env.get("SMTP_USER", ""),
            smtp_pass=env.get("SMTP_PASS", ""),
            alert_from=env.get("ALERT_FROM", ""),
            alert_to=env.get("ALERT_TO", ""),
        )

    def resolve_cookies_file(self) -> Optional[str]:
        """First readable credential file among the configured candidates."""
        for candidate in self.cookies_candidates:
            if os.path.isfile(candidate) and os.access(candidate, os.R_OK):
                return candidate
        return None
