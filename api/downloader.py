import json
import logging
import math
import re
import threading
import time
from enum import Enum
from typing import Iterator, Sequence

from config import Settings
from errors import (
    CredentialDatabaseNotFoundError,
    CredentialStoreError,
    ToolInvocationError,
    ToolTimeoutError,
    UpstreamBlockedError,
    UpstreamPreconditionError,
)
from models import TrackMetadata
from runner import ProcessRunner

logger = logging.getLogger(__name__)

BASE_ARGS = ("--no-warnings", "--no-playlist")
IMPERSONATE_ARGS = ("--impersonate", "chrome")
CLIENT_STRATEGIES: tuple[tuple[str, ...], ...] = (
    (),
    ("--extractor-args", "youtube:player_client=web"),
    ("--extractor-args", "youtube:player_client=ios,web"),
    ("--extractor-args", "youtube:player_client=tv,web"),
)

IMPERSONATE_UNAVAILABLE_RE = re.compile(r"Impersonate target .* is not available", re.IGNORECASE)
SECRETSTORAGE_RE = re.compile(r"secretstorage not available", re.IGNORECASE)
COOKIE_DB_RE = re.compile(r"could not find .* cookies database", re.IGNORECASE)
ANTI_BOT_RE = re.compile(r"Sign in to confirm you.re not a bot", re.IGNORECASE)
PRECONDITION_RE = re.compile(r"Precondition check failed|not available on this app", re.IGNORECASE)

KEY_RE = re.compile(r"(?<![\w#])([A-G](?:#|b)?m?)(?![\w#])")

UNKNOWN_TITLE = "Unknown Track"
UNKNOWN_ARTIST = "Unknown Artist"
DEFAULT_GENRE = "Pop"
PLACEHOLDER_THUMBNAIL = "https://picsum.photos/300/300?random={stamp}"


class FailureKind(Enum):
    BLOCKED_AND_CREDENTIAL_STORE = "blocked_and_credential_store"
    BLOCKED = "blocked"
    CREDENTIAL_STORE = "credential_store"
    COOKIE_DATABASE_NOT_FOUND = "cookie_database_not_found"
    PRECONDITION = "precondition"
    TOOL_FAILURE = "tool_failure"


FAILURE_ERRORS = {
    FailureKind.BLOCKED_AND_CREDENTIAL_STORE: (
        UpstreamBlockedError,
        "YouTube required sign-in and reading browser cookies failed (secretstorage). "
        "Install secretstorage and keyring for the Python that runs yt-dlp "
        "(python3 -m pip install secretstorage keyring), or set YTDLP_COOKIES_FILE to a cookies.txt.",
    ),
    FailureKind.BLOCKED: (
        UpstreamBlockedError,
        "YouTube blocked the request as automated traffic. Refresh or regenerate cookies.txt and try again. "
        "Cookies, chrome impersonation and alternate player clients were already tried.",
    ),
    FailureKind.CREDENTIAL_STORE: (
        CredentialStoreError,
        "Could not read browser cookies. Install secretstorage and keyring for the Python that runs yt-dlp "
        "(python3 -m pip install secretstorage keyring), or set YTDLP_COOKIES_FILE to a cookies.txt.",
    ),
    FailureKind.COOKIE_DATABASE_NOT_FOUND: (
        CredentialDatabaseNotFoundError,
        "Browser cookies were not found for the current user. Run the server as your regular user "
        "(not with sudo) or set YTDLP_COOKIES_FILE to a valid cookies.txt.",
    ),
    FailureKind.PRECONDITION: (
        UpstreamPreconditionError,
        "YouTube rejected the default client for this video. Update yt-dlp and export a fresh cookies.txt; "
        "alternate clients were already tried automatically.",
    ),
}


def classify_failure(stderr: str) -> FailureKind:
    """Map aggregated yt-dlp stderr to the most specific failure kind."""
    blocked = bool(ANTI_BOT_RE.search(stderr))
    credential_store = bool(SECRETSTORAGE_RE.search(stderr))

    if blocked and credential_store:
        return FailureKind.BLOCKED_AND_CREDENTIAL_STORE
    if blocked:
        return FailureKind.BLOCKED
    if credential_store:
        return FailureKind.CREDENTIAL_STORE
    if COOKIE_DB_RE.search(stderr):
        return FailureKind.COOKIE_DATABASE_NOT_FOUND
    if PRECONDITION_RE.search(stderr):
        return FailureKind.PRECONDITION
    return FailureKind.TOOL_FAILURE


class AttemptPlan:
    """Every credential x impersonation x client combination as a full argument list.

    Iterating yields deduplicated argument lists in credential-outer, client-inner
    order; each iteration starts over, so a plan can be replayed.
    """

    def __init__(
        self,
        operation_args: Sequence[str],
        credential_strategies: Sequence[Sequence[str]] = ((),),
        impersonation_strategies: Sequence[Sequence[str]] = ((),),
        client_strategies: Sequence[Sequence[str]] = CLIENT_STRATEGIES,
    ):
        self.operation_args = tuple(operation_args)
        self.credential_strategies = [tuple(s) for s in credential_strategies]
        self.impersonation_strategies = [tuple(s) for s in impersonation_strategies]
        self.client_strategies = [tuple(s) for s in client_strategies]

    def __iter__(self) -> Iterator[list[str]]:
        seen = set()
        for credential in self.credential_strategies:
            for impersonation in self.impersonation_strategies:
                for client in self.client_strategies:
                    args = (*BASE_ARGS, *credential, *impersonation, *client, *self.operation_args)
                    if args in seen:
                        continue
                    seen.add(args)
                    yield list(args)

    def without_impersonation(self) -> "AttemptPlan":
        return AttemptPlan(self.operation_args, self.credential_strategies, ((),), self.client_strategies)


class Downloader:
    """yt-dlp front end that works around upstream blocking by trying many invocations."""

    def __init__(self, settings: Settings, runner: ProcessRunner):
        self.settings = settings
        self.runner = runner
        self._impersonation: bool | None = None
        self._probe_lock = threading.Lock()

    def supports_impersonation(self) -> bool:
        with self._probe_lock:
            if self._impersonation is None:
                result = self.runner.run(self.settings.ytdlp_cmd, ["--list-impersonate-targets"], timeout=60)
                output = f"{result.stdout}\n{result.stderr}".lower()
                self._impersonation = result.succeeded and "chrome" in output
                logger.info(f"yt-dlp chrome impersonation available: {self._impersonation}")
            return self._impersonation

    def credential_strategies(self) -> list[tuple[str, ...]]:
        strategies: list[tuple[str, ...]] = [()]
        if self.settings.cookies_from_browser:
            strategies.append(("--cookies-from-browser", self.settings.cookies_from_browser))
        cookies_file = self.settings.resolve_cookies_file()
        if cookies_file:
            strategies.append(("--cookies", cookies_file))
        return strategies

    def plan(self, operation_args: Sequence[str]) -> AttemptPlan:
        impersonation = [(), IMPERSONATE_ARGS] if self.supports_impersonation() else [()]
        return AttemptPlan(operation_args, self.credential_strategies(), impersonation)

    def run_with_fallback(self, operation_args: Sequence[str]) -> str:
        """
        Try every planned invocation until one succeeds and return its stdout.
        Raises a classified ExtractionError (or ToolInvocationError) when all fail.
        """
        plan = self.plan(operation_args)
        errors: list[str] = []
        timeouts = 0
        attempts = 0

        def attempt(candidates) -> str | None:
            nonlocal timeouts, attempts
            for args in candidates:
                attempts += 1
                result = self.runner.run(self.settings.ytdlp_cmd, args, timeout=self.settings.extract_timeout_s)
                if result.succeeded:
                    return result.stdout
                if result.timed_out:
                    timeouts += 1
                errors.append(result.stderr or "yt-dlp failed")
                logger.debug(f"yt-dlp attempt failed ({' '.join(args[:-1])}): {errors[-1].strip()[:300]}")
            return None

        output = attempt(plan)
        if output is not None:
            return output

        if any(IMPERSONATE_UNAVAILABLE_RE.search(e) for e in errors):
            logger.info("Impersonation unavailable in this yt-dlp build, retrying without it")
            output = attempt(plan.without_impersonation())
            if output is not None:
                return output

        all_errors = "\n".join(errors)
        kind = classify_failure(all_errors)
        logger.warning(f"All {attempts} yt-dlp attempts failed ({kind.value})")

        if kind in FAILURE_ERRORS:
            error_cls, message = FAILURE_ERRORS[kind]
            raise error_cls(message)

        last_error = errors[-1].strip() if errors else ""
        if attempts and timeouts == attempts:
            raise ToolTimeoutError(last_error or "yt-dlp timed out", stderr=all_errors)
        raise ToolInvocationError(last_error or "Failed to run yt-dlp", stderr=all_errors)

    def extract_metadata(self, url: str) -> dict:
        output = self.run_with_fallback(["--dump-single-json", url])
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ToolInvocationError(f"yt-dlp returned unreadable metadata: {e}", stderr=output[:500]) from e

    def extract_audio(self, url: str, output_template: str) -> None:
        """Download `url` as MP3 to `output_template` (a yt-dlp `%(ext)s` template)."""
        self.run_with_fallback(
            [
                "--extract-audio",
                "--audio-format", "mp3",
                "--audio-quality", "0",
                "-o", output_template,
                url,
            ]
        )

    def fetch_metadata(self, url: str) -> TrackMetadata:
        return build_metadata(self.extract_metadata(url))


def format_duration(seconds) -> str:
    try:
        total = float(seconds or 0)
    except (TypeError, ValueError):
        total = 0
    if math.isnan(total) or math.isinf(total):
        total = 0
    total = max(0, int(math.floor(total)))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def normalize_key(raw) -> str | None:
    if not raw or not isinstance(raw, str):
        return None
    key = raw.strip().upper()
    return key or None


def detect_key(text) -> str | None:
    """Best-effort musical key from free text, e.g. 'Song in Am' -> 'AM'."""
    if not text or not isinstance(text, str):
        return None
    match = KEY_RE.search(text)
    return normalize_key(match.group(1)) if match else None


def build_metadata(info: dict) -> TrackMetadata:
    title = info.get("track") or info.get("title") or UNKNOWN_TITLE
    artist = (
        info.get("artist")
        or info.get("uploader")
        or info.get("channel")
        or info.get("creator")
        or UNKNOWN_ARTIST
    )
    key = normalize_key(info.get("music_key") or info.get("key")) or detect_key(title)
    thumbnail = info.get("thumbnail") or PLACEHOLDER_THUMBNAIL.format(stamp=int(time.time() * 1000))
    return TrackMetadata(
        title=title,
        artist=artist,
        thumbnail_url=thumbnail,
        duration=format_duration(info.get("duration")),
        genre=info.get("genre") or DEFAULT_GENRE,
        key=key,
    )
