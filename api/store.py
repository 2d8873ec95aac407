import hashlib
import hmac
import logging
import os
import secrets
import sqlite3
import uuid
from datetime import datetime, timezone

from database import Database
from models import ConversionJob, JobStatus, Song, Stem, StemFile, StemKind, TrackMetadata, User

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unlink(path: str | None):
    if path and os.path.exists(path):
        os.unlink(path)
        logger.info(f"Deleted file: {path}")


def clamp_volume(value) -> int:
    """Coerce a client-supplied volume into the 0-100 range; garbage becomes 0."""
    try:
        volume = round(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, min(100, volume))


def parse_duration_seconds(duration: str | None) -> int:
    if not duration or not isinstance(duration, str):
        return 0
    try:
        parts = [int(p) for p in duration.split(":")]
    except ValueError:
        return 0
    if len(parts) == 2:
        return parts[0] * 60 + parts[1]
    if len(parts) == 3:
        return parts[0] * 3600 + parts[1] * 60 + parts[2]
    return 0


def _job_from_row(row) -> ConversionJob:
    return ConversionJob(
        id=row["id"],
        url=row["url"],
        user_id=row["user_id"],
        status=JobStatus(row["status"]),
        error_msg=row["error_msg"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        title=row["title"],
        artist=row["artist"],
        thumbnail_url=row["thumbnail_url"],
        duration=row["duration"],
        song_key=row["song_key"],
    )


def _song_from_row(row) -> Song:
    return Song(
        id=row["id"],
        title=row["title"],
        artist=row["artist"],
        genre=row["genre"],
        duration=row["duration"],
        bpm=row["bpm"],
        song_key=row["song_key"],
        file_path=row["file_path"],
        thumbnail_url=row["thumbnail_url"],
        user_id=row["user_id"],
        job_id=row["job_id"],
        favorite=bool(row["favorite"]),
        created_at=row["created_at"],
    )


def _stem_from_row(row) -> Stem:
    return Stem(
        id=row["id"],
        song_id=row["song_id"],
        kind=StemKind(row["kind"]),
        file_path=row["file_path"],
        volume=int(row["volume"]),
        created_at=row["created_at"],
    )


def _user_from_row(row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        active=bool(row["active"]),
        created_at=row["created_at"],
    )


class JobStore:
    """Conversion history. Status only moves forward; finished_at is written once."""

    def __init__(self, database: Database):
        self._database = database

    def create(self, url: str, user_id: str) -> ConversionJob:
        job_id = str(uuid.uuid4())
        with self._database.db() as conn:
            conn.execute(
                "INSERT INTO jobs (id, url, user_id, status, started_at) VALUES (?, ?, ?, 'PENDING', ?)",
                (job_id, url, user_id, _now()),
            )
        return self.get(job_id)

    def get(self, job_id: str) -> ConversionJob | None:
        with self._database.db() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return _job_from_row(row) if row else None

    def list_for_user(self, user_id: str) -> list[ConversionJob]:
        with self._database.db() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE user_id=? ORDER BY started_at DESC", (user_id,)
            ).fetchall()
        return [_job_from_row(r) for r in rows]

    def set_processing(self, job_id: str) -> bool:
        with self._database.db() as conn:
            cur = conn.execute(
                "UPDATE jobs SET status='PROCESSING' WHERE id=? AND status='PENDING'", (job_id,)
            )
        return cur.rowcount == 1

    def attach_metadata(self, job_id: str, metadata: TrackMetadata) -> bool:
        with self._database.db() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET title=?, artist=?, thumbnail_url=?, duration=?, song_key=?
                WHERE id=? AND status='PROCESSING'
                """,
                (
                    metadata.title,
                    metadata.artist,
                    metadata.thumbnail_url,
                    metadata.duration,
                    metadata.key,
                    job_id,
                ),
            )
        return cur.rowcount == 1

    def complete(self, job_id: str) -> bool:
        with self._database.db() as conn:
            cur = conn.execute(
                "UPDATE jobs SET status='DONE', error_msg=NULL, finished_at=? WHERE id=? AND status='PROCESSING'",
                (_now(), job_id),
            )
        return cur.rowcount == 1

    def fail(self, job_id: str, message: str) -> bool:
        with self._database.db() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET status='ERROR', error_msg=?, finished_at=?
                WHERE id=? AND status IN ('PENDING', 'PROCESSING')
                """,
                (message, _now(), job_id),
            )
        return cur.rowcount == 1

    def fail_orphaned(self, message: str) -> int:
        """Terminate jobs a previous process left unfinished."""
        with self._database.db() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET status='ERROR', error_msg=?, finished_at=?
                WHERE status IN ('PENDING', 'PROCESSING')
                """,
                (message, _now()),
            )
        return cur.rowcount

    def delete(self, job_id: str) -> bool:
        with self._database.db() as conn:
            cur = conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
        return cur.rowcount > 0


class SongStore:
    def __init__(self, database: Database):
        self._database = database

    def create(
        self,
        song_id: str,
        metadata: TrackMetadata,
        file_path: str,
        user_id: str,
        job_id: str | None,
        bpm: int | None = None,
    ) -> Song:
        with self._database.db() as conn:
            conn.execute(
                """
                INSERT INTO songs (id, title, artist, genre, duration, bpm, song_key, file_path,
                                   thumbnail_url, user_id, job_id, favorite, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    song_id,
                    metadata.title,
                    metadata.artist,
                    metadata.genre,
                    metadata.duration,
                    bpm,
                    metadata.key,
                    file_path,
                    metadata.thumbnail_url,
                    user_id,
                    job_id,
                    _now(),
                ),
            )
        return self.get(song_id)

    def get(self, song_id: str) -> Song | None:
        with self._database.db() as conn:
            row = conn.execute("SELECT * FROM songs WHERE id=?", (song_id,)).fetchone()
        return _song_from_row(row) if row else None

    def get_by_job(self, job_id: str) -> Song | None:
        with self._database.db() as conn:
            row = conn.execute("SELECT * FROM songs WHERE job_id=?", (job_id,)).fetchone()
        return _song_from_row(row) if row else None

    def list_for_user(self, user_id: str, favorites_only: bool = False) -> list[Song]:
        query = "SELECT * FROM songs WHERE user_id=?"
        if favorites_only:
            query += " AND favorite=1"
        with self._database.db() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC", (user_id,)).fetchall()
        return [_song_from_row(r) for r in rows]

    def toggle_favorite(self, song_id: str) -> Song | None:
        with self._database.db() as conn:
            cur = conn.execute(
                "UPDATE songs SET favorite = CASE favorite WHEN 1 THEN 0 ELSE 1 END WHERE id=?",
                (song_id,),
            )
        if cur.rowcount == 0:
            return None
        return self.get(song_id)

    def delete(self, song_id: str) -> bool:
        """Remove a song, its stems and every backing file."""
        with self._database.db() as conn:
            row = conn.execute("SELECT file_path FROM songs WHERE id=?", (song_id,)).fetchone()
            if not row:
                return False
            stem_paths = [
                r["file_path"]
                for r in conn.execute("SELECT file_path FROM stems WHERE song_id=?", (song_id,)).fetchall()
            ]
            conn.execute("DELETE FROM stems WHERE song_id=?", (song_id,))
            conn.execute("DELETE FROM songs WHERE id=?", (song_id,))

        for path in stem_paths:
            _unlink(path)
        _unlink(row["file_path"])
        logger.info(f"Deleted song: {song_id}")
        return True


class StemStore:
    def __init__(self, database: Database):
        self._database = database

    def list_for_song(self, song_id: str) -> list[Stem]:
        with self._database.db() as conn:
            rows = conn.execute("SELECT * FROM stems WHERE song_id=? ORDER BY kind", (song_id,)).fetchall()
        return [_stem_from_row(r) for r in rows]

    def get(self, stem_id: str) -> Stem | None:
        with self._database.db() as conn:
            row = conn.execute("SELECT * FROM stems WHERE id=?", (stem_id,)).fetchone()
        return _stem_from_row(row) if row else None

    def delete_for_song(self, song_id: str) -> int:
        with self._database.db() as conn:
            rows = conn.execute("SELECT file_path FROM stems WHERE song_id=?", (song_id,)).fetchall()
            conn.execute("DELETE FROM stems WHERE song_id=?", (song_id,))
        for row in rows:
            _unlink(row["file_path"])
        return len(rows)

    def replace_for_song(self, song_id: str, items: list[StemFile]) -> list[Stem]:
        """Swap a song's stems for `items` in one transaction.

        Files of superseded stems are removed unless a new stem reuses the same path.
        """
        keep = {item.file_path for item in items}
        now = _now()
        with self._database.db() as conn:
            old = conn.execute("SELECT file_path FROM stems WHERE song_id=?", (song_id,)).fetchall()
            conn.execute("DELETE FROM stems WHERE song_id=?", (song_id,))
            for item in items:
                conn.execute(
                    """
                    INSERT INTO stems (id, song_id, kind, file_path, volume, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (str(uuid.uuid4()), song_id, item.kind.value, item.file_path, clamp_volume(item.volume), now),
                )
        for row in old:
            if row["file_path"] not in keep:
                _unlink(row["file_path"])
        return self.list_for_song(song_id)

    def update_volume(self, stem_id: str, volume) -> Stem | None:
        with self._database.db() as conn:
            cur = conn.execute("UPDATE stems SET volume=? WHERE id=?", (clamp_volume(volume), stem_id))
        if cur.rowcount == 0:
            return None
        return self.get(stem_id)


class EmailTakenError(ValueError):
    pass


def hash_password(password: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        _, iterations, salt, expected = encoded.split("$")
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return hmac.compare_digest(digest.hex(), expected)


class UserStore:
    def __init__(self, database: Database):
        self._database = database

    def create(self, name: str, email: str, password: str, role: str = "USER") -> tuple[User, str]:
        user_id = str(uuid.uuid4())
        token = secrets.token_urlsafe(32)
        try:
            with self._database.db() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, name, email, password_hash, role, active, token, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (user_id, name, email.lower(), hash_password(password), role, token, _now()),
                )
        except sqlite3.IntegrityError as e:
            raise EmailTakenError(f"Email already registered: {email}") from e
        return self.get(user_id), token

    def get(self, user_id: str) -> User | None:
        with self._database.db() as conn:
            row = conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def authenticate(self, email: str, password: str) -> tuple[User, str] | None:
        with self._database.db() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email=? AND active=1", (email.lower(),)
            ).fetchone()
        if not row or not verify_password(password, row["password_hash"]):
            return None
        return _user_from_row(row), row["token"]

    def get_by_token(self, token: str) -> User | None:
        if not token:
            return None
        with self._database.db() as conn:
            row = conn.execute("SELECT * FROM users WHERE token=? AND active=1", (token,)).fetchone()
        return _user_from_row(row) if row else None


def library_stats(database: Database, user_id: str) -> dict:
    with database.db() as conn:
        songs = conn.execute("SELECT duration, favorite FROM songs WHERE user_id=?", (user_id,)).fetchall()
        conversions = conn.execute("SELECT COUNT(*) FROM jobs WHERE user_id=?", (user_id,)).fetchone()[0]
    return {
        "total_songs": len(songs),
        "favorites": sum(1 for s in songs if s["favorite"]),
        "conversions": conversions,
        "total_duration": sum(parse_duration_seconds(s["duration"]) for s in songs),
    }
