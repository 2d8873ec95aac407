import math
import os

import pytest

from database import Database
from fakes import write_file
from models import JobStatus, StemFile, StemKind, TrackMetadata
from store import EmailTakenError, clamp_volume, library_stats, parse_duration_seconds

METADATA = TrackMetadata(
    title="Blue in Green",
    artist="Miles Davis",
    thumbnail_url="https://i.example/blue.jpg",
    duration="5:37",
    genre="Jazz",
    key=None,
)


def _song(songs, user_id, tmp_path, name="song", job_id=None, duration="5:37"):
    path = str(tmp_path / "uploads" / f"{name}.mp3")
    write_file(path)
    metadata = TrackMetadata(METADATA.title, METADATA.artist, METADATA.thumbnail_url, duration, "Jazz", "AM")
    return songs.create(name, metadata, path, user_id, job_id)


def _stem_files(tmp_path, song_id, suffix=""):
    items = []
    for kind in StemKind:
        path = str(tmp_path / "stems" / f"{song_id}_{kind.value.lower()}{suffix}.mp3")
        write_file(path)
        items.append(StemFile(kind=kind, file_path=path))
    return items


# --- database ---

def test_init_db_is_idempotent(database):
    database.init_db()
    with database.db() as conn:
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(songs)")}
    assert {"bpm", "song_key"} <= columns


def test_fresh_database_stores_bpm_and_key(tmp_path):
    database = Database(str(tmp_path / "fresh.db"))
    database.init_db()
    with database.db() as conn:
        conn.execute(
            "INSERT INTO users (id, name, email, password_hash, created_at) VALUES (?, ?, ?, ?, ?)",
            ("u1", "Ana", "ana@example.com", "x", "2024-01-01T00:00:00"),
        )
        conn.execute(
            "INSERT INTO songs (id, title, artist, genre, duration, bpm, song_key, file_path, user_id, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            ("s1", "So What", "Miles Davis", "Jazz", "9:22", 136, "DM", "/x.mp3", "u1", "2024-01-01T00:00:00"),
        )
        row = conn.execute("SELECT bpm, song_key FROM songs WHERE id = ?", ("s1",)).fetchone()
    assert (row["bpm"], row["song_key"]) == (136, "DM")


def test_init_db_creates_parent_directory(tmp_path):
    database = Database(str(tmp_path / "nested" / "dir" / "app.db"))
    database.init_db()
    assert os.path.exists(tmp_path / "nested" / "dir" / "app.db")


# --- jobs ---

def test_job_lifecycle(jobs, user_id):
    job = jobs.create("https://youtu.be/x", user_id)
    assert job.status is JobStatus.PENDING
    assert job.finished_at is None
    assert job.started_at

    assert jobs.set_processing(job.id)
    assert jobs.get(job.id).finished_at is None
    assert jobs.attach_metadata(job.id, METADATA)
    assert jobs.complete(job.id)

    done = jobs.get(job.id)
    assert done.status is JobStatus.DONE
    assert done.finished_at is not None
    assert done.error_msg is None
    assert (done.title, done.artist, done.duration) == ("Blue in Green", "Miles Davis", "5:37")


def test_terminal_jobs_do_not_move(jobs, user_id):
    job = jobs.create("https://youtu.be/x", user_id)
    jobs.set_processing(job.id)
    jobs.complete(job.id)
    finished_at = jobs.get(job.id).finished_at

    assert not jobs.fail(job.id, "late failure")
    assert not jobs.set_processing(job.id)
    assert not jobs.complete(job.id)
    assert not jobs.attach_metadata(job.id, METADATA)

    job = jobs.get(job.id)
    assert job.status is JobStatus.DONE
    assert job.finished_at == finished_at
    assert job.error_msg is None


def test_fail_from_pending(jobs, user_id):
    job = jobs.create("https://youtu.be/x", user_id)
    assert jobs.fail(job.id, "URL rejected")
    job = jobs.get(job.id)
    assert job.status is JobStatus.ERROR
    assert job.error_msg == "URL rejected"
    assert job.finished_at is not None
    assert not jobs.set_processing(job.id)


def test_complete_requires_processing(jobs, user_id):
    job = jobs.create("https://youtu.be/x", user_id)
    assert not jobs.complete(job.id)
    assert jobs.get(job.id).status is JobStatus.PENDING


def test_fail_orphaned(jobs, user_id):
    pending = jobs.create("https://youtu.be/a", user_id)
    processing = jobs.create("https://youtu.be/b", user_id)
    done = jobs.create("https://youtu.be/c", user_id)
    jobs.set_processing(processing.id)
    jobs.set_processing(done.id)
    jobs.complete(done.id)

    assert jobs.fail_orphaned("Interrupted by server restart") == 2
    assert jobs.get(pending.id).status is JobStatus.ERROR
    assert jobs.get(processing.id).error_msg == "Interrupted by server restart"
    assert jobs.get(done.id).status is JobStatus.DONE


def test_list_and_delete_jobs(jobs, users, user_id):
    other, _ = users.create("Bo", "bo@example.com", "pw")
    mine = jobs.create("https://youtu.be/a", user_id)
    jobs.create("https://youtu.be/b", other.id)

    assert [j.id for j in jobs.list_for_user(user_id)] == [mine.id]
    assert jobs.delete(mine.id)
    assert jobs.get(mine.id) is None
    assert not jobs.delete(mine.id)


# --- songs ---

def test_song_roundtrip(songs, jobs, user_id, tmp_path):
    job = jobs.create("https://youtu.be/x", user_id)
    song = _song(songs, user_id, tmp_path, job_id=job.id)

    assert song.favorite is False
    assert song.song_key == "AM"
    assert songs.get_by_job(job.id).id == song.id


def test_toggle_favorite_and_filter(songs, user_id, tmp_path):
    first = _song(songs, user_id, tmp_path, "first")
    _song(songs, user_id, tmp_path, "second")

    assert songs.toggle_favorite(first.id).favorite is True
    assert [s.id for s in songs.list_for_user(user_id, favorites_only=True)] == [first.id]
    assert len(songs.list_for_user(user_id)) == 2
    assert songs.toggle_favorite(first.id).favorite is False
    assert songs.toggle_favorite("missing") is None


def test_delete_song_removes_stems_and_files(songs, stems, user_id, tmp_path):
    song = _song(songs, user_id, tmp_path)
    created = stems.replace_for_song(song.id, _stem_files(tmp_path, song.id))

    assert songs.delete(song.id)
    assert songs.get(song.id) is None
    assert stems.list_for_song(song.id) == []
    assert not os.path.exists(song.file_path)
    assert not any(os.path.exists(s.file_path) for s in created)
    assert not songs.delete(song.id)


# --- stems ---

@pytest.mark.parametrize(
    "value, expected",
    [(-10, 0), (150, 100), (57, 57), (57.6, 58), ("80", 80), ("loud", 0), (None, 0), (math.nan, 0), (math.inf, 0)],
)
def test_clamp_volume(value, expected):
    assert clamp_volume(value) == expected


def test_replace_for_song_keeps_exactly_four(songs, stems, user_id, tmp_path):
    song = _song(songs, user_id, tmp_path)
    first = stems.replace_for_song(song.id, _stem_files(tmp_path, song.id, "-a"))
    second = stems.replace_for_song(song.id, _stem_files(tmp_path, song.id, "-b"))

    assert len(second) == 4
    assert {s.kind for s in second} == set(StemKind)
    assert all(s.volume == 100 for s in second)
    assert not any(os.path.exists(s.file_path) for s in first)
    assert all(os.path.exists(s.file_path) for s in second)


def test_replace_for_song_keeps_reused_paths(songs, stems, user_id, tmp_path):
    song = _song(songs, user_id, tmp_path)
    items = _stem_files(tmp_path, song.id)
    stems.replace_for_song(song.id, items)
    again = stems.replace_for_song(song.id, items)

    assert len(again) == 4
    assert all(os.path.exists(s.file_path) for s in again)


def test_update_volume_clamps(songs, stems, user_id, tmp_path):
    song = _song(songs, user_id, tmp_path)
    stem = stems.replace_for_song(song.id, _stem_files(tmp_path, song.id))[0]

    assert stems.update_volume(stem.id, -10).volume == 0
    assert stems.update_volume(stem.id, 150).volume == 100
    assert stems.update_volume(stem.id, 57).volume == 57
    assert stems.get(stem.id).volume == 57
    assert stems.update_volume("missing", 50) is None


def test_delete_for_song(songs, stems, user_id, tmp_path):
    song = _song(songs, user_id, tmp_path)
    created = stems.replace_for_song(song.id, _stem_files(tmp_path, song.id))

    assert stems.delete_for_song(song.id) == 4
    assert stems.list_for_song(song.id) == []
    assert not any(os.path.exists(s.file_path) for s in created)
    assert os.path.exists(song.file_path)


# --- users ---

def test_register_and_authenticate(users):
    user, token = users.create("Cy", "Cy@Example.com", "s3cret")
    assert user.email == "cy@example.com"
    assert user.role == "USER"

    result = users.authenticate("CY@example.com", "s3cret")
    assert result is not None
    assert result[0].id == user.id
    assert result[1] == token

    assert users.authenticate("cy@example.com", "wrong") is None
    assert users.authenticate("nobody@example.com", "s3cret") is None
    assert users.get_by_token(token).id == user.id
    assert users.get_by_token("") is None


def test_duplicate_email(users):
    users.create("Cy", "cy@example.com", "pw")
    with pytest.raises(EmailTakenError):
        users.create("Cy again", "CY@example.com", "pw")


# --- stats ---

def test_library_stats(database, songs, jobs, user_id, tmp_path):
    first = _song(songs, user_id, tmp_path, "first", duration="3:30")
    _song(songs, user_id, tmp_path, "second", duration="1:00:00")
    songs.toggle_favorite(first.id)
    jobs.create("https://youtu.be/a", user_id)

    assert library_stats(database, user_id) == {
        "total_songs": 2,
        "favorites": 1,
        "conversions": 1,
        "total_duration": 210 + 3600,
    }


@pytest.mark.parametrize("duration, seconds", [("3:30", 210), ("1:02:05", 3725), ("", 0), (None, 0), ("x:y", 0)])
def test_parse_duration_seconds(duration, seconds):
    assert parse_duration_seconds(duration) == seconds
