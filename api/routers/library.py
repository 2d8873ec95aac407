import logging
import os

from deps import get_services, require_user
from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.responses import FileResponse
from models import Song, Stem, User
from services import Services
from store import library_stats

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


def _song_to_dict(song: Song) -> dict:
    return {
        "id": song.id,
        "title": song.title,
        "artist": song.artist,
        "genre": song.genre,
        "duration": song.duration,
        "bpm": song.bpm,
        "key": song.song_key,
        "audio_url": f"/uploads/{os.path.basename(song.file_path)}",
        "thumbnail": song.thumbnail_url,
        "favorite": song.favorite,
        "job_id": song.job_id,
        "created_at": song.created_at,
    }


def _stem_to_dict(stem: Stem) -> dict:
    return {
        "id": stem.id,
        "song_id": stem.song_id,
        "kind": stem.kind.value,
        "audio_url": f"/stems/{os.path.basename(stem.file_path)}",
        "volume": stem.volume,
        "created_at": stem.created_at,
    }


def _owned_song(song_id: str, user: User, services: Services) -> Song:
    song = services.songs.get(song_id)
    if not song or song.user_id != user.id:
        raise HTTPException(404, "Song not found")
    return song


@router.get("/songs")
def list_songs(
    favorites: bool = False,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
):
    return [_song_to_dict(s) for s in services.songs.list_for_user(user.id, favorites_only=favorites)]


@router.get("/songs/{song_id}")
def get_song(song_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    song = _owned_song(song_id, user, services)
    data = _song_to_dict(song)
    data["stems"] = [_stem_to_dict(s) for s in services.stems.list_for_song(song.id)]
    return data


@router.post("/songs/{song_id}/favorite")
def toggle_favorite(song_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    _owned_song(song_id, user, services)
    song = services.songs.toggle_favorite(song_id)
    if not song:
        raise HTTPException(404, "Song not found")
    return _song_to_dict(song)


@router.delete("/songs/{song_id}")
def delete_song(song_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    _owned_song(song_id, user, services)
    services.songs.delete(song_id)
    return {"ok": True}


@router.get("/songs/{song_id}/stems")
def list_stems(song_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    song = _owned_song(song_id, user, services)
    return [_stem_to_dict(s) for s in services.stems.list_for_song(song.id)]


@router.patch("/stems/{stem_id}/volume")
def update_stem_volume(
    stem_id: str,
    volume=Body(..., embed=True),
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
):
    stem = services.stems.get(stem_id)
    if not stem:
        raise HTTPException(404, "Stem not found")
    song = services.songs.get(stem.song_id)
    if not song or song.user_id != user.id:
        raise HTTPException(403, "Access denied")

    updated = services.stems.update_volume(stem_id, volume)
    if not updated:
        raise HTTPException(404, "Stem not found")
    return _stem_to_dict(updated)


@router.get("/stats")
def get_stats(user: User = Depends(require_user), services: Services = Depends(get_services)):
    return library_stats(services.database, user.id)


@router.get("/download/{song_id}")
def download_song(song_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    song = _owned_song(song_id, user, services)
    if not os.path.exists(song.file_path):
        raise HTTPException(404, "File not found")
    ext = os.path.splitext(song.file_path)[1] or ".mp3"
    return FileResponse(path=song.file_path, filename=f"{song.title}{ext}", media_type="audio/mpeg")
