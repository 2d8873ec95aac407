from dataclasses import dataclass
from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    ERROR = "ERROR"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


class StemKind(str, Enum):
    VOCAL = "VOCAL"
    DRUMS = "DRUMS"
    BASS = "BASS"
    OTHER = "OTHER"

    @property
    def source_name(self) -> str:
        """File stem both separation engines use for this component."""
        return {
            StemKind.VOCAL: "vocals",
            StemKind.DRUMS: "drums",
            StemKind.BASS: "bass",
            StemKind.OTHER: "other",
        }[self]


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str  # 'USER' | 'ADMIN'
    active: bool
    created_at: str


@dataclass
class TrackMetadata:
    title: str
    artist: str
    thumbnail_url: str
    duration: str  # 'M:SS' or 'H:MM:SS'
    genre: str
    key: Optional[str]


@dataclass
class ConversionJob:
    id: str
    url: str
    user_id: str
    status: JobStatus
    error_msg: Optional[str]
    started_at: str
    finished_at: Optional[str]
    title: Optional[str]
    artist: Optional[str]
    thumbnail_url: Optional[str]
    duration: Optional[str]
    song_key: Optional[str]


@dataclass
class Song:
    id: str
    title: str
    artist: str
    genre: str
    duration: str
    bpm: Optional[int]
    song_key: Optional[str]
    file_path: str
    thumbnail_url: Optional[str]
    user_id: str
    job_id: Optional[str]
    favorite: bool
    created_at: str


@dataclass
class Stem:
    id: str
    song_id: str
    kind: StemKind
    file_path: str
    volume: int
    created_at: str


@dataclass
class StemFile:
    kind: StemKind
    file_path: str
    volume: int = 100
