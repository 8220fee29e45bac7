"""In-memory catalog of artists, genres and songs.

Each entity type has its own id sequence starting at 1. A single lock guards
all three maps so cross-entity checks (song references, delete conflicts)
see a consistent state.
"""

from __future__ import annotations

import itertools
import math
import threading
from typing import Iterator

from music_catalog.core.errors import ConflictAppError, NotFoundAppError, ValidationAppError
from music_catalog.schemas.catalog import (
    ArtistIn,
    ArtistOut,
    GenreIn,
    GenreOut,
    SongIn,
    SongOut,
)

SONG_SORT_FIELDS = frozenset(
    {"id", "title", "lyrics", "release_year", "rating", "duration_seconds"}
)


def _not_found(resource: str, resource_id: int) -> NotFoundAppError:
    return NotFoundAppError(
        code=f"{resource}_not_found",
        message=f"{resource.capitalize()} {resource_id} does not exist.",
        details={"resource": resource, "resource_id": resource_id},
    )


class CatalogRepository:
    """Thread-safe, process-local store of catalog resources."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._artists: dict[int, ArtistOut] = {}
        self._genres: dict[int, GenreOut] = {}
        self._songs: dict[int, SongOut] = {}
        self._artist_ids: Iterator[int] = itertools.count(1)
        self._genre_ids: Iterator[int] = itertools.count(1)
        self._song_ids: Iterator[int] = itertools.count(1)

    # Artists

    def list_artists(self) -> list[ArtistOut]:
        with self._lock:
            return list(self._artists.values())

    def get_artist(self, artist_id: int) -> ArtistOut:
        with self._lock:
            artist = self._artists.get(artist_id)
        if artist is None:
            raise _not_found("artist", artist_id)
        return artist

    def create_artist(self, payload: ArtistIn) -> ArtistOut:
        with self._lock:
            artist = ArtistOut(id=next(self._artist_ids), **payload.model_dump())
            self._artists[artist.id] = artist
            return artist

    def replace_artist(self, artist_id: int, payload: ArtistIn) -> ArtistOut:
        with self._lock:
            if artist_id not in self._artists:
                raise _not_found("artist", artist_id)
            artist = ArtistOut(id=artist_id, **payload.model_dump())
            self._artists[artist_id] = artist
            return artist

    def delete_artist(self, artist_id: int) -> None:
        with self._lock:
            if artist_id not in self._artists:
                raise _not_found("artist", artist_id)
            linked = sum(1 for song in self._songs.values() if song.artist_id == artist_id)
            if linked:
                raise ConflictAppError(
                    code="artist_has_songs",
                    message=f"Artist {artist_id} still has songs and cannot be deleted.",
                    details={"resource": "artist", "resource_id": artist_id, "linked_songs": linked},
                )
            del self._artists[artist_id]

    # Genres

    def list_genres(self) -> list[GenreOut]:
        with self._lock:
            return list(self._genres.values())

    def get_genre(self, genre_id: int) -> GenreOut:
        with self._lock:
            genre = self._genres.get(genre_id)
        if genre is None:
            raise _not_found("genre", genre_id)
        return genre

    def create_genre(self, payload: GenreIn) -> GenreOut:
        with self._lock:
            genre = GenreOut(id=next(self._genre_ids), **payload.model_dump())
            self._genres[genre.id] = genre
            return genre

    def replace_genre(self, genre_id: int, payload: GenreIn) -> GenreOut:
        with self._lock:
            if genre_id not in self._genres:
                raise _not_found("genre", genre_id)
            genre = GenreOut(id=genre_id, **payload.model_dump())
            self._genres[genre_id] = genre
            return genre

    def delete_genre(self, genre_id: int) -> None:
        with self._lock:
            if genre_id not in self._genres:
                raise _not_found("genre", genre_id)
            linked = sum(1 for song in self._songs.values() if genre_id in song.genre_ids)
            if linked:
                raise ConflictAppError(
                    code="genre_has_songs",
                    message=f"Genre {genre_id} is still used by songs and cannot be deleted.",
                    details={"resource": "genre", "resource_id": genre_id, "linked_songs": linked},
                )
            del self._genres[genre_id]

    # Songs

    def list_songs(self) -> list[SongOut]:
        with self._lock:
            return list(self._songs.values())

    def get_song(self, song_id: int) -> SongOut:
        with self._lock:
            song = self._songs.get(song_id)
        if song is None:
            raise _not_found("song", song_id)
        return song

    def create_song(self, payload: SongIn) -> SongOut:
        with self._lock:
            data = self._resolve_song_refs_locked(payload)
            song = SongOut(id=next(self._song_ids), **data)
            self._songs[song.id] = song
            return song

    def replace_song(self, song_id: int, payload: SongIn) -> SongOut:
        with self._lock:
            if song_id not in self._songs:
                raise _not_found("song", song_id)
            song = SongOut(id=song_id, **self._resolve_song_refs_locked(payload))
            self._songs[song_id] = song
            return song

    def delete_song(self, song_id: int) -> None:
        with self._lock:
            if self._songs.pop(song_id, None) is None:
                raise _not_found("song", song_id)

    def search_songs(
        self,
        query: str | None = None,
        *,
        sort: str = "id",
        descending: bool = False,
        page: int = 0,
        size: int = 4,
    ) -> tuple[list[SongOut], int, int]:
        """Filter, sort and paginate songs.

        A numeric query matches ``release_year`` or ``duration_seconds``; any
        other query is a case-insensitive title substring. Unknown sort fields
        fall back to ``id``.

        Returns:
            Tuple of (page items, total matches, total pages).
        """

        if sort not in SONG_SORT_FIELDS:
            sort = "id"
        page = max(page, 0)
        size = max(size, 1)

        with self._lock:
            songs = list(self._songs.values())

        query = (query or "").strip()
        if query:
            try:
                number = int(query)
            except ValueError:
                needle = query.lower()
                songs = [s for s in songs if needle in s.title.lower()]
            else:
                songs = [s for s in songs if number in (s.release_year, s.duration_seconds)]

        songs.sort(key=lambda s: getattr(s, sort), reverse=descending)
        total = len(songs)
        total_pages = math.ceil(total / size)
        return songs[page * size : (page + 1) * size], total, total_pages

    def _resolve_song_refs_locked(self, payload: SongIn) -> dict:
        data = payload.model_dump()
        if payload.artist_id is not None and payload.artist_id not in self._artists:
            raise ValidationAppError(
                code="unknown_artist",
                message=f"Artist {payload.artist_id} does not exist.",
                details={"resource": "artist", "resource_id": payload.artist_id},
            )
        genre_ids = []
        for genre_id in payload.genre_ids:
            if genre_id not in self._genres:
                raise ValidationAppError(
                    code="unknown_genre",
                    message=f"Genre {genre_id} does not exist.",
                    details={"resource": "genre", "resource_id": genre_id},
                )
            if genre_id not in genre_ids:
                genre_ids.append(genre_id)
        data["genre_ids"] = genre_ids
        return data
