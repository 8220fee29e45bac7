"""Catalog endpoints: artists, genres and songs.

Reads are wrapped with ``fault_tolerant``: lists are throttled to 10 calls
per 10 seconds and fall back to an empty list, lookups fall back to a 503.
Creations publish the new id with ``mark_created`` so a replayed 201 can
rebuild its ``Location`` header.
"""

from typing import List

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from music_catalog.core.fault_tolerance import (
    CircuitBreakerPolicy,
    FaultTolerancePolicy,
    ThrottlePolicy,
    fault_tolerant,
)
from music_catalog.core.idempotency import location_for, mark_created
from music_catalog.core.pipeline import IdempotencyMode, RoutePolicy, RoutePolicyTable
from music_catalog.schemas.catalog import (
    ArtistIn,
    ArtistOut,
    GenreIn,
    GenreOut,
    SongIn,
    SongOut,
    SongSearchResponse,
)
from music_catalog.services.catalog_repository import CatalogRepository

API_V1_PREFIX = "/api/v1"

ROUTE_POLICIES = RoutePolicyTable(
    [
        RoutePolicy("POST", f"{API_V1_PREFIX}/artists", idempotency=IdempotencyMode.REQUIRED),
        RoutePolicy("POST", f"{API_V1_PREFIX}/genres", idempotency=IdempotencyMode.REQUIRED),
        RoutePolicy("POST", f"{API_V1_PREFIX}/songs", idempotency=IdempotencyMode.OPTIONAL),
    ]
)

router = APIRouter(tags=["Catalog"])


def _empty_list(*args, **kwargs) -> list:
    return []


def _unavailable(*args, **kwargs) -> Response:
    resource_id = next((v for k, v in kwargs.items() if k.endswith("_id")), None)
    target = f" for ID {resource_id}" if resource_id is not None else ""
    return PlainTextResponse(
        f"Lookup service unavailable{target}. Please try again later.",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


def _list_policy(name: str) -> FaultTolerancePolicy:
    return FaultTolerancePolicy(
        name=name,
        timeout_seconds=0.8,
        circuit_breaker=CircuitBreakerPolicy(
            request_volume_threshold=5, failure_ratio=0.6, delay_seconds=5.0
        ),
        throttle=ThrottlePolicy(limit=10, window_seconds=10),
        fallback=_empty_list,
    )


def _get_policy(name: str) -> FaultTolerancePolicy:
    return FaultTolerancePolicy(name=name, timeout_seconds=0.5, fallback=_unavailable)


def _repository(request: Request) -> CatalogRepository:
    return request.app.state.catalog


def _created(request: Request, response: Response, resource_id: int) -> None:
    mark_created(request, resource_id)
    response.headers["Location"] = location_for(request, resource_id)


# Artists


@router.get("/artists", response_model=List[ArtistOut])
@fault_tolerant(_list_policy("artists.list"))
async def list_artists(request: Request):
    return _repository(request).list_artists()


@router.get("/artists/{artist_id}", response_model=ArtistOut)
@fault_tolerant(_get_policy("artists.get"))
async def get_artist(request: Request, artist_id: int):
    return _repository(request).get_artist(artist_id)


@router.post("/artists", response_model=ArtistOut, status_code=status.HTTP_201_CREATED)
async def create_artist(payload: ArtistIn, request: Request, response: Response) -> ArtistOut:
    """Create an artist. Requires an ``Idempotency-Key`` header."""

    artist = _repository(request).create_artist(payload)
    _created(request, response, artist.id)
    return artist


@router.put("/artists/{artist_id}", response_model=ArtistOut)
async def replace_artist(artist_id: int, payload: ArtistIn, request: Request) -> ArtistOut:
    return _repository(request).replace_artist(artist_id, payload)


@router.delete("/artists/{artist_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_artist(artist_id: int, request: Request) -> Response:
    """Delete an artist. Fails with 409 while songs still reference it."""

    _repository(request).delete_artist(artist_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Genres


@router.get("/genres", response_model=List[GenreOut])
@fault_tolerant(_list_policy("genres.list"))
async def list_genres(request: Request):
    return _repository(request).list_genres()


@router.get("/genres/{genre_id}", response_model=GenreOut)
@fault_tolerant(_get_policy("genres.get"))
async def get_genre(request: Request, genre_id: int):
    return _repository(request).get_genre(genre_id)


@router.post("/genres", response_model=GenreOut, status_code=status.HTTP_201_CREATED)
async def create_genre(payload: GenreIn, request: Request, response: Response) -> GenreOut:
    """Create a genre. Requires an ``Idempotency-Key`` header."""

    genre = _repository(request).create_genre(payload)
    _created(request, response, genre.id)
    return genre


@router.put("/genres/{genre_id}", response_model=GenreOut)
async def replace_genre(genre_id: int, payload: GenreIn, request: Request) -> GenreOut:
    return _repository(request).replace_genre(genre_id, payload)


@router.delete("/genres/{genre_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_genre(genre_id: int, request: Request) -> Response:
    _repository(request).delete_genre(genre_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Songs


@router.get("/songs", response_model=List[SongOut])
@fault_tolerant(_list_policy("songs.list"))
async def list_songs(request: Request):
    return _repository(request).list_songs()


@router.get("/songs/search", response_model=SongSearchResponse)
async def search_songs(
    request: Request,
    q: str | None = Query(None, description="Title fragment, release year or duration"),
    sort: str = Query("id", description="Sort field"),
    direction: str = Query("asc", description="'asc' or 'desc'"),
    page: int = Query(0, description="Zero-based page number"),
    size: int = Query(4, ge=1, le=100, description="Songs per page"),
) -> SongSearchResponse:
    """Search songs with sorting and pagination."""

    page = max(page, 0)
    songs, total, total_pages = _repository(request).search_songs(
        q,
        sort=sort,
        descending=direction.lower() == "desc",
        page=page,
        size=size,
    )
    has_more = page < total_pages - 1
    next_page = str(request.url.include_query_params(page=page + 1)) if has_more else None
    return SongSearchResponse(
        songs=songs,
        total=total,
        total_pages=total_pages,
        has_more=has_more,
        next_page=next_page,
    )


@router.get("/songs/{song_id}", response_model=SongOut)
@fault_tolerant(_get_policy("songs.get"))
async def get_song(request: Request, song_id: int):
    return _repository(request).get_song(song_id)


@router.post("/songs", response_model=SongOut, status_code=status.HTTP_201_CREATED)
async def create_song(payload: SongIn, request: Request, response: Response) -> SongOut:
    """Create a song.

    Referenced artist and genres must exist (400 otherwise). Sending an
    ``Idempotency-Key`` makes retries safe; without it every call creates a
    new song.
    """

    song = _repository(request).create_song(payload)
    _created(request, response, song.id)
    return song


@router.put("/songs/{song_id}", response_model=SongOut)
async def replace_song(song_id: int, payload: SongIn, request: Request) -> SongOut:
    return _repository(request).replace_song(song_id, payload)


@router.delete("/songs/{song_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_song(song_id: int, request: Request) -> Response:
    _repository(request).delete_song(song_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
