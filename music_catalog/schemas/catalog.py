"""Pydantic schemas for the music catalog resources."""

from __future__ import annotations

from datetime import date
from typing import List

from pydantic import BaseModel, Field, field_validator


class ArtistProfile(BaseModel):
    """Optional career profile embedded in an artist."""

    career_description: str | None = Field(
        default=None,
        max_length=2000,
        description="Free-text career summary.",
    )
    main_style: str | None = Field(
        default=None,
        max_length=200,
        description="Main musical style.",
    )
    awards: List[str] = Field(
        default_factory=list,
        description="Awards received by the artist.",
    )


class ArtistIn(BaseModel):
    """Payload accepted when creating or replacing an artist."""

    stage_name: str = Field(..., min_length=2, max_length=100)
    full_name: str | None = Field(default=None, max_length=200)
    debut_date: date | None = Field(
        default=None, description="Date of the first release; must be in the past."
    )
    country: str = Field(..., min_length=1, max_length=80)
    profile: ArtistProfile | None = None

    @field_validator("stage_name", "country")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("debut_date")
    @classmethod
    def _in_the_past(cls, value: date | None) -> date | None:
        if value is not None and value >= date.today():
            raise ValueError("debut date must be in the past")
        return value


class ArtistOut(ArtistIn):
    id: int


class GenreIn(BaseModel):
    """Payload accepted when creating or replacing a genre."""

    name: str = Field(..., min_length=2, max_length=50)
    description: str | None = Field(default=None, max_length=200)

    @field_validator("name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class GenreOut(GenreIn):
    id: int


class SongIn(BaseModel):
    """Payload accepted when creating or replacing a song.

    ``artist_id`` and ``genre_ids`` must reference existing resources.
    """

    title: str = Field(..., min_length=1, max_length=200)
    lyrics: str = Field(..., min_length=1, max_length=2000)
    release_year: int = Field(..., ge=1900)
    rating: float = Field(default=0.0, ge=0.0, le=10.0)
    duration_seconds: int = Field(default=0, ge=0)
    artist_id: int | None = None
    genre_ids: List[int] = Field(default_factory=list)

    @field_validator("title", "lyrics")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class SongOut(SongIn):
    id: int


class SongSearchResponse(BaseModel):
    """One page of a song search."""

    songs: List[SongOut]
    total: int = Field(..., description="Number of songs matching the query.")
    total_pages: int
    has_more: bool
    next_page: str | None = Field(
        default=None, description="URL of the next page, when there is one."
    )
