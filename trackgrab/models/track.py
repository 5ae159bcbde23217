"""
Immutable value types passed between pipeline stages.
"""

from dataclasses import dataclass

from trackgrab.exceptions import InvalidSourceReference


@dataclass(frozen=True)
class SourceReference:
    """An opaque link to the source video, validated only for non-emptiness."""

    value: str

    def __post_init__(self):
        if not isinstance(self.value, str) or not self.value.strip():
            raise InvalidSourceReference("A source link is required.")
        object.__setattr__(self, "value", self.value.strip())

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TrackMetadata:
    """Canonical track information returned by the catalog."""

    title: str
    artists: tuple[str, ...]
    album: str
    artwork_url: str | None = None
    catalog_id: str | None = None

    @property
    def artist_display(self) -> str:
        return ", ".join(self.artists) or "Unknown Artist"

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "artist": self.artist_display,
            "artists": list(self.artists),
            "album": self.album,
            "cover": self.artwork_url,
        }
