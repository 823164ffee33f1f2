from __future__ import annotations


class Album:
    """Represents a single album in someone's collection."""

    def __init__(self, title: str, artist: str, release_year: int, owner: str, local_id: int = 0,
                 cover_file_name: str | None = None, lent_to: str | None = None, id: int | None = None) -> None:
        self.id = id
        self.local_id = local_id
        self.title = title
        self.artist = artist
        self.release_year = release_year
        self.owner = owner
        self.cover_file_name = cover_file_name
        self.lent_to = lent_to

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"#{self.local_id} {self.title} by {self.artist} ({self.release_year}, {self.owner})"

    @property
    def is_lent(self) -> bool:
        return bool(self.lent_to)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "local_id": self.local_id,
            "title": self.title,
            "artist": self.artist,
            "release_year": self.release_year,
            "owner": self.owner,
            "cover_file_name": self.cover_file_name,
            "lent_to": self.lent_to,
        }

    @staticmethod
    def from_dict(data: dict) -> "Album":
        return Album(
            id=data.get("id"),
            local_id=data.get("local_id") or 0,
            title=data["title"],
            artist=data["artist"],
            release_year=data.get("release_year") or 0,
            owner=data.get("owner") or "",
            cover_file_name=data.get("cover_file_name"),
            lent_to=data.get("lent_to"),
        )
