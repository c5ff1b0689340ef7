"""
Domain records stored by both residency backends.

Hikes and observations are plain dataclasses with dictionary
serialization; the same dictionary form is written as a Cosmos
document and as the JSON columns of the local database.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_datetime(value: Any) -> datetime:
    """Parse an ISO 8601 string (or pass through a datetime), assuming UTC when naive."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
    else:
        return _now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class Difficulty(Enum):
    """Trail difficulty."""

    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"

    @classmethod
    def from_string(cls, value: str | None) -> "Difficulty":
        """Lenient parse; unknown values map to MEDIUM."""
        if not value:
            return cls.MEDIUM
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.MEDIUM

    def __str__(self) -> str:
        return self.value.title()


@dataclass(frozen=True)
class GeoPoint:
    latitude: float = 0.0
    longitude: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GeoPoint | None":
        if not data:
            return None
        return cls(
            latitude=float(data.get("latitude", 0.0)),
            longitude=float(data.get("longitude", 0.0)),
        )


@dataclass
class Location:
    """Named place with coordinates; ``manual_override`` marks a user-typed location."""

    name: str = ""
    coordinates: GeoPoint = field(default_factory=GeoPoint)
    manual_override: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "coordinates": self.coordinates.to_dict(),
            "manual_override": self.manual_override,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Location":
        if not data:
            return cls()
        return cls(
            name=data.get("name", ""),
            coordinates=GeoPoint.from_dict(data.get("coordinates")) or GeoPoint(),
            manual_override=bool(data.get("manual_override", False)),
        )


@dataclass
class AccessControl:
    """Users a hike has been shared with.

    Instances are treated as values: the mutators return a new
    ``AccessControl`` and leave the original untouched.
    """

    invited_users: list[str] = field(default_factory=list)
    shared_users: list[str] = field(default_factory=list)

    def has_access(self, user_id: str) -> bool:
        return user_id in self.invited_users or user_id in self.shared_users

    def add_invited_user(self, user_id: str) -> "AccessControl":
        if user_id in self.invited_users:
            return self
        return AccessControl([*self.invited_users, user_id], list(self.shared_users))

    def add_shared_user(self, user_id: str) -> "AccessControl":
        if user_id in self.shared_users:
            return self
        return AccessControl(list(self.invited_users), [*self.shared_users, user_id])

    def remove_user(self, user_id: str) -> "AccessControl":
        return AccessControl(
            [u for u in self.invited_users if u != user_id],
            [u for u in self.shared_users if u != user_id],
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {"invited_users": list(self.invited_users), "shared_users": list(self.shared_users)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AccessControl":
        if not data:
            return cls()
        return cls(
            invited_users=_str_list(data.get("invited_users")),
            shared_users=_str_list(data.get("shared_users")),
        )


@dataclass
class Hike:
    """A recorded hike.

    ``cover_image_url`` and ``image_urls`` hold local file paths while the
    hike lives on the device and download URLs once it lives in the cloud.
    """

    name: str = ""
    owner_id: str = ""
    id: str = field(default_factory=_new_id)
    location: Location = field(default_factory=Location)
    date: datetime = field(default_factory=_now)
    length_km: float = 0.0
    difficulty: Difficulty = Difficulty.MEDIUM
    has_parking: bool = False
    description: str = ""
    terrain: str = ""
    group_size: int = 0
    cover_image_url: str = ""
    image_urls: list[str] = field(default_factory=list)
    access_control: AccessControl = field(default_factory=AccessControl)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def is_owner(self, user_id: str) -> bool:
        return self.owner_id == user_id

    def has_read_access(self, user_id: str) -> bool:
        return self.is_owner(user_id) or self.access_control.has_access(user_id)

    def can_edit(self, user_id: str) -> bool:
        return self.is_owner(user_id)

    def image_references(self) -> list[str]:
        """Cover image first, then gallery images, without duplicates or blanks."""
        refs: list[str] = []
        for ref in [self.cover_image_url, *self.image_urls]:
            if ref and ref not in refs:
                refs.append(ref)
        return refs

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "location": self.location.to_dict(),
            "date": self.date.isoformat(),
            "length_km": self.length_km,
            "difficulty": self.difficulty.value,
            "has_parking": self.has_parking,
            "description": self.description,
            "terrain": self.terrain,
            "group_size": self.group_size,
            "cover_image_url": self.cover_image_url,
            "image_urls": list(self.image_urls),
            "access_control": self.access_control.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Hike":
        return cls(
            id=data.get("id") or _new_id(),
            owner_id=data.get("owner_id", ""),
            name=data.get("name", ""),
            location=Location.from_dict(data.get("location")),
            date=_parse_datetime(data.get("date")),
            length_km=float(data.get("length_km", 0.0)),
            difficulty=Difficulty.from_string(data.get("difficulty")),
            has_parking=bool(data.get("has_parking", False)),
            description=data.get("description", ""),
            terrain=data.get("terrain", ""),
            group_size=int(data.get("group_size", 0)),
            cover_image_url=data.get("cover_image_url", ""),
            image_urls=_str_list(data.get("image_urls")),
            access_control=AccessControl.from_dict(data.get("access_control")),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass
class Observation:
    """A note taken during a hike, optionally geotagged and illustrated."""

    hike_id: str = ""
    text: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)
    location: GeoPoint | None = None
    comments: str = ""
    image_urls: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def has_location(self) -> bool:
        return self.location is not None

    def has_images(self) -> bool:
        return bool(self.image_urls)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hike_id": self.hike_id,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "location": self.location.to_dict() if self.location else None,
            "comments": self.comments,
            "image_urls": list(self.image_urls),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Observation":
        return cls(
            id=data.get("id") or _new_id(),
            hike_id=data.get("hike_id", ""),
            text=data.get("text", ""),
            timestamp=_parse_datetime(data.get("timestamp")),
            location=GeoPoint.from_dict(data.get("location")),
            comments=data.get("comments", ""),
            image_urls=_str_list(data.get("image_urls")),
            created_at=_parse_datetime(data.get("created_at")),
            updated_at=_parse_datetime(data.get("updated_at")),
        )


@dataclass(frozen=True)
class ImageMetadata:
    """Remote image record returned by an upload."""

    id: str
    url: str
    storage_path: str
    content_type: str = "image/jpeg"
    size: int = 0
    uploaded_at: datetime = field(default_factory=_now)
    uploaded_by: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "storage_path": self.storage_path,
            "content_type": self.content_type,
            "size": self.size,
            "uploaded_at": self.uploaded_at.isoformat(),
            "uploaded_by": self.uploaded_by,
        }


@dataclass(frozen=True)
class UploadProgress:
    """Byte-level progress of a single image upload."""

    image_id: str
    bytes_transferred: int
    total_bytes: int
    is_complete: bool = False
    download_url: str = ""
    storage_path: str = ""

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0 if self.is_complete else 0.0
        return min(self.bytes_transferred / self.total_bytes, 1.0)

    @property
    def percent(self) -> int:
        return int(self.fraction * 100)


@dataclass(frozen=True)
class HikeFilter:
    """Advanced search criteria. ``None`` (or a blank string) disables a criterion."""

    name_query: str | None = None
    location_query: str | None = None
    min_length: float | None = None
    max_length: float | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    difficulty: Difficulty | None = None

    def matches(self, hike: Hike) -> bool:
        if self.name_query and self.name_query.lower() not in hike.name.lower():
            return False
        if self.location_query and self.location_query.lower() not in hike.location.name.lower():
            return False
        if self.min_length is not None and hike.length_km < self.min_length:
            return False
        if self.max_length is not None and hike.length_km > self.max_length:
            return False
        if self.start_date is not None and hike.date < self.start_date:
            return False
        if self.end_date is not None and hike.date > self.end_date:
            return False
        if self.difficulty is not None and hike.difficulty != self.difficulty:
            return False
        return True
