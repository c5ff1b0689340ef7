"""Tests for domain records."""

from datetime import UTC, datetime

import pytest

from trailbook_storage.models import (
    AccessControl,
    Difficulty,
    GeoPoint,
    Hike,
    HikeFilter,
    Location,
    Observation,
    UploadProgress,
)


class TestDifficulty:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("easy", Difficulty.EASY),
            (" HARD ", Difficulty.HARD),
            ("Medium", Difficulty.MEDIUM),
            ("extreme", Difficulty.MEDIUM),
            (None, Difficulty.MEDIUM),
        ],
    )
    def test_from_string(self, raw, expected):
        assert Difficulty.from_string(raw) is expected

    def test_str(self):
        assert str(Difficulty.HARD) == "Hard"


class TestAccessControl:
    def test_mutators_return_new_values(self):
        original = AccessControl()
        shared = original.add_shared_user("u2").add_invited_user("u3")

        assert original == AccessControl()
        assert shared.has_access("u2")
        assert shared.has_access("u3")
        assert shared.add_shared_user("u2") is shared
        assert not shared.remove_user("u2").has_access("u2")


class TestHike:
    def test_access(self):
        hike = Hike(name="Ridge", owner_id="owner", access_control=AccessControl(["guest"], []))

        assert hike.can_edit("owner")
        assert not hike.can_edit("guest")
        assert hike.has_read_access("guest")
        assert not hike.has_read_access("stranger")

    def test_image_references(self):
        hike = Hike(cover_image_url="/a.jpg", image_urls=["/a.jpg", "", "/b.jpg"])
        assert hike.image_references() == ["/a.jpg", "/b.jpg"]

    def test_dict_roundtrip(self):
        hike = Hike(
            name="Coast",
            owner_id="u1",
            location=Location("Cornwall", GeoPoint(50.1, -5.5), manual_override=True),
            date=datetime(2024, 5, 4, 9, 30, tzinfo=UTC),
            length_km=14.2,
            difficulty=Difficulty.HARD,
            has_parking=True,
            group_size=3,
            image_urls=["https://blob.example.test/x.jpg"],
        )

        assert Hike.from_dict(hike.to_dict()) == hike

    def test_from_dict_is_lenient(self):
        hike = Hike.from_dict(
            {
                "id": "h1",
                "name": "Old",
                "date": "2024-01-01T10:00:00",
                "difficulty": "unknown",
                "image_urls": ["/ok.jpg", 3, None],
            }
        )

        assert hike.date.tzinfo is UTC
        assert hike.difficulty is Difficulty.MEDIUM
        assert hike.image_urls == ["/ok.jpg"]
        assert hike.location == Location()


class TestObservation:
    def test_location_and_images(self):
        plain = Observation(hike_id="h1", text="quiet")
        placed = Observation(hike_id="h1", location=GeoPoint(1.0, 2.0), image_urls=["/x.jpg"])

        assert not plain.has_location() and not plain.has_images()
        assert placed.has_location() and placed.has_images()

    def test_dict_roundtrip(self):
        observation = Observation(hike_id="h1", text="Eagle", location=GeoPoint(57.0, -4.0))
        assert Observation.from_dict(observation.to_dict()) == observation


class TestHikeFilter:
    @pytest.fixture
    def hike(self) -> Hike:
        return Hike(
            name="Ben Lawers",
            location=Location("Perthshire"),
            date=datetime(2024, 7, 1, tzinfo=UTC),
            length_km=11.0,
            difficulty=Difficulty.HARD,
        )

    def test_empty_filter_matches(self, hike):
        assert HikeFilter().matches(hike)
        assert HikeFilter(name_query="", location_query="").matches(hike)

    @pytest.mark.parametrize(
        ("criteria", "expected"),
        [
            (HikeFilter(name_query="lawers"), True),
            (HikeFilter(location_query="kent"), False),
            (HikeFilter(min_length=12.0), False),
            (HikeFilter(max_length=11.0), True),
            (HikeFilter(start_date=datetime(2024, 8, 1, tzinfo=UTC)), False),
            (HikeFilter(end_date=datetime(2024, 8, 1, tzinfo=UTC)), True),
            (HikeFilter(difficulty=Difficulty.EASY), False),
        ],
    )
    def test_criteria(self, hike, criteria, expected):
        assert criteria.matches(hike) is expected


class TestUploadProgress:
    def test_fraction(self):
        assert UploadProgress("i", 25, 100).fraction == 0.25
        assert UploadProgress("i", 150, 100).percent == 100
        assert UploadProgress("i", 0, 0).fraction == 0.0
        assert UploadProgress("i", 0, 0, is_complete=True).fraction == 1.0
