from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from culler.api.schemas.exclusions import Exclusion, ExclusionType
from culler.api.services.exclusions import ExclusionStore

from fakes import NOW, movie


class TestExclusion:

    @pytest.mark.unit
    @pytest.mark.parametrize("kind, value, fields", [
        ("media", "m1", {}),
        ("user", "alice", {"watched_by": ["bob", "alice"]}),
        ("collection", "Favourites", {"collections": ["Favourites"]}),
        ("genre", "sci-fi", {"genres": ["Action", "Sci-Fi"]}),
        ("tag", "keep", {"tags": ["4k", "keep"]}),
        ("title_pattern", "matr", {}),
    ])
    def test_matches(self, kind, value, fields):
        exclusion = Exclusion(type=kind, value=value)
        assert exclusion.matches(movie("m1", **fields)) is True
        assert exclusion.matches(movie("m2", title="Heat")) is False

    @pytest.mark.unit
    def test_invalid_title_pattern_is_rejected(self):
        with pytest.raises(ValidationError):
            Exclusion(type=ExclusionType.title_pattern, value="([unclosed")

    @pytest.mark.unit
    def test_naive_expiry_is_utc(self):
        exclusion = Exclusion(type="media", value="m1", expires_at=datetime(2026, 3, 2, 12, 0))

        assert exclusion.expires_at == NOW + timedelta(days=1)
        assert exclusion.is_expired(NOW) is False
        assert exclusion.is_expired(NOW + timedelta(days=1)) is True
        assert Exclusion(type="media", value="m1").is_expired(NOW + timedelta(days=3650)) is False


class TestExclusionStore:

    @pytest.mark.unit
    def test_expired_entries_stop_matching(self, clock):
        store = ExclusionStore(clock=clock)
        temporary = store.add({"type": "genre", "value": "Drama", "expires_at": NOW + timedelta(days=2)})
        drama = movie(genres=["Drama"])

        assert store.excluded_by(drama).id == temporary.id
        clock.advance(days=2)
        assert store.excluded_by(drama) is None
        assert store.list() == []
        assert store.list(include_expired=True) == [temporary]

        assert store.expire() == 1
        assert store.list(include_expired=True) == []

    @pytest.mark.unit
    def test_remove(self, clock):
        store = ExclusionStore(clock=clock)
        exclusion = store.add(Exclusion(type="media", value="m1", reason="family favourite"))

        assert exclusion.describe() == "media 'm1' (family favourite)"
        assert store.remove(exclusion.id) is True
        assert store.remove(exclusion.id) is False
        assert store.excluded_by(movie()) is None
