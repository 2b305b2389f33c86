"""
Helper positions and the nearest-available-helpers query (scan path).
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ORIGIN
from lifeline.services import location_service
from lifeline.services.errors import CollaboratorError
from lifeline.services.location_service import SqlGeoIndex


def _north(meters: float) -> dict:
    return {"longitude": ORIGIN[0], "latitude": ORIGIN[1] + meters / 111_195}


class TestHelperLocation:

    async def test_upsert_keeps_one_row_per_helper(self, db):
        first = await location_service.update_helper_location(db, "h1", **_north(100), accuracy=8.0)
        assert first["is_available"] is True

        second = await location_service.update_helper_location(db, "h1", **_north(300), is_available=False)
        await db.commit()

        assert second["latitude"] == _north(300)["latitude"]
        assert second["is_available"] is False
        assert second["accuracy"] is None

        stored = await location_service.get_helper_location(db, "h1")
        assert stored["latitude"] == second["latitude"]

    async def test_availability_is_kept_when_not_given(self, db):
        await location_service.update_helper_location(db, "h1", **_north(0), is_available=False)
        updated = await location_service.update_helper_location(db, "h1", **_north(50))
        assert updated["is_available"] is False

    async def test_unknown_helper(self, db):
        assert await location_service.get_helper_location(db, "nobody") is None


class TestFindNearbyHelpers:

    async def _seed(self, db):
        await location_service.update_helper_location(db, "near", **_north(200))
        await location_service.update_helper_location(db, "mid", **_north(1500))
        await location_service.update_helper_location(db, "far", **_north(8000))
        await location_service.update_helper_location(db, "busy", **_north(100), is_available=False)
        await location_service.update_helper_location(db, "owner", **_north(10))
        await db.commit()

    async def test_nearest_first_within_radius(self, db):
        await self._seed(db)
        found = await location_service.find_nearby_helpers(db, ORIGIN, 5000, exclude_ids=["owner"])

        assert [h.helper_id for h in found] == ["near", "mid"]
        assert found[0].distance_m == pytest.approx(200, rel=0.01)

    async def test_limit_and_exclusions(self, db):
        await self._seed(db)
        found = await location_service.find_nearby_helpers(db, ORIGIN, 10_000, exclude_ids=["near"], limit=2)
        assert [h.helper_id for h in found] == ["owner", "mid"]

    async def test_zero_limit(self, db):
        await self._seed(db)
        assert await location_service.find_nearby_helpers(db, ORIGIN, 5000, limit=0) == []

    async def test_sql_geo_index_adapter(self, db, session_factory):
        await self._seed(db)
        found = await SqlGeoIndex(session_factory).find_nearby_helpers(ORIGIN, 10_000, ["owner", "mid"], 5)
        assert [h.helper_id for h in found] == ["near", "far"]

    async def test_sql_geo_index_wraps_database_errors(self):
        factory = MagicMock()
        factory.return_value.__aenter__.side_effect = OperationalError("SELECT", {}, Exception("connection refused"))

        with pytest.raises(CollaboratorError):
            await SqlGeoIndex(factory).find_nearby_helpers(ORIGIN, 1000, [], 5)

    async def test_finds_helpers_across_the_antimeridian(self, db):
        """Should find a helper just across the date line from a Fiji emergency"""
        await location_service.update_helper_location(db, "west", longitude=-179.995, latitude=-17.0)
        await location_service.update_helper_location(db, "east", longitude=179.98, latitude=-17.0)
        await db.commit()

        found = await location_service.find_nearby_helpers(db, (179.99, -17.0), 5000)
        assert [h.helper_id for h in found] == ["east", "west"]
