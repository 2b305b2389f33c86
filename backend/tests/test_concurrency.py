"""
Concurrent writers on one emergency.

Two sessions load the same row, the first commits, and the second loses
the version check. The loser must reload and re-apply (or fail cleanly)
instead of overwriting the winner's change.
"""

import asyncio

import pytest

from lifeline.config import get_settings
from lifeline.services import emergency_service as service
from lifeline.services import emergency_store as store
from lifeline.services.access_gate import Actor, Role
from lifeline.services.errors import ConflictError, InvalidStateError

OWNER = Actor(Role.USER, "owner-1")


@pytest.fixture
def interleave(monkeypatch):
    """Arm after setup: hold the first writer until the second has read the
    same version.

    The second writer then waits long enough for the first to commit, so
    its save always runs against a stale version. Reloads pass straight
    through. Arming returns the list of ``refresh`` flags seen.
    """
    load_from_db = store.get_emergency_by_id
    second_loaded = asyncio.Event()
    loads: list[bool] = []

    async def load(db, emergency_id, *, refresh=False):
        emergency = await load_from_db(db, emergency_id, refresh=refresh)
        loads.append(refresh)
        if not refresh:
            position = loads.count(False)
            if position == 1:
                await second_loaded.wait()
            elif position == 2:
                second_loaded.set()
                await asyncio.sleep(0.3)
        return emergency

    def arm():
        monkeypatch.setattr(store, "get_emergency_by_id", load)
        return loads

    return arm


async def _emergency_with_helpers(db, make_draft, notifier, helpers=("h1", "h2")):
    created = await service.create_emergency(db, make_draft(), OWNER.id)
    await service.request_helpers(db, created["id"], list(helpers), OWNER, notifier=notifier)
    return created["id"]


class TestOptimisticConcurrency:

    async def test_parallel_accepts_both_land(self, db, session_factory, make_draft, notifier, interleave):
        eid = await _emergency_with_helpers(db, make_draft, notifier)
        loads = interleave()

        async def accept(helper_id):
            async with session_factory() as session:
                return await service.accept_helper_request(session, eid, helper_id, notifier=notifier)

        results = await asyncio.gather(accept("h1"), accept("h2"))

        assert [r["status"] for r in results] == ["accepted", "accepted"]
        assert True in loads

        async with session_factory() as session:
            stored = await store.get_emergency_by_id(session, eid)
            assert stored.total_helpers_accepted == 2
            assert sorted(a.status.value for a in stored.assigned_helpers) == ["accepted", "accepted"]
            accepted_entries = [e for e in stored.communication_log if e.entry_type.value == "helper_accepted"]
            assert len(accepted_entries) == 2
            # created + manual request + two accepts
            assert stored.version == 4

    async def test_parallel_resolves_only_one_wins(self, db, session_factory, make_draft, notifier, interleave):
        eid = await _emergency_with_helpers(db, make_draft, notifier)
        interleave()

        async def resolve(actor):
            async with session_factory() as session:
                return await service.resolve_emergency(session, eid, {}, actor, notifier=notifier)

        results = await asyncio.gather(
            resolve(OWNER), resolve(Actor(Role.HELPER, "h1")), return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1 and winners[0]["status"] == "resolved"
        assert len(losers) == 1 and isinstance(losers[0], InvalidStateError)

        async with session_factory() as session:
            stored = await store.get_emergency_by_id(session, eid)
            assert stored.resolved_by_id == winners[0]["resolution"]["resolved_by"]["id"]
            resolved_entries = [e for e in stored.communication_log if e.message.startswith("Emergency resolved")]
            assert len(resolved_entries) == 1

    async def test_conflict_after_retries_exhausted(
        self, db, session_factory, make_draft, notifier, interleave, monkeypatch,
    ):
        monkeypatch.setattr(get_settings(), "MAX_SAVE_RETRIES", 1)
        eid = await _emergency_with_helpers(db, make_draft, notifier)
        interleave()

        async def accept(helper_id):
            async with session_factory() as session:
                return await service.accept_helper_request(session, eid, helper_id, notifier=notifier)

        results = await asyncio.gather(accept("h1"), accept("h2"), return_exceptions=True)

        accepted = [r for r in results if isinstance(r, dict)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(accepted) == 1 and len(conflicts) == 1
        loser = "h2" if accepted[0]["helper_id"] == "h1" else "h1"

        async with session_factory() as session:
            stored = await store.get_emergency_by_id(session, eid)
            assert stored.find_assignment(loser).status.value == "requested"
            assert stored.total_helpers_accepted == 1
