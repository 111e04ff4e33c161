import pytest

from socialsync.services.scheduler import LOCK_GLOBAL_SYNC, SchedulerService


@pytest.mark.asyncio
async def test_leader_tick_runs_work_without_advisory_locks_on_sqlite(session_factory):
    service = SchedulerService()
    service.use_session_factory(session_factory)
    seen = []

    async def work(factory):
        seen.append(factory)
        return {"tenants": 0}

    result = await service.leader_tick("global_sync", LOCK_GLOBAL_SYNC, work)

    assert result == {"tenants": 0}
    assert seen == [session_factory]


@pytest.mark.asyncio
async def test_leader_tick_propagates_work_errors(session_factory):
    service = SchedulerService()
    service.use_session_factory(session_factory)

    async def work(factory):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await service.leader_tick("refresh_tokens", 1, work)


def test_disabled_scheduler_does_not_start():
    service = SchedulerService()
    service.start()
    assert service.is_running() is False
    assert service.get_jobs() == []
    service.stop()
