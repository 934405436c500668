"""Tests for sync scheduling and settings-driven behavior."""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from shelf_sync.config import ConflictPreference, SyncSettings
from shelf_sync.exceptions import NetworkError
from shelf_sync.sync.backup_service import BackupService
from shelf_sync.sync.scheduler import SyncScheduler
from shelf_sync.sync.sync_engine import SyncEngine
from shelf_sync.sync.sync_models import SyncAction, SyncState, SyncTrigger

from conftest import make_client, make_snapshot


@pytest.fixture
def engine(client, store):
    return SyncEngine(client, store)


@pytest.fixture
def other_engine(server, other_store):
    return SyncEngine(make_client(server), other_store)


def quiet_settings(**overrides) -> SyncSettings:
    """Settings with every automatic trigger off unless overridden."""
    values = dict(auto_sync=False, sync_on_startup=False, sync_before_close=False)
    values.update(overrides)
    return SyncSettings(**values)


def make_scheduler(engine, store, settings, **kwargs):
    scheduler = SyncScheduler(engine, store, settings, **kwargs)
    results = []
    scheduler.add_listener(results.append)
    return scheduler, results


class TestLifecycle:
    """Test startup and shutdown syncs."""

    @pytest.mark.asyncio
    async def test_startup_and_close_syncs(self, engine, store):
        store.save_snapshot(make_snapshot("A"))
        settings = quiet_settings(sync_on_startup=True, sync_before_close=True)
        scheduler, results = make_scheduler(engine, store, settings)

        startup = await scheduler.start()
        closing = await scheduler.stop()

        assert startup.trigger == SyncTrigger.STARTUP
        assert startup.action == SyncAction.UPLOADED
        assert closing.trigger == SyncTrigger.BEFORE_CLOSE
        assert closing.action == SyncAction.NO_CHANGE
        assert [r.trigger for r in results] == [SyncTrigger.STARTUP, SyncTrigger.BEFORE_CLOSE]

    @pytest.mark.asyncio
    async def test_disabled_triggers_do_nothing(self, engine, store, server):
        scheduler, results = make_scheduler(engine, store, quiet_settings())

        assert await scheduler.start() is None
        scheduler.notify_local_change()
        assert await scheduler.stop() is None
        assert results == []
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, engine, store):
        scheduler, results = make_scheduler(engine, store, quiet_settings(sync_on_startup=True))
        await scheduler.start()
        assert await scheduler.start() is None
        assert len(results) == 1


class TestTriggers:
    """Test debounced, periodic and manual syncs."""

    @pytest.mark.asyncio
    async def test_local_changes_are_debounced(self, engine, store, server):
        """Test that a burst of edits produces a single sync."""
        store.save_snapshot(make_snapshot("A"))
        scheduler, results = make_scheduler(engine, store, quiet_settings(auto_sync=True, sync_interval_minutes=0),
                                            debounce_seconds=0.01)
        await scheduler.start()

        for _ in range(3):
            scheduler.notify_local_change()
        await asyncio.sleep(0.1)

        assert len(results) == 1
        assert results[0].trigger == SyncTrigger.AUTO
        assert server.count("POST", "/gists") == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_periodic_sync(self, engine, store):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)
            if len(delays) > 2:
                await asyncio.Event().wait()

        store.save_snapshot(make_snapshot("A"))
        scheduler, results = make_scheduler(engine, store, quiet_settings(auto_sync=True, sync_interval_minutes=5),
                                            sleep=fake_sleep)
        await scheduler.start()
        for _ in range(1000):
            if len(delays) > 2:
                break
            await asyncio.sleep(0)
        await scheduler.stop()

        assert delays[:2] == [300, 300]
        assert [r.trigger for r in results] == [SyncTrigger.AUTO, SyncTrigger.AUTO]
        assert [r.action for r in results] == [SyncAction.UPLOADED, SyncAction.NO_CHANGE]

    @pytest.mark.asyncio
    async def test_manual_trigger(self, engine, store):
        scheduler, _ = make_scheduler(engine, store, quiet_settings())
        result = await scheduler.trigger()
        assert result.trigger == SyncTrigger.MANUAL
        assert result.success


class TestRunSync:
    """Test what a single scheduled sync does around the engine."""

    @pytest.mark.asyncio
    async def test_downloaded_data_written_to_store(self, engine, other_engine, store):
        remote = make_snapshot("Remote", updated=50)
        await other_engine.sync(remote)
        store.save_snapshot(make_snapshot("Old", updated=0))
        scheduler, _ = make_scheduler(engine, store, quiet_settings())

        result = await scheduler.trigger()

        assert result.action == SyncAction.DOWNLOADED
        assert store.load_snapshot() == remote

    @pytest.mark.asyncio
    async def test_conflict_left_for_user_when_asking(self, engine, other_engine, store):
        await other_engine.sync(make_snapshot("Remote", updated=0))
        local = make_snapshot("Local", updated=2)
        store.save_snapshot(local)
        scheduler, _ = make_scheduler(engine, store, quiet_settings(conflict_resolution="ask"))

        result = await scheduler.trigger()

        assert result.action == SyncAction.CONFLICT
        assert engine.pending_conflict is not None
        assert store.load_snapshot() == local

    @pytest.mark.asyncio
    async def test_conflict_auto_resolved_by_preference(self, engine, other_engine, store):
        await other_engine.sync(make_snapshot("Remote", updated=0))
        store.save_snapshot(make_snapshot("Local", updated=2))
        settings = quiet_settings(conflict_resolution=ConflictPreference.MERGE)
        scheduler, _ = make_scheduler(engine, store, settings)

        result = await scheduler.trigger(SyncTrigger.AUTO)

        assert result.success
        assert result.action == SyncAction.UPLOADED
        assert result.trigger == SyncTrigger.AUTO
        assert {e.title for e in store.load_snapshot().entries} == {"Local", "Remote"}
        assert engine.pending_conflict is None



def backup_ids(server):
    return [gist_id for gist_id, gist in server.gists.items() if " - Backup: " in gist["description"]]


class TestBackupBeforeSync:
    """Test backups of remote data that a sync is about to overwrite."""

    @pytest.mark.asyncio
    async def test_remote_backed_up_before_upload(self, engine, client, store, server):
        store.save_snapshot(make_snapshot("A", updated=0))
        await engine.sync(store.load_snapshot())
        store.save_snapshot(make_snapshot("A", "B", updated=10))
        backups = BackupService(client, engine.device_id)
        scheduler, _ = make_scheduler(engine, store, quiet_settings(backup_before_sync=True),
                                      backup_service=backups)

        result = await scheduler.trigger()

        assert result.action == SyncAction.UPLOADED
        saved = backup_ids(server)
        assert len(saved) == 1
        restored = await backups.restore_backup(saved[0])
        assert [e.title for e in restored.entries] == ["A"]

    @pytest.mark.asyncio
    async def test_no_backup_when_nothing_is_overwritten(self, engine, client, store, server):
        """Test that first uploads and no-change auto syncs never create backup gists."""
        store.save_snapshot(make_snapshot("A"))
        backups = BackupService(client, engine.device_id)
        scheduler, _ = make_scheduler(engine, store, quiet_settings(backup_before_sync=True),
                                      backup_service=backups)

        first = await scheduler.trigger(SyncTrigger.STARTUP)
        results = [await scheduler.trigger(SyncTrigger.AUTO) for _ in range(3)]

        assert first.action == SyncAction.UPLOADED
        assert [r.action for r in results] == [SyncAction.NO_CHANGE] * 3
        assert backup_ids(server) == []
        assert len(server.gists) == 1

    @pytest.mark.asyncio
    async def test_no_backup_on_download(self, engine, other_engine, client, store, server):
        await other_engine.sync(make_snapshot("Remote", updated=50))
        store.save_snapshot(make_snapshot("Old", updated=0))
        scheduler, _ = make_scheduler(engine, store, quiet_settings(backup_before_sync=True),
                                      backup_service=BackupService(client, engine.device_id))

        result = await scheduler.trigger()

        assert result.action == SyncAction.DOWNLOADED
        assert backup_ids(server) == []

    @pytest.mark.asyncio
    async def test_remote_backed_up_before_merge(self, engine, other_engine, client, store, server):
        await other_engine.sync(make_snapshot("Remote", updated=0))
        store.save_snapshot(make_snapshot("Local", updated=2))
        backups = BackupService(client, engine.device_id)
        settings = quiet_settings(backup_before_sync=True, conflict_resolution=ConflictPreference.MERGE)
        scheduler, _ = make_scheduler(engine, store, settings, backup_service=backups)

        result = await scheduler.trigger()

        assert result.action == SyncAction.UPLOADED
        saved = backup_ids(server)
        assert len(saved) == 1
        restored = await backups.restore_backup(saved[0])
        assert [e.title for e in restored.entries] == ["Remote"]

    @pytest.mark.asyncio
    async def test_backup_failure_does_not_block_sync(self, engine, store, caplog):
        store.save_snapshot(make_snapshot("A", updated=0))
        await engine.sync(store.load_snapshot())
        store.save_snapshot(make_snapshot("A", "B", updated=10))
        backups = Mock(spec=BackupService)
        backups.create_backup = AsyncMock(side_effect=NetworkError("offline"))
        scheduler, _ = make_scheduler(engine, store, quiet_settings(backup_before_sync=True),
                                      backup_service=backups)

        result = await scheduler.trigger()

        assert result.success
        assert result.action == SyncAction.UPLOADED
        backups.create_backup.assert_awaited_once()
        assert "Pre-sync backup failed" in caplog.text


class TestShutdown:
    """Test stopping while a periodic sync is running."""

    @pytest.mark.asyncio
    async def test_stop_lets_running_periodic_sync_finish(self, engine, client, store, server):
        """Test that stop() waits for an in-flight sync and leaves the engine idle."""
        gate = asyncio.Event()
        listing = asyncio.Event()
        list_documents = client.list_documents

        async def slow_list():
            listing.set()
            await gate.wait()
            return await list_documents()

        client.list_documents = slow_list
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) > 1:
                await asyncio.Event().wait()

        store.save_snapshot(make_snapshot("A"))
        scheduler, results = make_scheduler(engine, store, quiet_settings(auto_sync=True),
                                            sleep=fake_sleep)
        await scheduler.start()
        await asyncio.wait_for(listing.wait(), timeout=1)
        assert engine.state == SyncState.SYNCING

        stopping = asyncio.ensure_future(scheduler.stop())
        await asyncio.sleep(0)
        assert not stopping.done()
        gate.set()
        await stopping

        assert engine.state == SyncState.IDLE
        assert [r.action for r in results] == [SyncAction.UPLOADED]
        assert server.count("POST", "/gists") == 1
        assert sleeps == [300]

    @pytest.mark.asyncio
    async def test_periodic_sync_works_after_restart(self, engine, store):
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) % 2 == 0:
                await asyncio.Event().wait()

        store.save_snapshot(make_snapshot("A"))
        scheduler, results = make_scheduler(engine, store, quiet_settings(auto_sync=True),
                                            sleep=fake_sleep)
        for round_number in (1, 2):
            await scheduler.start()
            for _ in range(1000):
                if len(sleeps) >= 2 * round_number:
                    break
                await asyncio.sleep(0)
            await scheduler.stop()

        assert engine.state == SyncState.IDLE
        assert [r.action for r in results] == [SyncAction.UPLOADED, SyncAction.NO_CHANGE]
