import pytest

from tasksync.models import CredentialRecord
from tasksync.services.identity import CredentialStore
from tasksync.services.reaper import OrphanReaper

from fakes import read_json_file

LIVE = "1" * 64
ARCHIVED = "2" * 64
ORPHAN = "3" * 64


@pytest.fixture()
def credentials(paths) -> CredentialStore:
    return CredentialStore(paths.credentials_file)


@pytest.fixture()
def reaper(credentials, sessions, store) -> OrphanReaper:
    return OrphanReaper(credentials, sessions, store)


async def _seed(credentials, store, paths) -> None:
    for owner_key in (LIVE, ARCHIVED, ORPHAN):
        await credentials.add_if_absent(owner_key, CredentialRecord())
    await store.create_if_absent(LIVE)
    paths.archive_file(ARCHIVED, 1_700_000_000_000).write_text('{"tasks": []}')


@pytest.mark.asyncio
async def test_nothing_to_do_is_a_no_op(reaper, paths) -> None:
    report = await reaper.run()

    assert report.total == 0
    assert not paths.credentials_file.exists()
    assert not paths.sessions_file.exists()


@pytest.mark.asyncio
async def test_removes_credentials_without_live_or_archived_data(reaper, credentials, store, paths) -> None:
    await _seed(credentials, store, paths)

    report = await reaper.run()

    assert report.credentials_removed == 1
    assert credentials.owner_keys() == {LIVE, ARCHIVED}
    assert set(read_json_file(paths.credentials_file)) == {LIVE, ARCHIVED}


@pytest.mark.asyncio
async def test_removes_expired_and_orphaned_sessions(reaper, credentials, sessions, store, paths, clock) -> None:
    await _seed(credentials, store, paths)
    stale = await sessions.create(LIVE)
    clock.advance(3601)
    fresh = await sessions.create(LIVE)
    archived_owner = await sessions.create(ARCHIVED)
    unknown_owner = await sessions.create("9" * 64)

    report = await reaper.run()

    assert report.sessions_expired == 1
    assert report.sessions_orphaned == 1
    assert fresh in sessions and archived_owner in sessions
    assert stale not in sessions and unknown_owner not in sessions
    assert set(read_json_file(paths.sessions_file)) == {fresh, archived_owner}


@pytest.mark.asyncio
async def test_session_of_a_reaped_credential_goes_in_the_same_run(reaper, credentials, sessions, store, paths) -> None:
    await _seed(credentials, store, paths)
    token = await sessions.create(ORPHAN)

    report = await reaper.run()

    assert report.credentials_removed == 1
    assert report.sessions_orphaned == 1
    assert token not in sessions


@pytest.mark.asyncio
async def test_expired_session_never_takes_its_credential_with_it(reaper, credentials, sessions, store, paths, clock) -> None:
    await _seed(credentials, store, paths)
    await sessions.create(LIVE)
    clock.advance(3601)

    report = await reaper.run()

    assert report.sessions_expired == 1
    assert LIVE in credentials


@pytest.mark.asyncio
async def test_second_run_deletes_nothing(reaper, credentials, sessions, store, paths, clock) -> None:
    await _seed(credentials, store, paths)
    await sessions.create(ORPHAN)
    await sessions.create(LIVE)
    clock.advance(3601)
    await sessions.create(ARCHIVED)

    first = await reaper.run()
    second = await reaper.run()

    assert first.total > 0
    assert second.total == 0
