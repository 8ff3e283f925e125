import json

import pytest

from tasksync.core.errors import AuthError
from tasksync.services.sessions import SessionRegistry

from fakes import read_json_file

OWNER = "c" * 64


@pytest.mark.asyncio
async def test_create_and_resolve(sessions: SessionRegistry) -> None:
    token = await sessions.create(OWNER)

    session = await sessions.resolve(token)

    assert len(token) == 64
    assert session.owner_key == OWNER
    assert session.token == token


@pytest.mark.asyncio
async def test_tokens_are_unique(sessions: SessionRegistry) -> None:
    tokens = {await sessions.create(OWNER) for _ in range(20)}
    assert len(tokens) == 20


@pytest.mark.asyncio
async def test_missing_and_unknown_tokens_are_rejected(sessions: SessionRegistry) -> None:
    with pytest.raises(AuthError, match="missing"):
        await sessions.resolve(None)
    with pytest.raises(AuthError, match="missing"):
        await sessions.resolve("not-a-token")


@pytest.mark.asyncio
async def test_expired_session_is_rejected_and_removed(sessions: SessionRegistry, clock, paths) -> None:
    token = await sessions.create(OWNER)
    clock.advance(3601)

    with pytest.raises(AuthError, match="expired"):
        await sessions.resolve(token)

    assert token not in sessions
    assert token not in read_json_file(paths.sessions_file)
    with pytest.raises(AuthError, match="missing"):
        await sessions.resolve(token)


@pytest.mark.asyncio
async def test_session_at_exact_max_age_is_still_valid(sessions: SessionRegistry, clock) -> None:
    token = await sessions.create(OWNER)
    clock.advance(3600)

    assert (await sessions.resolve(token)).owner_key == OWNER


@pytest.mark.asyncio
async def test_destroy_is_idempotent(sessions: SessionRegistry) -> None:
    token = await sessions.create(OWNER)

    await sessions.destroy(token)
    await sessions.destroy(token)
    await sessions.destroy(None)

    assert len(sessions) == 0


@pytest.mark.asyncio
async def test_sessions_survive_restart(sessions: SessionRegistry, paths, clock) -> None:
    token = await sessions.create(OWNER)

    reloaded = SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)
    await reloaded.load()

    assert (await reloaded.resolve(token)).owner_key == OWNER
    assert read_json_file(paths.sessions_file)[token] == {
        "ownerKey": OWNER,
        "createdAt": int(clock() * 1000),
    }


@pytest.mark.asyncio
async def test_legacy_pair_list_file_is_read(paths, clock) -> None:
    created = int(clock() * 1000)
    paths.sessions_file.write_text(
        json.dumps([["tok1", {"createdAt": created, "passwordHash": OWNER}], ["tok2", {}]])
    )
    registry = SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)

    await registry.load()

    assert len(registry) == 1
    assert (await registry.resolve("tok1")).owner_key == OWNER


@pytest.mark.asyncio
async def test_unreadable_file_starts_empty(paths, clock) -> None:
    paths.sessions_file.write_text("[[[")
    registry = SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)

    await registry.load()

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_sweep_counts_expired_and_orphaned(sessions: SessionRegistry, clock) -> None:
    old = await sessions.create(OWNER)
    clock.advance(3000)
    kept = await sessions.create(OWNER)
    orphan = await sessions.create("d" * 64)
    clock.advance(1000)

    expired, orphaned = await sessions.sweep({OWNER})

    assert (expired, orphaned) == (1, 1)
    assert kept in sessions
    assert old not in sessions and orphan not in sessions
    assert await sessions.sweep({OWNER}) == (0, 0)


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(paths, clock) -> None:
    created = int(clock() * 1000)
    paths.sessions_file.write_text(
        json.dumps(
            {
                "not-an-object": "x",
                "bad-time": {"ownerKey": OWNER, "createdAt": "yesterday"},
                "good": {"ownerKey": OWNER, "createdAt": created},
            }
        )
    )
    registry = SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)

    await registry.load()

    assert len(registry) == 1
    assert (await registry.resolve("good")).owner_key == OWNER


@pytest.mark.asyncio
async def test_legacy_list_with_broken_pairs_is_tolerated(paths, clock) -> None:
    created = int(clock() * 1000)
    paths.sessions_file.write_text(
        json.dumps([["only-a-token"], "junk", 7, ["tok", {"passwordHash": OWNER, "createdAt": created}]])
    )
    registry = SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)

    await registry.load()

    assert len(registry) == 1
    assert "tok" in registry


@pytest.mark.asyncio
async def test_unexpected_top_level_value_starts_empty(paths, clock) -> None:
    paths.sessions_file.write_text("42")
    registry = SessionRegistry(paths.sessions_file, max_age_seconds=3600, clock=clock)

    await registry.load()

    assert len(registry) == 0
