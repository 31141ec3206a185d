from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base, build_sessionmaker, init_db
from app.errors import UpstreamUnavailable
from app.models import Block, Follow, Post, Save, User
from app.ranking.vector_math import VECTOR_DIM
from app.repository import ContentRepository, as_utc

from conftest import NOW, USER_ALICE, USER_BOB, USER_CAROL, USER_ME, post_id


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def repository(sessionmaker):
    return ContentRepository(sessionmaker)


async def add(sessionmaker, *rows):
    async with sessionmaker() as session:
        session.add_all(rows)
        await session.commit()


@pytest_asyncio.fixture
async def people(sessionmaker):
    await add(
        sessionmaker,
        User(user_id=USER_ME, username="me", interest_vector=[0.5] * VECTOR_DIM,
             scoring_weights={"similarity": 1.0}, muted_keywords=["crypto"]),
        User(user_id=USER_ALICE, username="alice", display_name="Alice"),
        User(user_id=USER_BOB, username="bob", is_private=True),
        User(user_id=USER_CAROL, username="carol"),
    )


def _post(n, author, hours_old=1, **kwargs):
    # Naive UTC, the way MySQL DATETIME values come back
    created = (NOW - timedelta(hours=hours_old)).replace(tzinfo=None)
    return Post(post_id=post_id(n), user_id=author, content=f"post {n}", created_at=created, **kwargs)


# ─────────────────────── Helpers ──────────────────────────────────────────

def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2026, 3, 1, 12, 0)
    assert as_utc(naive) == NOW
    assert as_utc(naive).tzinfo is timezone.utc
    shifted = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert as_utc(shifted) == NOW
    assert as_utc(shifted).tzinfo is timezone.utc


# ─────────────────────── Identity ─────────────────────────────────────────

@pytest.mark.asyncio
async def test_interest_vector_round_trip(repository, people):
    assert await repository.get_interest_vector(USER_ME) == [0.5] * VECTOR_DIM
    assert await repository.get_interest_vector(USER_ALICE) is None

    await repository.set_interest_vector(USER_ALICE, [0.25] * VECTOR_DIM)
    assert await repository.get_interest_vector(USER_ALICE) == [0.25] * VECTOR_DIM


@pytest.mark.asyncio
async def test_profile_lookup(repository, people):
    profile = await repository.get_profile(USER_ME)
    assert profile.weights == {"similarity": 1.0}
    assert profile.muted_keywords == ("crypto",)
    assert (await repository.get_profile(USER_ALICE)).weights is None
    assert await repository.get_profile(post_id(404)) is None


# ─────────────────────── Visibility edges ─────────────────────────────────

@pytest.mark.asyncio
async def test_blocks_are_returned_in_both_directions(repository, sessionmaker, people):
    await add(
        sessionmaker,
        Block(blocker_id=USER_ME, blocked_id=USER_ALICE),
        Block(blocker_id=USER_BOB, blocked_id=USER_ME),
        Block(blocker_id=USER_ALICE, blocked_id=USER_CAROL),
    )
    assert await repository.get_blocked(USER_ME) == {USER_ALICE, USER_BOB}
    assert await repository.get_blocked(USER_CAROL) == {USER_ALICE}


@pytest.mark.asyncio
async def test_following_is_directed(repository, sessionmaker, people):
    await add(
        sessionmaker,
        Follow(follower_id=USER_ME, followee_id=USER_BOB),
        Follow(follower_id=USER_ALICE, followee_id=USER_ME),
    )
    assert await repository.get_following(USER_ME) == {USER_BOB}


@pytest.mark.asyncio
async def test_authors_are_batched_and_partial(repository, people):
    authors = await repository.get_authors(
        iter([USER_ALICE, USER_BOB, USER_ALICE, post_id(404)])
    )
    assert set(authors) == {USER_ALICE, USER_BOB}
    assert authors[USER_BOB].is_private is True
    assert authors[USER_ALICE].display_name == "Alice"
    assert await repository.get_authors([]) == {}


# ─────────────────────── Content ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_content_is_converted_to_items(repository, sessionmaker, people):
    await add(
        sessionmaker,
        _post(1, USER_ALICE, tags=["#Bread"], save_count=4, embedding=[0.1] * VECTOR_DIM),
        _post(2, USER_ALICE, embedding=[0.1] * 3),
    )
    items = await repository.get_content([post_id(1), post_id(2), post_id(404)])

    assert set(items) == {post_id(1), post_id(2)}
    first = items[post_id(1)]
    assert first.created_at == NOW - timedelta(hours=1)
    assert first.created_at.tzinfo is not None
    assert first.tags == ("#Bread",)
    assert first.save_count == 4
    assert first.embedding.shape == (VECTOR_DIM,)
    assert items[post_id(2)].embedding is None


@pytest.mark.asyncio
async def test_recent_saves_newest_first_and_limited(repository, sessionmaker, people):
    await add(sessionmaker, *(_post(n, USER_ALICE) for n in range(1, 5)))
    await add(
        sessionmaker,
        *(
            Save(user_id=USER_ME, post_id=post_id(n),
                 created_at=(NOW - timedelta(days=10 - n)).replace(tzinfo=None))
            for n in range(1, 5)
        ),
        Save(user_id=USER_CAROL, post_id=post_id(1), created_at=NOW.replace(tzinfo=None)),
    )
    saves = await repository.get_recent_saves(USER_ME, limit=3)
    assert [item.content_id for item in saves] == [post_id(4), post_id(3), post_id(2)]


@pytest.mark.asyncio
async def test_interest_sources_merge_saved_and_authored(repository, sessionmaker, people):
    await add(
        sessionmaker,
        _post(1, USER_ALICE),
        _post(2, USER_ME, hours_old=5),
        _post(3, USER_ME, hours_old=1),
    )
    await add(
        sessionmaker,
        Save(user_id=USER_ME, post_id=post_id(1), created_at=NOW.replace(tzinfo=None)),
        Save(user_id=USER_ME, post_id=post_id(3), created_at=NOW.replace(tzinfo=None)),
    )
    sources = await repository.get_interest_sources(USER_ME, limit=10)
    assert sources[0] in {post_id(1), post_id(3)}
    assert sorted(sources) == [post_id(1), post_id(2), post_id(3)]


# ─────────────────────── Seen records ─────────────────────────────────────

@pytest.mark.asyncio
async def test_seen_lookup_respects_window(repository, people):
    await repository.record_seen(USER_ME, [post_id(1)], NOW - timedelta(days=2))
    await repository.record_seen(USER_ME, [post_id(2)], NOW - timedelta(days=40))
    await repository.record_seen(USER_ALICE, [post_id(3)], NOW)

    seen = await repository.get_seen(USER_ME, since=NOW - timedelta(days=30))

    assert seen == {post_id(1): NOW - timedelta(days=2)}


@pytest.mark.asyncio
async def test_record_seen_is_idempotent(repository, people):
    await repository.record_seen(USER_ME, [post_id(1), post_id(1)], NOW - timedelta(days=1))
    await repository.record_seen(USER_ME, [post_id(1)], NOW)

    seen = await repository.get_seen(USER_ME, since=NOW - timedelta(days=30))
    assert seen == {post_id(1): NOW}


@pytest.mark.asyncio
async def test_purge_deletes_only_older_records(repository, people):
    await repository.record_seen(USER_ME, [post_id(1)], NOW - timedelta(days=31))
    await repository.record_seen(USER_ME, [post_id(2)], NOW - timedelta(days=2))

    assert await repository.purge_seen(NOW - timedelta(days=30)) == 1
    assert await repository.get_seen(USER_ME, since=NOW - timedelta(days=365)) == {
        post_id(2): NOW - timedelta(days=2)
    }


# ─────────────────────── Errors ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_driver_errors_become_upstream_unavailable(engine, repository):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    with pytest.raises(UpstreamUnavailable):
        await repository.get_following(USER_ME)
