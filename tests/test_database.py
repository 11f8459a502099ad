from datetime import datetime, timedelta

import aiosqlite
import pytest

from database import Database


async def _add_image(db: Database, user_id: int, title: str, tags: str = "") -> int:
    record = await db.create_image(
        title=title,
        description="",
        tags=tags,
        orientation="square",
        filename=f"{user_id}_{title}.png",
        url=f"/uploads/{user_id}_{title}.png",
        user_id=user_id,
        username="owner",
    )
    return record.id


@pytest.mark.asyncio
async def test_user_and_session_lifecycle(store: Database) -> None:
    user = await store.create_user("alice", "Alice@Example.com", "hashed")
    fetched_email = await store.fetch_user_by_email("alice@example.com")
    fetched_id = await store.fetch_user_by_id(user.id)

    assert fetched_email is not None
    assert fetched_email.id == user.id
    assert fetched_id is not None
    assert fetched_id.email == "alice@example.com"

    expires_at = (datetime.utcnow() + timedelta(hours=1)).isoformat()
    session = await store.create_session(
        user_id=user.id, token_hash="tokenhash", expires_at=expires_at
    )
    fetched_session = await store.fetch_session_by_token_hash("tokenhash")
    assert fetched_session is not None
    assert fetched_session.user_id == user.id

    touched_at = datetime.utcnow().isoformat()
    await store.touch_session(session.id, touched_at)
    touched = await store.fetch_session_by_token_hash("tokenhash")
    assert touched is not None
    assert touched.last_seen_at == touched_at

    revoked_at = datetime.utcnow().isoformat()
    await store.revoke_session_by_hash("tokenhash", revoked_at)
    revoked = await store.fetch_session_by_token_hash("tokenhash")
    assert revoked is not None
    assert revoked.revoked_at == revoked_at


@pytest.mark.asyncio
async def test_duplicate_email_is_rejected(store: Database) -> None:
    await store.create_user("alice", "alice@example.com", "hashed")
    with pytest.raises(aiosqlite.IntegrityError):
        await store.create_user("other", "alice@example.com", "hashed")
    assert await store.count_users() == 1


@pytest.mark.asyncio
async def test_usernames_need_not_be_unique(store: Database) -> None:
    await store.create_user("sam", "sam1@example.com", "hashed")
    await store.create_user("sam", "sam2@example.com", "hashed")
    assert await store.count_users() == 2


@pytest.mark.asyncio
async def test_list_images_pages_newest_first(store: Database) -> None:
    user = await store.create_user("carol", "carol@example.com", "hashed")
    ids = [await _add_image(store, user.id, f"img{i}") for i in range(12)]

    first = await store.list_images(limit=9, offset=0)
    second = await store.list_images(limit=9, offset=9)

    assert [img.id for img in first] == list(reversed(ids))[:9]
    assert [img.id for img in second] == list(reversed(ids))[9:]
    assert await store.count_images() == 12


@pytest.mark.asyncio
async def test_search_matches_title_or_tags(store: Database) -> None:
    user = await store.create_user("dan", "dan@example.com", "hashed")
    by_title = await _add_image(store, user.id, "Black Cat")
    by_tags = await _add_image(store, user.id, "sofa", tags="cat, nap")
    await _add_image(store, user.id, "dog", tags="park")

    found = await store.list_images(search="cat", limit=9)

    assert {img.id for img in found} == {by_title, by_tags}
    assert await store.count_images(search="cat") == 2


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(store: Database) -> None:
    user = await store.create_user("erin", "erin@example.com", "hashed")
    await _add_image(store, user.id, "plain")
    literal = await _add_image(store, user.id, "100%")

    found = await store.list_images(search="%", limit=9)

    assert [img.id for img in found] == [literal]


@pytest.mark.asyncio
async def test_update_is_scoped_to_owner(store: Database) -> None:
    owner = await store.create_user("fay", "fay@example.com", "hashed")
    other = await store.create_user("gus", "gus@example.com", "hashed")
    image_id = await _add_image(store, owner.id, "before")

    assert not await store.update_image(
        image_id, other.id, title="hacked", description="", tags=""
    )
    assert (await store.fetch_image(image_id)).title == "before"

    assert await store.update_image(
        image_id, owner.id, title="after", description="d", tags="t"
    )
    updated = await store.fetch_image(image_id)
    assert (updated.title, updated.description, updated.tags) == ("after", "d", "t")


@pytest.mark.asyncio
async def test_delete_image_removes_row(store: Database) -> None:
    user = await store.create_user("hal", "hal@example.com", "hashed")
    image_id = await _add_image(store, user.id, "gone")

    assert await store.delete_image(image_id)
    assert await store.fetch_image(image_id) is None
    assert not await store.delete_image(image_id)
