import asyncio

import pytest

from storagedrive.bucket_index import BucketIndexRegistry, BucketObjectIndex
from storagedrive.error import CancelledException, ObjectNotFoundException
from storagedrive.models import FOLDER_CONTENT_TYPE, ObjectMetadata


@pytest.mark.asyncio
async def test_object_and_inferred_folder_exist(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)

    assert await index.exists("x.txt")
    assert await index.exists("dir")
    assert await index.exists("dir/")
    assert await index.exists("dir/y.txt")
    assert not await index.exists("missing.txt")
    assert not await index.exists("dir/missing.txt")


@pytest.mark.asyncio
async def test_prefix_without_marker_is_a_container_but_not_real(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)

    assert await index.is_container("dir")
    assert not await index.is_container("x.txt")
    assert not await index.is_real("dir/")
    assert await index.is_real("x.txt")


@pytest.mark.asyncio
async def test_marker_object_is_a_container_after_refresh_and_after_invalidate(service, clock):
    service.put("b", "a/b/", b"")
    index = BucketObjectIndex(service, "b", clock=clock)

    assert await index.is_container("a/b")
    assert await index.is_real("a/b/")

    index.invalidate()
    assert len(index) == 0
    assert await index.is_container("a/b")
    assert await index.is_real("a/b/")


@pytest.mark.asyncio
async def test_has_children_ignores_the_folder_marker(service, clock):
    service.put("b", "empty/", b"")
    index = BucketObjectIndex(service, "b", clock=clock)

    assert await index.has_children("dir")
    assert not await index.has_children("empty")
    assert await index.has_children(None)


@pytest.mark.asyncio
async def test_queries_within_ttl_reuse_the_listing(service, clock):
    index = BucketObjectIndex(service, "b", ttl=60, clock=clock)

    await index.exists("x.txt")
    await index.is_container("dir")
    await index.exists("nothing")
    assert service.calls["list_objects"] == 1

    clock.advance(61)
    await index.exists("x.txt")
    assert service.calls["list_objects"] == 2


@pytest.mark.asyncio
async def test_recursive_listing_covers_subfolders(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)

    await index.ensure_fresh("", recursive=True)
    calls = service.calls["list_objects"]

    assert await index.exists("dir/y.txt")
    assert await index.has_children("dir")
    assert service.calls["list_objects"] == calls


@pytest.mark.asyncio
async def test_refresh_drops_objects_deleted_elsewhere(service, clock):
    index = BucketObjectIndex(service, "b", ttl=60, clock=clock)
    assert await index.exists("x.txt")

    del service.objects["b"]["x.txt"]
    clock.advance(61)

    assert not await index.exists("x.txt")


@pytest.mark.asyncio
async def test_listing_follows_every_page(clock, service):
    service.page_size = 2
    for i in range(5):
        service.put("b", f"many/{i}.txt")
    index = BucketObjectIndex(service, "b", clock=clock)

    names = [m.object_name async for m in index.list_children("many/", recursive=False)]

    assert names == [f"many/{i}.txt" for i in range(5)]
    assert service.calls["list_objects"] == 3


@pytest.mark.asyncio
async def test_shallow_children_synthesize_folders(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)

    children = [m async for m in index.list_children("", recursive=False)]

    assert [c.object_name for c in children] == ["x.txt", "dir/"]
    folder = children[1]
    assert folder.synthetic
    assert folder.content_type == FOLDER_CONTENT_TYPE


@pytest.mark.asyncio
async def test_recursive_children_do_not_include_the_listed_marker(service, clock):
    service.put("b", "dir/", b"")
    index = BucketObjectIndex(service, "b", clock=clock)

    names = [m.object_name async for m in index.list_children("dir/", recursive=True)]

    assert names == ["dir/y.txt"]
    assert await index.is_real("dir/")


@pytest.mark.asyncio
async def test_get_returns_marker_or_synthetic_folder(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)

    folder = await index.get("dir")
    assert folder.synthetic
    assert folder.object_name == "dir/"

    service.put("b", "dir/", b"")
    index.invalidate()
    marker = await index.get("dir")
    assert not marker.synthetic
    assert marker.object_name == "dir/"

    with pytest.raises(ObjectNotFoundException):
        await index.get("nope.txt")


@pytest.mark.asyncio
async def test_insert_makes_object_and_parents_known(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)
    await index.ensure_fresh("")

    index.insert(ObjectMetadata(object_name="new/deep/z.txt", bucket_name="b"))

    assert "new/deep/z.txt" in index
    assert await index.is_container("new")


@pytest.mark.asyncio
async def test_stop_signal_prevents_listing(service, clock):
    stop = asyncio.Event()
    stop.set()
    index = BucketObjectIndex(service, "b", clock=clock)

    with pytest.raises(CancelledException):
        await index.exists("x.txt", stop=stop)
    assert service.calls["list_objects"] == 0


def test_registry_creates_one_index_per_bucket(service, clock):
    registry = BucketIndexRegistry(service, clock=clock)

    assert registry.get("b") is registry.get("b")
    assert registry.get("b") is not registry.get("other")

    first = registry.get("b")
    registry.discard("b")
    assert registry.get("b") is not first


def _hold_object_listings(service, monkeypatch):
    """Make list_objects compute its page, then wait until the returned gate opens."""
    started = asyncio.Event()
    gate = asyncio.Event()
    original = service.list_objects

    async def held(bucket_name, prefix="", delimiter="", page_token=None):
        page = await original(bucket_name, prefix, delimiter, page_token)
        if not gate.is_set():
            started.set()
            await gate.wait()
        return page

    monkeypatch.setattr(service, "list_objects", held)
    return started, gate


@pytest.mark.asyncio
async def test_insert_during_refresh_is_not_lost(service, clock, monkeypatch):
    started, gate = _hold_object_listings(service, monkeypatch)
    index = BucketObjectIndex(service, "b", clock=clock)

    refresh = asyncio.create_task(index.ensure_fresh(""))
    await started.wait()
    service.put("b", "new.txt")
    index.insert(ObjectMetadata(object_name="new.txt", bucket_name="b"))
    gate.set()
    await refresh

    assert await index.exists("new.txt")
    assert await index.exists("x.txt")


@pytest.mark.asyncio
async def test_invalidate_during_refresh_is_not_undone(service, clock, monkeypatch):
    started, gate = _hold_object_listings(service, monkeypatch)
    index = BucketObjectIndex(service, "b", clock=clock)

    refresh = asyncio.create_task(index.ensure_fresh(""))
    await started.wait()
    del service.objects["b"]["x.txt"]
    index.invalidate()
    gate.set()
    await refresh

    assert not await index.exists("x.txt")
    assert await index.exists("dir/y.txt")


@pytest.mark.asyncio
async def test_listing_that_spans_invalidate_does_not_mark_prefix_fresh(service, clock):
    index = BucketObjectIndex(service, "b", clock=clock)
    children = index.list_children("")

    first = await children.__anext__()
    index.invalidate()
    rest = [obj async for obj in children]

    assert {first.object_name} | {obj.object_name for obj in rest} == {"x.txt", "dir/"}
    assert not index.is_fresh("")
    assert len(index) == 0
