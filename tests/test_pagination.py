import asyncio

import pytest

from chatsync.services.pagination import PaginationTracker
from conftest import MockMessageRepository, settle


class GatedFetcher:
    """Holds back every page after the first until released."""

    def __init__(self, repo):
        self.repo = repo
        self.gate = asyncio.Event()
        self.calls = 0

    async def __call__(self, conversation_id, limit, cursor):
        self.calls += 1
        if cursor is not None:
            await self.gate.wait()
        return await self.repo.get_messages_page(conversation_id, limit, cursor)


def _repo_with(count, conversation_id="c1"):
    repo = MockMessageRepository()
    for i in range(count):
        repo.add(conversation_id, "alice", text=f"msg {i}")
    return repo


@pytest.mark.asyncio
class TestSeed:
    async def test_first_page_is_newest(self):
        repo = _repo_with(5)
        tracker = PaginationTracker(repo.get_messages_page, page_size=3)
        page = await tracker.seed("c1")
        assert [m.text for m in page] == ["msg 2", "msg 3", "msg 4"]
        assert tracker.has_more("c1") is True

    async def test_short_first_page_means_no_more(self):
        repo = _repo_with(2)
        tracker = PaginationTracker(repo.get_messages_page, page_size=3)
        await tracker.seed("c1")
        assert tracker.has_more("c1") is False

    async def test_empty_conversation(self):
        tracker = PaginationTracker(MockMessageRepository().get_messages_page, page_size=3)
        assert await tracker.seed("c1") == []
        assert tracker.has_more("c1") is False


@pytest.mark.asyncio
class TestLoadEarlier:
    async def test_prepends_older_page_in_order(self):
        repo = _repo_with(5)
        tracker = PaginationTracker(repo.get_messages_page, page_size=3)
        await tracker.seed("c1")
        has_more = await tracker.load_earlier("c1")
        assert has_more is False
        assert [m.text for m in tracker.timeline("c1").messages] == [f"msg {i}" for i in range(5)]

    async def test_exhausted_is_a_no_op(self):
        repo = _repo_with(4)
        tracker = PaginationTracker(repo.get_messages_page, page_size=3)
        await tracker.seed("c1")
        await tracker.load_earlier("c1")
        calls = len(repo.page_calls)
        assert await tracker.load_earlier("c1") is False
        assert len(repo.page_calls) == calls

    async def test_in_flight_is_a_no_op(self):
        repo = _repo_with(7)
        fetcher = GatedFetcher(repo)
        tracker = PaginationTracker(fetcher, page_size=3)
        await tracker.seed("c1")

        first = asyncio.create_task(tracker.load_earlier("c1"))
        await settle()
        assert tracker.state("c1").loading is True
        assert await tracker.load_earlier("c1") is False
        assert fetcher.calls == 2

        fetcher.gate.set()
        assert await first is True
        assert tracker.state("c1").loading is False
        assert len(tracker.timeline("c1")) == 6

    async def test_unknown_conversation(self):
        tracker = PaginationTracker(MockMessageRepository().get_messages_page, page_size=3)
        assert await tracker.load_earlier("nope") is False

    async def test_page_after_reset_is_discarded(self):
        repo = _repo_with(7)
        fetcher = GatedFetcher(repo)
        tracker = PaginationTracker(fetcher, page_size=3)
        await tracker.seed("c1")

        pending = asyncio.create_task(tracker.load_earlier("c1"))
        await settle()
        tracker.reset("c1")
        fetcher.gate.set()
        assert await pending is False
        assert len(tracker.timeline("c1")) == 0

    async def test_error_releases_loading_flag(self):
        repo = _repo_with(5)
        tracker = PaginationTracker(repo.get_messages_page, page_size=3)
        await tracker.seed("c1")
        repo.page_errors.append(RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            await tracker.load_earlier("c1")
        assert tracker.state("c1").loading is False
        assert await tracker.load_earlier("c1") is False
        assert len(tracker.timeline("c1")) == 5
