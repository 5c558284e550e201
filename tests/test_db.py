"""Tests for the SQLite poll store. Coroutines run with asyncio.run on a temp file."""
import asyncio

import pytest

from db import Database, PollNotFound, PollStateError
from irv import Ballot, Option, Ranking
from validation import ValidationError, rankings_from_order

CREATOR = 100
OTHER = 200


def run(coro_fn, tmp_path):
    async def _wrapper():
        db = Database(str(tmp_path / "test.sqlite3"))
        await db.connect()
        await db.init()
        try:
            return await coro_fn(db)
        finally:
            await db.close()

    return asyncio.run(_wrapper())


async def _published_poll(db, options=("A", "B", "C")):
    poll_id = await db.create_poll(CREATOR, "Lunch", list(options))
    await db.update_poll(poll_id, CREATOR, status="published")
    return poll_id


class TestPolls:
    def test_create_poll_starts_as_draft(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, " Lunch ", ["Pizza", " ", "Sushi"], description=" Friday ")
            return await db.get_poll(poll_id), await db.get_options(poll_id)

        poll, options = run(scenario, tmp_path)
        assert poll.title == "Lunch"
        assert poll.description == "Friday"
        assert poll.status == "draft"
        assert poll.share_link is None
        assert poll.ballot_count == 0
        assert [o.text for o in options] == ["Pizza", "Sushi"]
        assert all(isinstance(o, Option) for o in options)
        assert [o.id for o in options] == sorted(o.id for o in options)

    def test_create_poll_validates(self, tmp_path):
        async def scenario(db):
            with pytest.raises(ValidationError):
                await db.create_poll(CREATOR, "Lunch", ["Only one"])
            return await db.list_polls(CREATOR)

        assert run(scenario, tmp_path) == []

    def test_get_poll_of_other_creator_is_not_found(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"])
            with pytest.raises(PollNotFound):
                await db.get_poll(poll_id, OTHER)
            with pytest.raises(PollNotFound):
                await db.get_poll(poll_id + 1)

        run(scenario, tmp_path)

    def test_list_polls_newest_first(self, tmp_path):
        async def scenario(db):
            first = await db.create_poll(CREATOR, "First", ["A", "B"])
            second = await db.create_poll(CREATOR, "Second", ["A", "B"])
            await db.create_poll(OTHER, "Foreign", ["A", "B"])
            return first, second, await db.list_polls(CREATOR)

        first, second, polls = run(scenario, tmp_path)
        assert [p.id for p in polls] == [second, first]

    def test_publish_issues_share_link_once(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"])
            published = await db.update_poll(poll_id, CREATOR, status="published")
            draft = await db.update_poll(poll_id, CREATOR, status="draft")
            again = await db.update_poll(poll_id, CREATOR, status="published")
            return published, draft, again

        published, draft, again = run(scenario, tmp_path)
        assert published.status == "published"
        assert len(published.share_link) == 32
        assert draft.share_link == published.share_link
        assert again.share_link == published.share_link

    def test_update_title_and_description(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"], description="old")
            return await db.update_poll(poll_id, CREATOR, title=" Dinner ", description="  ")

        poll = run(scenario, tmp_path)
        assert poll.title == "Dinner"
        assert poll.description is None

    def test_invalid_status(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"])
            with pytest.raises(PollStateError, match="Invalid status"):
                await db.update_poll(poll_id, CREATOR, status="archived")

        run(scenario, tmp_path)

    def test_closed_poll_cannot_be_updated_or_closed_again(self, tmp_path):
        async def scenario(db):
            poll_id = await _published_poll(db)
            closed = await db.close_poll(poll_id, CREATOR)
            with pytest.raises(PollStateError, match="Cannot update a closed poll"):
                await db.update_poll(poll_id, CREATOR, title="New")
            with pytest.raises(PollStateError, match="already closed"):
                await db.close_poll(poll_id, CREATOR)
            return closed

        assert run(scenario, tmp_path).status == "closed"

    def test_get_published_poll(self, tmp_path):
        async def scenario(db):
            poll_id = await _published_poll(db)
            poll = await db.get_poll(poll_id)
            found = await db.get_published_poll(poll.share_link)
            await db.close_poll(poll_id, CREATOR)
            with pytest.raises(PollNotFound, match="no longer accepting votes"):
                await db.get_published_poll(poll.share_link)
            with pytest.raises(PollNotFound):
                await db.get_published_poll("nope")
            return poll_id, found

        poll_id, found = run(scenario, tmp_path)
        assert found.id == poll_id


class TestBallots:
    def test_add_and_read_ballots(self, tmp_path):
        async def scenario(db):
            poll_id = await _published_poll(db)
            ids = [o.id for o in await db.get_options(poll_id)]
            await db.add_ballot(poll_id, 1, "u1", rankings_from_order([ids[2], ids[0], ids[1]]))
            await db.add_ballot(poll_id, None, None, rankings_from_order(ids))
            return ids, await db.get_ballots(poll_id), await db.get_poll(poll_id)

        ids, ballots, poll = run(scenario, tmp_path)
        assert len(ballots) == 2
        assert all(isinstance(b, Ballot) for b in ballots)
        assert [r.option_id for r in ballots[0].rankings] == [ids[2], ids[0], ids[1]]
        assert [r.rank for r in ballots[0].rankings] == [1, 2, 3]
        assert poll.ballot_count == 2

    def test_revote_replaces_previous_ballot(self, tmp_path):
        async def scenario(db):
            poll_id = await _published_poll(db)
            ids = [o.id for o in await db.get_options(poll_id)]
            await db.add_ballot(poll_id, 1, "u1", rankings_from_order(ids))
            await db.add_ballot(poll_id, 1, "u1", rankings_from_order(ids[::-1]))
            return ids, await db.get_ballots(poll_id)

        ids, ballots = run(scenario, tmp_path)
        assert len(ballots) == 1
        assert ballots[0].rankings[0].option_id == ids[-1]

    def test_rejects_invalid_ballot(self, tmp_path):
        async def scenario(db):
            poll_id = await _published_poll(db)
            ids = [o.id for o in await db.get_options(poll_id)]
            with pytest.raises(ValidationError, match="All options must be ranked"):
                await db.add_ballot(poll_id, 1, "u1", rankings_from_order(ids[:2]))
            with pytest.raises(ValidationError, match="Invalid option ID"):
                await db.add_ballot(poll_id, 1, "u1", [Ranking(ids[0], 1), Ranking(ids[1], 2), Ranking(999, 3)])
            return await db.get_ballots(poll_id)

        assert run(scenario, tmp_path) == []

    def test_rejects_ballot_for_unpublished_poll(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"])
            ids = [o.id for o in await db.get_options(poll_id)]
            with pytest.raises(PollNotFound):
                await db.add_ballot(poll_id, 1, "u1", rankings_from_order(ids))
            await db.update_poll(poll_id, CREATOR, status="published")
            await db.close_poll(poll_id, CREATOR)
            with pytest.raises(PollNotFound):
                await db.add_ballot(poll_id, 1, "u1", rankings_from_order(ids))

        run(scenario, tmp_path)


class TestTallyPoll:
    def test_tally_poll(self, tmp_path):
        async def scenario(db):
            poll_id = await _published_poll(db, options=("A", "B"))
            a, b = [o.id for o in await db.get_options(poll_id)]
            await db.add_ballot(poll_id, 1, None, rankings_from_order([a, b]))
            await db.add_ballot(poll_id, 2, None, rankings_from_order([a, b]))
            await db.add_ballot(poll_id, 3, None, rankings_from_order([b, a]))
            return a, b, await db.tally_poll(poll_id, CREATOR)

        a, b, (poll, options, result) = run(scenario, tmp_path)
        assert poll.ballot_count == 3
        assert [o.id for o in options] == [a, b]
        assert result.total_votes == 3
        assert result.winner.id == a
        assert result.rounds[0].eliminated.id == b

    def test_tally_poll_without_ballots(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"])
            return await db.tally_poll(poll_id)

        _, _, result = run(scenario, tmp_path)
        assert result.error == "No ballots available"

    def test_tally_poll_of_other_creator(self, tmp_path):
        async def scenario(db):
            poll_id = await db.create_poll(CREATOR, "Lunch", ["A", "B"])
            with pytest.raises(PollNotFound):
                await db.tally_poll(poll_id, OTHER)

        run(scenario, tmp_path)


class TestSessions:
    def test_session_roundtrip(self, tmp_path):
        async def scenario(db):
            assert await db.get_session(1, 5) is None
            await db.upsert_session(1, 5, [], [3, 2, 1])
            await db.upsert_session(1, 5, [3], [2, 1])
            await db.upsert_session(1, 6, [9], [])
            current = await db.get_session(1, 5)
            await db.delete_session(1, 5)
            return current, await db.get_session(1, 5), await db.get_session(1, 6)

        current, deleted, other = run(scenario, tmp_path)
        assert current == ([3], [2, 1])
        assert deleted is None
        assert other == ([9], [])
