import asyncio

import pytest

from awaz import models
from awaz.changefeed import INSERT, ChangeEvent, ChangeFeed
from awaz.database import SessionLocal
from awaz.exceptions import ElectionNotFound
from awaz.services.tally import LiveTallyMonitor, apply_vote, compute_tallies
from awaz.timeutils import utcnow

_voter = iter(range(1, 10_000))


def cast(db, election, candidate, count):
    for _ in range(count):
        n = next(_voter)
        db.add(models.Vote(
            election_id=election.id,
            candidate_id=candidate.id,
            encrypted_voter_hash=f"{n:064x}",
            vote_hash="stamp",
            ballot_key=f"{election.id}:{n}",
            voted_at=utcnow(),
        ))
    db.commit()


def test_counts_and_percentages(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    a, b = election.candidates
    cast(db, election, a, 3)
    cast(db, election, b, 1)

    tally = compute_tallies(db, election.id)

    assert tally.total_votes == 4
    by_id = {c.id: c for c in tally.candidates}
    assert by_id[a.id].vote_count == 3
    assert by_id[a.id].vote_percentage == 75
    assert by_id[b.id].vote_percentage == 25
    assert tally.leading_candidate_id == a.id


def test_zero_votes_gives_zero_percentages(db, create_election):
    election = create_election(candidates=3)

    tally = compute_tallies(db, election.id)

    assert tally.total_votes == 0
    assert [c.vote_percentage for c in tally.candidates] == [0, 0, 0]
    assert tally.leading_candidate_id is None


def test_percentages_are_rounded(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=3)
    for candidate in election.candidates:
        cast(db, election, candidate, 1)

    tally = compute_tallies(db, election.id)

    assert [c.vote_percentage for c in tally.candidates] == [33.33, 33.33, 33.33]


def test_ties_keep_ballot_order(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=3)
    first, second, third = election.candidates
    cast(db, election, third, 2)
    cast(db, election, second, 2)

    tally = compute_tallies(db, election.id)

    assert [c.id for c in tally.candidates] == [second.id, third.id, first.id]
    assert [c.id for c in compute_tallies(db, election.id).candidates] == [c.id for c in tally.candidates]


def test_votes_of_other_elections_are_ignored(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    other = create_election(title="Other", status=models.ElectionStatus.active, candidates=2)
    cast(db, other, other.candidates[0], 5)

    assert compute_tallies(db, election.id).total_votes == 0


def test_unknown_election(db):
    with pytest.raises(ElectionNotFound):
        compute_tallies(db, 404)


def test_apply_vote_increments_and_reranks(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    a, b = election.candidates
    cast(db, election, a, 1)
    tally = compute_tallies(db, election.id)

    updated = apply_vote(apply_vote(tally, b.id, tally.last_vote_id + 1), b.id, tally.last_vote_id + 2)

    assert updated.total_votes == 3
    assert updated.candidates[0].id == b.id
    assert updated.candidates[0].vote_percentage == 66.67
    assert tally.total_votes == 1


def test_apply_vote_skips_already_counted_and_unknown(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    cast(db, election, election.candidates[0], 2)
    tally = compute_tallies(db, election.id)

    assert apply_vote(tally, election.candidates[0].id, tally.last_vote_id) is tally
    assert apply_vote(tally, 9999, tally.last_vote_id + 1) is tally


def test_monitor_applies_feed_events(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    a, b = election.candidates
    feed = ChangeFeed()
    monitor = LiveTallyMonitor(SessionLocal, feed)
    monitor.watch(compute_tallies(db, election.id))
    feed.subscribe("votes", {INSERT}, monitor.on_vote_inserted)

    feed.publish(ChangeEvent("votes", INSERT, {"id": 1, "election_id": election.id, "candidate_id": b.id}))
    feed.publish(ChangeEvent("votes", INSERT, {"id": 2, "election_id": 999, "candidate_id": a.id}))

    snapshot = monitor.snapshot(election.id)
    assert snapshot.total_votes == 1
    assert snapshot.leading_candidate_id == b.id
    assert monitor.snapshot(999) is None


def test_monitor_poll_heals_missed_notifications(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    monitor = LiveTallyMonitor(SessionLocal, ChangeFeed())

    async def scenario():
        queue = monitor.subscribe(election.id)
        monitor.watch(compute_tallies(db, election.id))
        # committed without anyone hearing about it
        cast(db, election, election.candidates[0], 2)
        await monitor.refresh_all()
        return queue.get_nowait()

    tally = asyncio.run(scenario())

    assert tally.total_votes == 2
    assert monitor.snapshot(election.id).total_votes == 2


def test_monitor_end_to_end_with_change_feed(db, create_election):
    from awaz.changefeed import feed

    election = create_election(status=models.ElectionStatus.active, candidates=2)
    monitor = LiveTallyMonitor(SessionLocal, feed, poll_seconds=60, debounce_seconds=0.01)

    async def scenario():
        await monitor.start()
        try:
            monitor.watch(compute_tallies(db, election.id))
            queue = monitor.subscribe(election.id)
            cast(db, election, election.candidates[1], 1)
            return await asyncio.wait_for(queue.get(), timeout=5)
        finally:
            await monitor.stop()

    tally = asyncio.run(scenario())

    assert tally.total_votes == 1
    assert tally.leading_candidate_id == election.candidates[1].id


def test_stale_recount_does_not_roll_back_applied_votes(db, create_election):
    election = create_election(status=models.ElectionStatus.active, candidates=2)
    feed = ChangeFeed()
    monitor = LiveTallyMonitor(SessionLocal, feed)
    monitor.watch(compute_tallies(db, election.id))
    feed.subscribe("votes", {INSERT}, monitor.on_vote_inserted)
    # announced before the recount below can see it in the ledger
    feed.publish(ChangeEvent("votes", INSERT, {"id": 50, "election_id": election.id,
                                               "candidate_id": election.candidates[0].id}))

    async def scenario():
        queue = monitor.subscribe(election.id)
        await monitor.refresh_all()
        return queue.empty()

    assert asyncio.run(scenario()) is True
    assert monitor.snapshot(election.id).total_votes == 1
    assert monitor.snapshot(election.id).last_vote_id == 50
