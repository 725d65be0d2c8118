"""
Unit tests for the challenge ledger (replay prevention).
"""

import asyncio
import json

import pytest

from ceiling.errors import ReplayError
from ceiling.nonce import (
    ChallengeLedger,
    ChallengeReaper,
    MemoryChallengeStore,
    NonceEntry,
    RedisChallengeStore,
    generate_nonce,
)


class FakeClock:
    """Settable epoch clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clocked_ledger(clock) -> ChallengeLedger:
    return ChallengeLedger(MemoryChallengeStore(), ttl_seconds=300, clock=clock)


class TestIssueChallenge:
    """Challenge issuance tests."""

    @pytest.mark.asyncio
    async def test_challenge_fields(self, ledger):
        """A challenge carries nonce, domain, TTL and required types."""
        challenge = await ledger.issue_challenge("expense-api", "expense:approve")

        assert challenge.domain == "expense-api"
        assert challenge.ttl == 300
        assert challenge.required_types == ("EmployeeCredential", "FinanceApproverCredential")
        assert challenge.credentials_required[1] == {
            "type": "FinanceApproverCredential",
            "purpose": "Verify approval authority",
        }

    @pytest.mark.asyncio
    async def test_nonces_unique(self, ledger):
        nonces = {(await ledger.issue_challenge("expense-api")).nonce for _ in range(50)}
        assert len(nonces) == 50

    def test_nonce_entropy(self):
        """18 random bytes encode to 24 URL-safe characters."""
        assert len(generate_nonce()) == 24

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            ChallengeLedger(ttl_seconds=0)


class TestConsumeChallenge:
    """Single-use semantics."""

    @pytest.mark.asyncio
    async def test_consume_once(self, ledger):
        """First consume succeeds and returns the recorded intent."""
        challenge = await ledger.issue_challenge("expense-api", "expense:view")
        entry = await ledger.consume_challenge(challenge.nonce, "expense-api")

        assert entry.used is True
        assert entry.requested_scope == "expense:view"

    @pytest.mark.asyncio
    async def test_second_consume_rejected(self, ledger):
        challenge = await ledger.issue_challenge("expense-api")
        await ledger.consume_challenge(challenge.nonce, "expense-api")

        with pytest.raises(ReplayError) as exc:
            await ledger.consume_challenge(challenge.nonce, "expense-api")
        assert exc.value.reason == "used"

    @pytest.mark.asyncio
    async def test_unknown(self, ledger):
        with pytest.raises(ReplayError) as exc:
            await ledger.consume_challenge("never-issued", "expense-api")
        assert exc.value.reason == "unknown"

    @pytest.mark.asyncio
    async def test_empty_nonce(self, ledger):
        with pytest.raises(ReplayError) as exc:
            await ledger.consume_challenge("", "expense-api")
        assert exc.value.reason == "unknown"

    @pytest.mark.asyncio
    async def test_domain_mismatch(self, ledger):
        challenge = await ledger.issue_challenge("expense-api")
        with pytest.raises(ReplayError) as exc:
            await ledger.consume_challenge(challenge.nonce, "other-api")
        assert exc.value.reason == "domain_mismatch"

    @pytest.mark.asyncio
    async def test_expired_at_boundary(self, clocked_ledger, clock):
        """A challenge is expired at exactly its expiry time."""
        challenge = await clocked_ledger.issue_challenge("expense-api")
        clock.now += 300

        with pytest.raises(ReplayError) as exc:
            await clocked_ledger.consume_challenge(challenge.nonce, "expense-api")
        assert exc.value.reason == "expired"

    @pytest.mark.asyncio
    async def test_just_before_expiry(self, clocked_ledger, clock):
        challenge = await clocked_ledger.issue_challenge("expense-api")
        clock.now += 299.9
        entry = await clocked_ledger.consume_challenge(challenge.nonce, "expense-api")
        assert entry.used

    @pytest.mark.asyncio
    async def test_expired_entry_removed(self, clocked_ledger, clock):
        """An expired challenge is dropped; retrying reads as unknown."""
        challenge = await clocked_ledger.issue_challenge("expense-api")
        clock.now += 301
        with pytest.raises(ReplayError):
            await clocked_ledger.consume_challenge(challenge.nonce, "expense-api")
        with pytest.raises(ReplayError) as exc:
            await clocked_ledger.consume_challenge(challenge.nonce, "expense-api")
        assert exc.value.reason == "unknown"

    @pytest.mark.asyncio
    async def test_replay_reason_not_on_wire(self):
        """The replay reason stays out of the response body."""
        for reason in ReplayError.REASONS:
            body = ReplayError(reason).to_dict()
            assert body == {
                "error": "invalid_request",
                "error_description": "Invalid, expired, or already used challenge",
            }


class TestConcurrentConsume:
    """Exactly one winner under concurrency."""

    @pytest.mark.asyncio
    async def test_one_of_one_hundred(self, ledger):
        """100 concurrent consumers of one challenge yield exactly one success."""
        challenge = await ledger.issue_challenge("expense-api", "expense:approve")

        results = await asyncio.gather(
            *[ledger.consume_challenge(challenge.nonce, "expense-api") for _ in range(100)],
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, NonceEntry)]
        failures = [r for r in results if isinstance(r, ReplayError)]
        assert len(successes) == 1
        assert len(failures) == 99
        assert all(f.reason == "used" for f in failures)


class TestMemoryStoreHousekeeping:
    """Purge, eviction and stats."""

    @pytest.mark.asyncio
    async def test_purge_expired(self, clocked_ledger, clock):
        old = await clocked_ledger.issue_challenge("expense-api")
        clock.now += 200
        fresh = await clocked_ledger.issue_challenge("expense-api")
        clock.now += 150

        removed = await clocked_ledger.purge_expired()

        assert removed == 1
        with pytest.raises(ReplayError) as exc:
            await clocked_ledger.consume_challenge(old.nonce, "expense-api")
        assert exc.value.reason == "unknown"
        assert (await clocked_ledger.consume_challenge(fresh.nonce, "expense-api")).used

    @pytest.mark.asyncio
    async def test_capacity_evicts_oldest(self):
        """At capacity the oldest challenge is evicted and reads as unknown."""
        ledger = ChallengeLedger(MemoryChallengeStore(max_size=2))
        first = await ledger.issue_challenge("expense-api")
        await ledger.issue_challenge("expense-api")
        await ledger.issue_challenge("expense-api")

        with pytest.raises(ReplayError) as exc:
            await ledger.consume_challenge(first.nonce, "expense-api")
        assert exc.value.reason == "unknown"
        assert ledger.store.stats["evicted"] == 1

    @pytest.mark.asyncio
    async def test_clear(self, ledger):
        challenge = await ledger.issue_challenge("expense-api")
        await ledger.clear()
        assert len(ledger.store) == 0
        with pytest.raises(ReplayError):
            await ledger.consume_challenge(challenge.nonce, "expense-api")

    @pytest.mark.asyncio
    async def test_stats(self, ledger):
        challenge = await ledger.issue_challenge("expense-api")
        await ledger.consume_challenge(challenge.nonce, "expense-api")
        with pytest.raises(ReplayError):
            await ledger.consume_challenge(challenge.nonce, "expense-api")

        stats = ledger.store.stats
        assert stats["issued"] == 1
        assert stats["consumed"] == 1
        assert stats["replays_blocked"] == 1


class TestChallengeReaper:
    """Background purge task."""

    @pytest.mark.asyncio
    async def test_run_once(self, clocked_ledger, clock):
        await clocked_ledger.issue_challenge("expense-api")
        clock.now += 400
        reaper = ChallengeReaper(clocked_ledger, interval=60)
        assert await reaper.run_once() == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, ledger):
        reaper = ChallengeReaper(ledger, interval=0.01)
        reaper.start()
        assert reaper.running
        await asyncio.sleep(0.03)
        await reaper.stop()
        assert not reaper.running


class FakeRedis:
    """Returns a canned eval result, or raises it."""

    def __init__(self, result=None):
        self.result = result
        self.calls = []

    async def eval(self, script, numkeys, *args):
        self.calls.append(args)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestRedisChallengeStore:
    """Redis store result handling (the check itself runs server-side)."""

    @pytest.mark.asyncio
    async def test_fails_closed(self):
        """An unreachable Redis never authorizes."""
        store = RedisChallengeStore(FakeRedis(ConnectionError("down")))
        with pytest.raises(ReplayError) as exc:
            await store.consume("nonce", "expense-api", 0.0)
        assert exc.value.reason == "unknown"

    @pytest.mark.asyncio
    async def test_reason_passthrough(self):
        store = RedisChallengeStore(FakeRedis(b"used"))
        with pytest.raises(ReplayError) as exc:
            await store.consume("nonce", "expense-api", 0.0)
        assert exc.value.reason == "used"

    @pytest.mark.asyncio
    async def test_success_returns_entry(self):
        stored = NonceEntry("nonce", "expense-api", "expense:approve", 0.0, 300.0)
        redis = FakeRedis(json.dumps(stored.to_dict()).encode())
        store = RedisChallengeStore(redis)

        entry = await store.consume("nonce", "expense-api", 1.0)

        assert entry.used is True
        assert entry.requested_scope == "expense:approve"
        assert redis.calls[0][0] == "ceiling:nonce:nonce"
