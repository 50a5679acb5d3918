"""Tests for voter code issuing, consumption and revocation."""

import asyncio
import re

import pytest

from ballotbox.engine.credentials import CredentialStore
from ballotbox.shared.errors import (
    CredentialAlreadyUsedError,
    CredentialBatchError,
    CredentialNotFoundError,
)
from ballotbox.shared.models import generate_code, normalize_code

CODE_PATTERN = re.compile(r"^[A-Z0-9]{8}$")


@pytest.fixture
def credentials(store, clock) -> CredentialStore:
    return CredentialStore(store, clock=clock)


def test_generated_codes_are_eight_uppercase_alphanumerics():
    codes = {generate_code() for _ in range(200)}
    assert all(CODE_PATTERN.match(code) for code in codes)
    assert len(codes) > 190


def test_normalize_code_strips_and_uppercases():
    assert normalize_code("  ab12cd34\n") == "AB12CD34"


@pytest.mark.asyncio
class TestIssue:
    """Issuing batches of codes."""

    async def test_issue_returns_unique_codes(self, credentials, make_event):
        event, _ = await make_event(activate=False)

        codes = await credentials.issue(event.id, 50)

        assert len(codes) == 50
        assert len(set(codes)) == 50
        assert all(CODE_PATTERN.match(code) for code in codes)

    @pytest.mark.parametrize("count", [0, -1, 1001])
    async def test_batch_size_out_of_range(self, credentials, make_event, count):
        event, _ = await make_event(activate=False)

        with pytest.raises(CredentialBatchError):
            await credentials.issue(event.id, count)

        assert await credentials.list(event.id) == []

    async def test_largest_batch_is_accepted(self, credentials, make_event):
        event, _ = await make_event(activate=False)
        codes = await credentials.issue(event.id, 1000)
        assert len(set(codes)) == 1000

    async def test_collisions_are_regenerated(self, store, clock, make_event):
        """A factory that repeats itself still yields the requested number of distinct codes."""
        event, _ = await make_event(activate=False)
        produced = iter(["AAAA1111", "AAAA1111", "BBBB2222"])
        credentials = CredentialStore(store, clock=clock, code_factory=lambda: next(produced))

        codes = await credentials.issue(event.id, 2)

        assert sorted(codes) == ["AAAA1111", "BBBB2222"]

    async def test_gives_up_when_no_unique_code_can_be_found(self, store, clock, make_event):
        event, _ = await make_event(activate=False)
        credentials = CredentialStore(store, clock=clock, code_factory=lambda: "SAMECODE")
        await credentials.issue(event.id, 1)

        with pytest.raises(CredentialBatchError):
            await credentials.issue(event.id, 1)

    async def test_same_code_may_exist_in_two_events(self, store, clock, make_event):
        first, _ = await make_event(activate=False)
        second, _ = await make_event(activate=False)
        credentials = CredentialStore(store, clock=clock, code_factory=lambda: "SHARED01")

        assert await credentials.issue(first.id, 1) == ["SHARED01"]
        assert await credentials.issue(second.id, 1) == ["SHARED01"]

    async def test_list_is_newest_first(self, credentials, make_event):
        event, _ = await make_event(activate=False)
        older = await credentials.issue(event.id, 3)
        newer = await credentials.issue(event.id, 2)

        listed = [credential.code for credential in await credentials.list(event.id)]

        assert set(listed[:2]) == set(newer)
        assert set(listed[2:]) == set(older)


@pytest.mark.asyncio
class TestConsume:
    """Single-use consumption."""

    async def test_consume_marks_used(self, credentials, make_event, clock):
        event, _ = await make_event()
        [code] = await credentials.issue(event.id, 1)

        credential = await credentials.consume(event.id, code)

        assert credential.used is True
        assert credential.used_at == clock.now
        [listed] = await credentials.list(event.id)
        assert listed.used is True

    async def test_consume_is_case_and_whitespace_insensitive(self, credentials, make_event):
        event, _ = await make_event()
        [code] = await credentials.issue(event.id, 1)

        credential = await credentials.consume(event.id, f"  {code.lower()} ")

        assert credential.code == code

    async def test_second_consume_fails(self, credentials, make_event):
        event, _ = await make_event()
        [code] = await credentials.issue(event.id, 1)
        await credentials.consume(event.id, code)

        with pytest.raises(CredentialAlreadyUsedError):
            await credentials.consume(event.id, code)

    async def test_unknown_code(self, credentials, make_event):
        event, _ = await make_event()

        with pytest.raises(CredentialNotFoundError):
            await credentials.consume(event.id, "NOPE0000")

    async def test_code_from_another_event_is_not_found(self, credentials, make_event):
        first, _ = await make_event()
        second, _ = await make_event()
        [code] = await credentials.issue(first.id, 1)

        with pytest.raises(CredentialNotFoundError):
            await credentials.consume(second.id, code)

    async def test_concurrent_consumers_exactly_one_wins(self, credentials, make_event):
        """Fifty simultaneous consumers of one code: one success, the rest already used."""
        event, _ = await make_event()
        [code] = await credentials.issue(event.id, 1)

        results = await asyncio.gather(
            *[credentials.consume(event.id, code) for _ in range(50)],
            return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 49
        assert all(isinstance(f, CredentialAlreadyUsedError) for f in failures)


@pytest.mark.asyncio
class TestRevoke:
    """Revoking unused codes."""

    async def test_revoke_unused_code(self, credentials, make_event):
        event, _ = await make_event()
        codes = await credentials.issue(event.id, 2)

        assert await credentials.revoke(event.id, codes[0].lower()) is True

        remaining = [credential.code for credential in await credentials.list(event.id)]
        assert remaining == [codes[1]]
        with pytest.raises(CredentialNotFoundError):
            await credentials.consume(event.id, codes[0])

    async def test_used_code_cannot_be_revoked(self, credentials, make_event):
        event, _ = await make_event()
        [code] = await credentials.issue(event.id, 1)
        await credentials.consume(event.id, code)

        assert await credentials.revoke(event.id, code) is False
        assert len(await credentials.list(event.id)) == 1

    async def test_unknown_code_cannot_be_revoked(self, credentials, make_event):
        event, _ = await make_event()
        assert await credentials.revoke(event.id, "NOPE0000") is False
