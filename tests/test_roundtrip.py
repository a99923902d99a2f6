# =============================================================================
# Delivery Round Trip Tests
# =============================================================================

import pytest

from conftest import (
    FakeIMAPServer,
    FakeOpener,
    FakePOP3Server,
    FakeSMTPServer,
    Maildrop,
    probe_bytes,
)
from mailcheck.config import CheckConfig
from mailcheck.core import Credentials
from mailcheck.protocol import AuthError
from mailcheck.roundtrip import run_round_trip

PROBE_ID = 1700000000000


def make_opener(smtp_drop: Maildrop, retrieve_drop: Maildrop | None = None) -> FakeOpener:
    retrieve_drop = smtp_drop if retrieve_drop is None else retrieve_drop
    return FakeOpener({
        "smtp.example.com": lambda: FakeSMTPServer(smtp_drop),
        "imap.example.com": lambda: FakeIMAPServer(retrieve_drop),
        "pop.example.com": lambda: FakePOP3Server(retrieve_drop),
    })


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_smtp_then_imap(self, sample_account, credentials, maildrop):
        opener = make_opener(maildrop)
        result = await run_round_trip(sample_account, credentials, PROBE_ID, opener=opener)

        assert result.matched
        assert result.via == "imap"
        assert result.sent.subject == f"Test email subject: {PROBE_ID}"
        assert result.received.subject == f"Test email subject: {PROBE_ID}"
        assert result.received.body_text == f"Test email text: {PROBE_ID}"
        assert result.deleted
        assert maildrop.messages == []
        assert opener.opened == [
            ("smtp.example.com", 587, "starttls"),
            ("imap.example.com", 993, "ssl"),
        ]

    @pytest.mark.asyncio
    async def test_smtp_then_pop3(self, sample_account, credentials, maildrop):
        opener = make_opener(maildrop)
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID,
            settings=CheckConfig(retrieve_via="pop3"),
            opener=opener,
        )

        assert result.matched
        assert result.via == "pop3"
        assert maildrop.messages == []
        assert opener.opened[1] == ("pop.example.com", 995, "ssl")
        assert opener.servers[1].received[-1] == b"QUIT"

    @pytest.mark.asyncio
    async def test_keep_message(self, sample_account, credentials, maildrop):
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID,
            settings=CheckConfig(delete_after_fetch=False),
            opener=make_opener(maildrop),
        )

        assert result.matched
        assert not result.deleted
        assert len(maildrop.messages) == 1

    @pytest.mark.asyncio
    async def test_probe_is_latest_of_many(self, sample_account, credentials):
        drop = Maildrop([probe_bytes(1), probe_bytes(2)])
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID, opener=make_opener(drop)
        )

        assert result.matched
        assert result.received.sequence_number == 3
        assert drop.messages == [probe_bytes(1), probe_bytes(2)]

    @pytest.mark.asyncio
    async def test_undelivered_probe_does_not_match(self, sample_account, credentials):
        elsewhere = Maildrop()
        inbox = Maildrop([probe_bytes(1)])
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID,
            settings=CheckConfig(delete_after_fetch=False),
            opener=make_opener(elsewhere, inbox),
        )

        assert not result.matched
        assert result.received.subject == "Test email subject: 1"

    @pytest.mark.asyncio
    async def test_unrelated_latest_message_is_not_deleted(self, sample_account, credentials):
        elsewhere = Maildrop()
        inbox = Maildrop([probe_bytes(1)])
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID, opener=make_opener(elsewhere, inbox)
        )

        assert not result.matched
        assert not result.deleted
        assert inbox.messages == [probe_bytes(1)]

    @pytest.mark.asyncio
    async def test_unrelated_latest_message_is_not_deleted_over_pop3(
        self, sample_account, credentials
    ):
        inbox = Maildrop([probe_bytes(1)])
        opener = make_opener(Maildrop(), inbox)
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID, via="pop3", opener=opener
        )

        assert not result.deleted
        assert b"DELE 1" not in opener.servers[1].received
        assert inbox.messages == [probe_bytes(1)]

    @pytest.mark.asyncio
    async def test_empty_mailbox(self, sample_account, credentials):
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID,
            opener=make_opener(Maildrop(), Maildrop()),
        )

        assert result.received is None
        assert not result.matched
        assert not result.deleted

    @pytest.mark.asyncio
    async def test_smtp_auth_failure_stops_early(self, sample_account, maildrop):
        opener = make_opener(maildrop)
        with pytest.raises(AuthError) as exc_info:
            await run_round_trip(
                sample_account, Credentials("test@example.com", "wrong"), PROBE_ID,
                opener=opener,
            )

        assert exc_info.value.code == 535
        assert [host for host, _, _ in opener.opened] == ["smtp.example.com"]
        assert maildrop.messages == []

    @pytest.mark.asyncio
    async def test_unknown_protocol(self, sample_account, credentials):
        with pytest.raises(ValueError):
            await run_round_trip(
                sample_account, credentials, PROBE_ID,
                settings=CheckConfig(retrieve_via="carrier-pigeon"),
            )

    @pytest.mark.asyncio
    async def test_via_overrides_settings(self, sample_account, credentials, maildrop):
        opener = make_opener(maildrop)
        result = await run_round_trip(
            sample_account, credentials, PROBE_ID,
            via="pop3",
            settings=CheckConfig(retrieve_via="imap"),
            opener=opener,
        )

        assert result.via == "pop3"
        assert result.matched
        assert opener.opened[1][0] == "pop.example.com"
