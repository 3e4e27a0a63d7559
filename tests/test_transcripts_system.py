"""
TutorMeter - Transcript Tests

Saved conversation messages and the usage embedded in them:
- Sequence numbering and history paging
- Metering on the transcript channel
- Dedupe against forwarded realtime events
- Transcript statistics
"""

from decimal import Decimal

import pytest

from tutormeter.core.errors import InvalidUsageError, SessionNotFoundError
from tutormeter.db import MessageRole
from tutormeter.usage import UsageChannel, UsageObservation


MINI = "gpt-4o-mini-realtime-preview"
SUB = "user-1"


def _response_done(response_id="resp_1", input_tokens=1000, output_tokens=500):
    return {
        "type": "response.done",
        "event_id": f"evt_{response_id}",
        "response": {
            "id": response_id,
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    }


class TestSaveMessage:
    """TranscriptRecorder.save_message."""

    @pytest.mark.asyncio
    async def test_messages_are_numbered_in_order(self, service):
        await service.sessions.create(SUB, "s1", MINI)

        first = await service.transcripts.save_message("s1", "user", "  Bonjour  ")
        second = await service.transcripts.save_message("s1", "assistant", "Bonjour ! Ça va ?")

        assert first.message.sequence_number == 1
        assert second.message.sequence_number == 2
        assert first.message.content == "Bonjour"
        assert first.message.role == MessageRole.USER
        assert first.message.subscriber_id == SUB
        assert first.usage is None

    @pytest.mark.asyncio
    async def test_sequence_numbers_are_per_session(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        await service.sessions.create(SUB, "s2", MINI)

        await service.transcripts.save_message("s1", "user", "one")
        saved = await service.transcripts.save_message("s2", "user", "two")

        assert saved.message.sequence_number == 1

    @pytest.mark.asyncio
    async def test_embedded_usage_is_metered_on_transcript_channel(self, service, store, metric):
        await service.sessions.create(SUB, "s1", MINI)

        saved = await service.transcripts.save_message(
            "s1", "assistant", "Très bien.", event_type="response.done", event_data=_response_done()
        )

        assert saved.usage.applied is True
        assert saved.message.input_tokens == 1000
        assert saved.message.output_tokens == 500
        assert saved.message.total_tokens == 1500
        assert saved.message.cost_total == Decimal("0.000450")
        assert saved.message.usage_event_key == "resp_1"

        session = await service.sessions.get("s1")
        assert session.metrics.total_tokens == 1500
        assert (await service.ledger.get_current(SUB)).tokens_used == 1500

        events = await store.list_usage_events("s1")
        assert [(e.channel, e.event_key) for e in events] == [("transcript", "resp_1")]
        assert metric(
            "tutormeter_tokens_total", model=MINI, type="input", channel="transcript"
        ) == 1000

    @pytest.mark.asyncio
    async def test_usage_forwarded_as_event_is_not_counted_again(self, service, store):
        await service.sessions.create(SUB, "s1", MINI)
        await service.ingestor.record_observation(
            "s1", UsageObservation.from_realtime_event(_response_done())
        )

        saved = await service.transcripts.save_message(
            "s1", "assistant", "Très bien.", event_data=_response_done()
        )

        assert saved.usage.duplicate is True
        assert saved.message.total_tokens == 0
        assert saved.message.cost_total == Decimal("0")
        assert saved.message.usage_event_key == "resp_1"
        assert (await service.ledger.get_current(SUB)).tokens_used == 1500

        events = await store.list_usage_events("s1")
        assert [e.channel for e in events] == [UsageChannel.REALTIME_EVENTS.value]

    @pytest.mark.asyncio
    async def test_event_forwarded_after_message_is_a_duplicate(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        await service.transcripts.save_message("s1", "assistant", "Très bien.", event_data=_response_done())

        outcome = await service.ingestor.record_observation(
            "s1", UsageObservation.from_realtime_event(_response_done())
        )

        assert outcome.duplicate is True
        assert (await service.ledger.get_current(SUB)).tokens_used == 1500

    @pytest.mark.asyncio
    async def test_event_without_usage_meters_nothing(self, service):
        await service.sessions.create(SUB, "s1", MINI)

        saved = await service.transcripts.save_message(
            "s1",
            "user",
            "Comment dit-on hello ?",
            event_type="conversation.item.input_audio_transcription.completed",
            event_data={"type": "conversation.item.input_audio_transcription.completed", "item_id": "item_1"},
        )

        assert saved.usage is None
        assert saved.message.total_tokens == 0
        assert saved.message.usage_event_key is None
        assert saved.message.event_data["item_id"] == "item_1"
        assert (await service.ledger.get_current(SUB)).tokens_used == 0

    @pytest.mark.asyncio
    async def test_zero_usage_meters_nothing(self, service, store):
        await service.sessions.create(SUB, "s1", MINI)

        saved = await service.transcripts.save_message(
            "s1", "assistant", "...", event_data=_response_done(input_tokens=0, output_tokens=0)
        )

        assert saved.usage is None
        assert await store.list_usage_events("s1") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role,content", [("narrator", "hi"), ("user", "   "), ("user", "")])
    async def test_invalid_messages_rejected(self, service, role, content):
        await service.sessions.create(SUB, "s1", MINI)

        with pytest.raises(InvalidUsageError):
            await service.transcripts.save_message("s1", role, content)

    @pytest.mark.asyncio
    async def test_invalid_embedded_usage_writes_nothing(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        event = {"type": "response.done", "response": {"id": "r", "usage": {"input_tokens": -5}}}

        with pytest.raises(InvalidUsageError):
            await service.transcripts.save_message("s1", "assistant", "hm", event_data=event)

        assert await service.transcripts.history("s1") == []

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError):
            await service.transcripts.save_message("nope", "user", "hello")

    @pytest.mark.asyncio
    async def test_saved_messages_are_counted(self, service, metric):
        await service.sessions.create(SUB, "s1", MINI)

        await service.transcripts.save_message("s1", "user", "a")
        await service.transcripts.save_message("s1", "user", "b")
        await service.transcripts.save_message("s1", "assistant", "c")

        assert metric("tutormeter_transcript_messages_total", role="user") == 2
        assert metric("tutormeter_transcript_messages_total", role="assistant") == 1


class TestTranscriptReads:
    """History and statistics."""

    @pytest.mark.asyncio
    async def test_history_pages_in_sequence_order(self, service):
        await service.sessions.create(SUB, "s1", MINI)
        for i in range(5):
            await service.transcripts.save_message("s1", "user", f"m{i}")

        everything = await service.transcripts.history("s1")
        page = await service.transcripts.history("s1", limit=2, offset=2)

        assert [m.content for m in everything] == ["m0", "m1", "m2", "m3", "m4"]
        assert [m.sequence_number for m in page] == [3, 4]

    @pytest.mark.asyncio
    async def test_history_rejects_bad_paging(self, service):
        await service.sessions.create(SUB, "s1", MINI)

        with pytest.raises(InvalidUsageError):
            await service.transcripts.history("s1", limit=0)
        with pytest.raises(InvalidUsageError):
            await service.transcripts.history("s1", offset=-1)

    @pytest.mark.asyncio
    async def test_stats(self, service, clock):
        await service.sessions.create(SUB, "s1", MINI)
        started = clock()
        await service.transcripts.save_message("s1", "system", "Tu es un tuteur de français.")
        await service.transcripts.save_message("s1", "user", "Bonjour")
        clock.advance(seconds=20)
        await service.transcripts.save_message(
            "s1", "assistant", "Bonjour !", event_data=_response_done("resp_1", 1000, 500)
        )
        await service.transcripts.save_message(
            "s1", "assistant", "Encore ?", event_data=_response_done("resp_2", 200, 100)
        )

        stats = await service.transcripts.stats("s1")

        assert stats.total_messages == 4
        assert stats.user_messages == 1
        assert stats.assistant_messages == 2
        assert stats.total_input_tokens == 1200
        assert stats.total_output_tokens == 600
        assert stats.total_tokens == 1800
        assert stats.total_cost == Decimal("0.000540")
        assert stats.first_message_at == started
        assert stats.last_message_at == clock()

    @pytest.mark.asyncio
    async def test_stats_of_empty_transcript(self, service):
        await service.sessions.create(SUB, "s1", MINI)

        stats = await service.transcripts.stats("s1")

        assert stats.total_messages == 0
        assert stats.total_cost == Decimal("0")
        assert stats.first_message_at is None

    @pytest.mark.asyncio
    async def test_reads_of_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError):
            await service.transcripts.history("nope")
        with pytest.raises(SessionNotFoundError):
            await service.transcripts.stats("nope")
