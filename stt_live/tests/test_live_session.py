"""
Tests for LiveTranscriptionSession turn aggregation.
"""

from stt_live.event_channel import ChannelEvents, SessionEventChannel
from stt_live.errors import ProtocolInconsistency
from stt_live.live_session import LiveTranscriptionSession
from stt_live.models import LegacyText, TurnEvent


def make_session():
    channel = SessionEventChannel("s1")
    updates, inconsistencies = [], []
    channel.subscribe(ChannelEvents.UPDATE, updates.append)
    channel.subscribe(ChannelEvents.INCONSISTENCY, inconsistencies.append)
    return LiveTranscriptionSession("s1", channel), updates, inconsistencies


class TestTurnUpdates:
    """Native turn events"""

    def test_partial_refined_final(self):
        session, updates, _ = make_session()

        session.apply_turn_update(TurnEvent(turn_order=0, transcript="hi"))
        session.apply_turn_update(TurnEvent(turn_order=0, transcript="hi there"))
        session.apply_turn_update(TurnEvent(
            turn_order=0,
            transcript="Hi there.",
            formatted_transcript="Hi there.",
            is_formatted=True,
            end_of_turn=True,
            end_of_turn_confidence=0.9,
        ))

        assert [(u.text, u.is_final) for u in updates] == [
            ("hi", False),
            ("hi there", False),
            ("Hi there.", True),
        ]
        assert updates[0].delta == "hi"
        assert updates[1].delta == " there"
        assert updates[2].delta is None
        assert updates[2].turn.is_formatted is True
        assert session.transcript == "Hi there."
        assert session.has_open_turn is False

    def test_utterance_outranks_transcript(self):
        session, updates, _ = make_session()

        session.apply_turn_update(TurnEvent(turn_order=0, transcript="hello wor", utterance="hello world"))
        update = session.apply_turn_update(TurnEvent(turn_order=0, transcript="hello world how"))

        assert update.text == "hello world"
        assert update.turn.transcript == "hello world how"

    def test_closed_turn_is_immutable(self):
        session, updates, inconsistencies = make_session()
        final = TurnEvent(turn_order=0, transcript="done", end_of_turn=True)

        session.apply_turn_update(final)
        assert session.apply_turn_update(final) is None
        assert session.apply_turn_update(TurnEvent(turn_order=0, transcript="reopened")) is None

        assert len(updates) == 1
        assert session.turns()[0].text == "done"
        assert len(inconsistencies) == 2
        assert isinstance(inconsistencies[0], ProtocolInconsistency)

    def test_older_turn_after_newer_is_ignored(self):
        session, updates, inconsistencies = make_session()

        session.apply_turn_update(TurnEvent(turn_order=3, transcript="later"))
        assert session.apply_turn_update(TurnEvent(turn_order=2, transcript="earlier")) is None

        assert len(updates) == 1
        assert len(inconsistencies) == 1

    def test_new_turn_closes_abandoned_turn(self):
        session, updates, _ = make_session()
        abandoned = []
        session.channel.subscribe(ChannelEvents.TURN_ABANDONED, abandoned.append)

        session.apply_turn_update(TurnEvent(turn_order=0, transcript="first"))
        session.apply_turn_update(TurnEvent(turn_order=1, transcript="second"))

        assert [(u.turn.turn_order, u.is_final) for u in updates] == [(0, False), (1, False)]
        assert [(t.turn_order, t.text, t.closed) for t in abandoned] == [(0, "first", True)]
        turns = session.turns()
        assert turns[0].closed is True
        assert session.open_turn.turn_order == 1
        assert session.get_stats()["turns_abandoned"] == 1
        assert session.apply_turn_update(TurnEvent(turn_order=0, transcript="late")) is None
        assert session.transcript == "first second"

    def test_without_channel(self):
        session = LiveTranscriptionSession("s1")

        update = session.apply(TurnEvent(turn_order=0, transcript="ok", end_of_turn=True))

        assert update.to_payload() == {
            "session_id": "s1",
            "text": "ok",
            "is_final": True,
            "turn_order": 0,
            "delta": "ok",
        }


class TestLegacyTranscription:
    """Whole-text providers adapted to synthetic turns"""

    def test_delta_fragments_merge_into_turns(self):
        session, updates, _ = make_session()

        session.apply(LegacyText(text="pack the m", is_delta=True))
        session.apply(LegacyText(text="the mic", is_delta=True))
        session.apply(LegacyText(text=None, is_final=True))
        session.apply(LegacyText(text="levels", is_delta=True))

        assert [(u.text, u.is_final, u.turn.turn_order) for u in updates] == [
            ("pack the m", False, 0),
            ("pack the mic", False, 0),
            ("pack the mic", True, 0),
            ("levels", False, 1),
        ]
        assert session.transcript == "pack the mic levels"

    def test_rollback_is_suppressed(self):
        session, updates, _ = make_session()

        session.apply(LegacyText(text="pack the mac and the mic levels"))
        session.apply(LegacyText(text="pack the mac"))

        assert updates[-1].text == "pack the mac and the mic levels"
        assert session.rollbacks_suppressed == 1

    def test_final_shorter_text_is_accepted(self):
        session, updates, _ = make_session()

        session.apply(LegacyText(text="pack the mac and the mic levels"))
        session.apply(LegacyText(text="pack the mac", is_final=True))

        assert updates[-1].text == "pack the mac"
        assert updates[-1].is_final is True
        assert session.rollbacks_suppressed == 0

    def test_duplicate_final_maps_to_closed_turn(self):
        session, updates, _ = make_session()

        session.apply(LegacyText(text="hello", is_final=True))
        event = session.normalize_legacy_transcription(LegacyText(text="hello", is_final=True))

        assert event.turn_order == 0
        assert session.apply_turn_update(event) is None
        assert len(session.turns()) == 1
        assert len(updates) == 1

    def test_different_text_opens_new_turn(self):
        session, _, _ = make_session()

        session.apply(LegacyText(text="hello", is_final=True))
        event = session.normalize_legacy_transcription(LegacyText(text="goodbye"))

        assert event.turn_order == 1
        assert event.end_of_turn is False

    def test_bare_final_marker_without_open_turn(self):
        session, updates, _ = make_session()

        assert session.normalize_legacy_transcription(LegacyText(text=None, is_final=True)) is None
        assert session.apply(LegacyText(text=None, is_final=True)) is None
        assert updates == []
