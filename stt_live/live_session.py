"""
Live transcription session (turn aggregator).

Consumes normalized provider events in arrival order and emits one canonical
TranscriptUpdate per accepted event on the session channel.

Turn slots move OPEN(partial) -> OPEN(refined) -> CLOSED(final). A closed
slot is immutable; later events for it are reported as inconsistencies and
ignored. Whole-text (legacy) providers are adapted to synthetic turns first.
"""

import logging
from collections import OrderedDict
from typing import Dict, Optional

from .errors import ProtocolInconsistency
from .event_channel import ChannelEvents, SessionEventChannel
from .models import LegacyText, ProviderEvent, TranscriptUpdate, Turn, TurnEvent, TurnEventType
from .transcript_text import initial_text, is_rollback, resolve_text

logger = logging.getLogger(__name__)


def _text_delta(previous: str, current: str) -> Optional[str]:
    if not current or current == previous:
        return None
    if not previous:
        return current
    if current.startswith(previous):
        return current[len(previous):]
    return None


class LiveTranscriptionSession:
    """
    Aggregates turn events for one session.

    Invariants:
        - turn_order never decreases
        - at most one turn is open
        - a closed turn's text never changes
    """

    def __init__(self, session_id: str, channel: Optional[SessionEventChannel] = None):
        self.session_id = session_id
        self.channel = channel

        self._turns: "OrderedDict[int, Turn]" = OrderedDict()
        self._open_turn: Optional[Turn] = None
        self._latest_order: Optional[int] = None

        # Synthetic turn state for whole-text providers
        self._legacy_order = -1
        self._legacy_text = ""
        self._legacy_open = False
        self._last_final_text: Optional[str] = None

        # Metrics
        self.events_applied = 0
        self.updates_emitted = 0
        self.inconsistencies = 0
        self.rollbacks_suppressed = 0
        self.turns_abandoned = 0

    # ========================================================================
    # Turn events
    # ========================================================================

    def apply_turn_update(self, event: TurnEvent) -> Optional[TranscriptUpdate]:
        """
        Ingest one turn event.

        Returns:
            TranscriptUpdate emitted for the event, or None if it was ignored
        """
        order = event.turn_order

        if self._latest_order is not None and order < self._latest_order:
            self._report_inconsistency(
                f"Event for turn {order} arrived after turn {self._latest_order} opened"
            )
            return None

        turn = self._turns.get(order)
        if turn is not None and turn.closed:
            self._report_inconsistency(f"Event for closed turn {order} ignored")
            return None

        if turn is None:
            self._close_abandoned_turn(order)
            turn = Turn(turn_order=order)
            self._turns[order] = turn
            self._open_turn = turn
            self._latest_order = order

        previous_text = turn.text

        if event.transcript:
            turn.transcript = event.transcript
        if event.utterance:
            turn.utterance = event.utterance
        if event.formatted_transcript:
            turn.formatted_transcript = event.formatted_transcript
            turn.is_formatted = True
        elif event.is_formatted and turn.formatted_transcript:
            turn.is_formatted = True
        turn.end_of_turn_confidence = event.end_of_turn_confidence

        if event.end_of_turn:
            turn.end_of_turn = True
            self._open_turn = None

        self.events_applied += 1
        text = turn.text
        update = TranscriptUpdate(
            session_id=self.session_id,
            text=text,
            is_final=turn.end_of_turn,
            turn=turn,
            delta=_text_delta(previous_text, text),
        )

        if turn.end_of_turn:
            logger.info(f"📝 [{self.session_id}] Turn {order} final: '{text}'")
        else:
            logger.debug(f"[{self.session_id}] Turn {order} partial: '{text}'")

        self.updates_emitted += 1
        if self.channel is not None:
            self.channel.emit(ChannelEvents.UPDATE, update)
        return update

    def _close_abandoned_turn(self, new_order: int):
        previous = self._open_turn
        if previous is None or previous.turn_order >= new_order:
            return
        previous.end_of_turn = True
        self._open_turn = None
        self.turns_abandoned += 1
        logger.warning(
            f"⚠️ [{self.session_id}] Turn {previous.turn_order} abandoned without end_of_turn "
            f"(turn {new_order} opened)"
        )
        if self.channel is not None:
            self.channel.emit(ChannelEvents.TURN_ABANDONED, previous)

    def _report_inconsistency(self, message: str):
        self.inconsistencies += 1
        error = ProtocolInconsistency(message)
        logger.warning(f"⚠️ [{self.session_id}] {message}")
        if self.channel is not None:
            self.channel.emit(ChannelEvents.INCONSISTENCY, error)

    # ========================================================================
    # Whole-text providers
    # ========================================================================

    def normalize_legacy_transcription(self, legacy: LegacyText) -> Optional[TurnEvent]:
        """
        Map a whole-text event onto a synthetic turn event.

        Text differing from the last final value opens a new turn_order;
        matching text merges into the current turn. Deltas are merged, server
        text replaces the in-flight text, and rollbacks keep the longer text.

        Returns:
            TurnEvent, or None for a bare end marker with no open turn
        """
        text = legacy.text or None
        delta = text if legacy.is_delta else None
        server_text = None if legacy.is_delta else text

        if not self._legacy_open:
            if text is None:
                return None
            if server_text is not None and server_text == self._last_final_text:
                # Duplicate of the turn that just closed
                return self._legacy_event(self._legacy_order, server_text, True, legacy)

            self._legacy_order += 1
            self._legacy_text = initial_text(delta=delta, server_text=server_text)
            self._legacy_open = True
        else:
            candidate = resolve_text(self._legacy_text, delta=delta, server_text=server_text)
            if is_rollback(self._legacy_text, candidate, legacy.is_final, server_text is not None):
                self.rollbacks_suppressed += 1
                logger.debug(
                    f"[{self.session_id}] Rollback suppressed: '{candidate}' < '{self._legacy_text}'"
                )
            else:
                self._legacy_text = candidate

        event = self._legacy_event(self._legacy_order, self._legacy_text, legacy.is_final, legacy)

        if legacy.is_final:
            self._legacy_open = False
            self._last_final_text = self._legacy_text
            self._legacy_text = ""

        return event

    @staticmethod
    def _legacy_event(order: int, text: str, is_final: bool, legacy: LegacyText) -> TurnEvent:
        return TurnEvent(
            turn_order=order,
            transcript=text,
            end_of_turn=is_final,
            end_of_turn_confidence=1.0 if is_final else 0.0,
            event_type=TurnEventType.TURN_UPDATE,
            provider=legacy.provider,
            latency_ms=legacy.latency_ms,
        )

    def apply_legacy_transcription(self, legacy: LegacyText) -> Optional[TranscriptUpdate]:
        event = self.normalize_legacy_transcription(legacy)
        if event is None:
            return None
        return self.apply_turn_update(event)

    def apply(self, event: ProviderEvent) -> Optional[TranscriptUpdate]:
        """Dispatch either variant of a normalized provider event."""
        if isinstance(event, TurnEvent):
            return self.apply_turn_update(event)
        return self.apply_legacy_transcription(event)

    # ========================================================================
    # Inspection
    # ========================================================================

    @property
    def has_open_turn(self) -> bool:
        return self._open_turn is not None

    @property
    def open_turn(self) -> Optional[Turn]:
        return self._open_turn

    @property
    def transcript(self) -> str:
        """Running transcript: every turn's text in order, space-joined."""
        return " ".join(turn.text for turn in self._turns.values() if turn.text)

    def turns(self) -> Dict[int, Turn]:
        return dict(self._turns)

    def get_stats(self) -> dict:
        return {
            "turns": len(self._turns),
            "open_turn": self._open_turn.turn_order if self._open_turn else None,
            "latest_turn_order": self._latest_order,
            "events_applied": self.events_applied,
            "updates_emitted": self.updates_emitted,
            "inconsistencies": self.inconsistencies,
            "rollbacks_suppressed": self.rollbacks_suppressed,
            "turns_abandoned": self.turns_abandoned,
        }
