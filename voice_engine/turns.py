"""
turns.py — End-of-turn detection and auto-send policy
=====================================================
Speech recognizers never say "the user is done".  This module decides it
from the accumulated text alone, in three layers:

  score_end_of_turn()  0–100 likelihood that the utterance is complete
  should_auto_send()   minimum-content gate every automatic send must pass
  is_natural_break()   fragment-level cues that justify sending right away

TurnTakingEngine owns the accumulated utterance and the two timers
(countdown, max-accumulation) and applies the policy on every final
transcript:

  1. gate passes AND natural break  → send now
  2. gate passes                     → (re)start countdown, duration scaled by score
  3. otherwise                       → wait; the max-accumulation timer forces a send

All rule tables are module-level data so they can be tuned and tested
without touching control flow.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Optional

from voice_engine.config import TurnTakingConfig
from voice_engine.scheduling import Scheduler, Timer

log = logging.getLogger("voice_engine.turns")

# Send reasons (logged and passed to on_send)
REASON_NATURAL_BREAK = "natural conversation break"
REASON_COUNTDOWN = "enhanced end-of-turn detection"
REASON_MAX_ACCUMULATION = "max accumulation time"
REASON_MUTED = "muted - artificial silence"
REASON_MANUAL = "manual"

FORCED_REASONS = frozenset({REASON_MAX_ACCUMULATION, REASON_MUTED})

COUNTDOWN_TICK_SEC = 1.0


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

def _trailing_word_rule(words: frozenset[str]) -> re.Pattern:
    alternatives = "|".join(sorted(words, key=lambda w: (-len(w), w)))
    return re.compile(rf"\b(?:{alternatives})$", re.IGNORECASE | re.ASCII)


def _trailing_phrase_rule(phrases: tuple[str, ...]) -> re.Pattern:
    return re.compile(rf"\b(?:{'|'.join(phrases)})\s*$", re.IGNORECASE | re.ASCII)


# Trailing conjunctions and prepositions: the speaker is mid-clause.
_TRAILING_CONNECTIVES: frozenset[str] = frozenset({
    "and", "but", "or", "if", "when", "then", "so", "because", "since",
    "while", "although", "though", "unless", "until", "where", "after",
    "before", "with", "without", "about", "for", "of", "in", "on", "at",
    "by", "to", "from", "up", "down", "out", "off",
})

# Hedges and intensifiers that only ever lead into more words.
_TRAILING_HEDGES: frozenset[str] = frozenset({
    "now", "still", "really", "just", "only", "even", "also", "very",
    "quite", "actually", "basically", "literally", "definitely",
    "probably", "maybe", "perhaps",
})

# Single trailing words that reliably mark an unfinished thought.
_TRAILING_DANGLERS: frozenset[str] = frozenset({
    "code", "did", "not", "you", "me", "getting", "making", "trying",
    "going", "working", "talking", "saying", "thinking", "looking",
    "still", "chopping", "resisting",
})

_INCOMPLETE_TO_BE: tuple[str, ...] = (
    "i am", "i'm", "you are", "you're", "he is", "she is", "it is",
    "we are", "they are", "there is", "there are",
)

_INCOMPLETE_MODAL: tuple[str, ...] = (
    "i can", "you can", "he can", "she can", "we can", "they can",
    "i should", "you should", "we should", "they should",
    "i will", "you will", "we will", "they will",
)

INCOMPLETE_PATTERNS: tuple[re.Pattern, ...] = (
    _trailing_word_rule(_TRAILING_CONNECTIVES),
    _trailing_phrase_rule(_INCOMPLETE_TO_BE),
    _trailing_phrase_rule(_INCOMPLETE_MODAL),
)

BLOCK_PATTERNS: tuple[re.Pattern, ...] = (
    _trailing_word_rule(_TRAILING_CONNECTIVES | _TRAILING_HEDGES),
    _trailing_phrase_rule(_INCOMPLETE_TO_BE),
    _trailing_phrase_rule(_INCOMPLETE_MODAL),
    _trailing_word_rule(_TRAILING_DANGLERS),
)

COMPLETE_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"\b(thank you|thanks|that's all|perfect|exactly|right|correct|done|finished)\b$", re.I),
    re.compile(r"\b(goodbye|bye|see you|talk to you later)\b$", re.I),
    re.compile(r"\b(yes|no|okay|alright|sure|absolutely|definitely)\b$", re.I),
)

NATURAL_FLOW_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"\b(you know|I think|I believe|in my opinion|basically|essentially|overall|in conclusion)\b.*$", re.I),
    re.compile(r"\b(that's|thats)\b.*\b(it|all|right|correct|good|what I mean)\b$", re.I),
)

NATURAL_ENDING_WORDS = re.compile(
    r"\b(thanks|thank you|that's all|done|finished|complete|exactly|right|correct|absolutely"
    r"|definitely|certainly|perfect|excellent|great|okay|alright)$",
    re.I,
)

CONVERSATION_ENDERS = re.compile(
    r"\b(thanks|thank you|that's all|goodbye|bye|see you|done|finished|period|end|stop)\b$", re.I,
)
GREETING_OPENERS = re.compile(r"^(hello|hi|hey|good morning|good afternoon|good evening)\b.*[.!]?$", re.I | re.S)
REQUEST_OPENERS = re.compile(
    r"^(please|can you|could you|would you|tell me|show me|explain|help me)\b.{10,}[.!?]?$", re.I | re.S,
)

_ENDS_SENTENCE = re.compile(r"[.!?]$")
_ENDS_CONTINUATION = re.compile(r"[,;:]$")


def word_count(text: str) -> int:
    return len(text.split())


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoreFactors:
    silence_score: float
    word_count: int
    has_punctuation: bool
    has_complete_pattern: bool
    has_incomplete_pattern: bool


@dataclass(frozen=True)
class EndOfTurnScore:
    value: float
    is_end_of_turn: bool
    factors: ScoreFactors

    @property
    def confidence(self) -> float:
        return self.value / 100


def score_end_of_turn(
    text: str,
    silence_ms: float,
    silence_threshold_ms: float,
    threshold: float = 60.0,
) -> EndOfTurnScore:
    """Weighted 0–100 estimate that ``text`` is a finished turn.

    silence ratio (capped at 2x) × 40, terminal punctuation +25 / −10,
    completion phrase +20, incompletion phrase −25, length +15 (≥15 words)
    or −15 (<5 words), question of ≥5 words +15, discourse marker +10.
    """
    trimmed = text.strip()
    words = word_count(trimmed)

    silence_score = min(max(silence_ms, 0.0) / silence_threshold_ms, 2.0) if silence_threshold_ms > 0 else 2.0
    score = silence_score * 40

    has_punctuation = bool(_ENDS_SENTENCE.search(trimmed))
    if has_punctuation:
        score += 25
    elif _ENDS_CONTINUATION.search(trimmed):
        score -= 10

    has_complete = any(p.search(trimmed) for p in COMPLETE_PATTERNS)
    has_incomplete = any(p.search(trimmed) for p in INCOMPLETE_PATTERNS)
    if has_complete:
        score += 20
    if has_incomplete:
        score -= 25

    if words >= 15:
        score += 15
    elif words < 5:
        score -= 15

    if trimmed.endswith("?") and words >= 5:
        score += 15

    if any(p.search(trimmed) for p in NATURAL_FLOW_PATTERNS):
        score += 10

    value = max(0.0, min(100.0, score))
    log.debug(
        "event=end_of_turn_scored score=%.1f silence_ms=%.0f words=%d punct=%s complete=%s incomplete=%s",
        value, silence_ms, words, has_punctuation, has_complete, has_incomplete,
    )
    return EndOfTurnScore(
        value=value,
        is_end_of_turn=value >= threshold,
        factors=ScoreFactors(
            silence_score=silence_score,
            word_count=words,
            has_punctuation=has_punctuation,
            has_complete_pattern=has_complete,
            has_incomplete_pattern=has_incomplete,
        ),
    )


def countdown_multiplier(confidence: float) -> float:
    """Faster countdown for confident scores, slower for doubtful ones."""
    if confidence > 0.8:
        return 0.7
    if confidence > 0.6:
        return 0.85
    return 1.2


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------

def should_auto_send(text: str, min_words: int = 8) -> bool:
    """Minimum-content gate for any automatic send.

    Rejects anything under ``min_words`` or ending in an incomplete
    fragment.  Accepts ≥15 words outright, ≥10 words with a natural
    ending, or ≥min_words ending in '?'.
    """
    trimmed = text.strip()
    if not trimmed:
        return False

    words = word_count(trimmed)
    if words < min_words:
        return False

    for pattern in BLOCK_PATTERNS:
        if pattern.search(trimmed):
            log.debug("event=auto_send_blocked rule=%s text=%.50r", pattern.pattern[:24], trimmed[-50:])
            return False

    if words >= 15:
        return True
    natural_ending = bool(_ENDS_SENTENCE.search(trimmed) or NATURAL_ENDING_WORDS.search(trimmed))
    if words >= 10 and natural_ending:
        return True
    return trimmed.endswith("?")


def is_natural_break(fragment: str, utterance: str) -> bool:
    """Cues that the just-finished fragment closes the turn.

    Punctuation and explicit enders are read from the fragment; greeting
    and request openers are read from the whole utterance.
    """
    frag = fragment.strip()
    full = utterance.strip()
    return bool(
        frag.endswith("?")
        or frag.endswith((".", "!"))
        or CONVERSATION_ENDERS.search(frag)
        or GREETING_OPENERS.search(full)
        or REQUEST_OPENERS.search(full)
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@dataclass
class CountdownTimer:
    remaining_seconds: int
    reason: str
    duration_sec: float
    cancellable: bool = True


class TurnTakingEngine:
    """Accumulates final transcripts and decides when a turn is over.

    Every method is meant to run inside the session's decision loop; the
    scheduler delivers timer expiries there too, so no two decisions ever
    interleave.  ``on_send(text, reason)`` is called synchronously with the
    trimmed utterance after the state has already been cleared.
    """

    def __init__(
        self,
        config: TurnTakingConfig,
        scheduler: Scheduler,
        on_send: Callable[[str, str], None],
    ):
        self.config = config
        self._scheduler = scheduler
        self._on_send = on_send

        self.transcript = ""
        self.interim_transcript = ""
        self.muted = False
        self.auto_send = False
        self.countdown: Optional[CountdownTimer] = None
        self.last_score: Optional[EndOfTurnScore] = None
        self.sends = 0

        self._countdown_tick: Optional[Timer] = None
        self._max_timer: Optional[Timer] = None
        self._mute_timer: Optional[Timer] = None
        self._last_activity: Optional[float] = None

    # -- Read-only views --

    @property
    def auto_send_countdown(self) -> Optional[int]:
        return self.countdown.remaining_seconds if self.countdown else None

    @property
    def auto_send_reason(self) -> Optional[str]:
        return self.countdown.reason if self.countdown else None

    @property
    def has_pending(self) -> bool:
        return bool(self.transcript.strip())

    @property
    def max_timer_armed(self) -> bool:
        return self._max_timer is not None

    # -- Inputs --

    def set_auto_send(self, enabled: bool) -> None:
        """Continuous mode on/off.  Off keeps accumulating but never sends on its own."""
        if self.auto_send == enabled:
            return
        self.auto_send = enabled
        if not enabled:
            self.cancel_timers()
        elif self.has_pending and not self.muted:
            self._ensure_max_timer()
        log.info("event=auto_send_changed enabled=%s", enabled)

    def handle_interim(self, text: str) -> None:
        if not text:
            return
        self.interim_transcript = text
        self._last_activity = self._scheduler.time()

    def handle_final(self, text: str, speaker: Optional[str] = None) -> None:
        fragment = text.strip()
        if not fragment:
            return

        now = self._scheduler.time()
        previous_activity = self._last_activity
        self._last_activity = now

        prefix = f"[{speaker}] " if speaker and self.config.label_speakers else ""
        self.transcript += prefix + fragment + " "
        self.interim_transcript = ""

        if not self.auto_send or self.muted:
            log.debug("event=final_accumulated auto_send=%s muted=%s words=%d",
                      self.auto_send, self.muted, word_count(self.transcript))
            return

        utterance = self.transcript
        gate = should_auto_send(utterance, self.config.min_words)

        if gate and is_natural_break(fragment, utterance):
            log.info("event=immediate_send reason=natural_break words=%d", word_count(utterance))
            self._dispatch(REASON_NATURAL_BREAK)
            return

        if gate:
            self._cancel_countdown()
            silence_ms = (now - previous_activity) * 1000 if previous_activity is not None else 0.0
            base_sec = self.config.silence_threshold_sec
            score = score_end_of_turn(utterance, silence_ms, base_sec * 1000, self.config.end_of_turn_threshold)
            self.last_score = score
            duration = base_sec * countdown_multiplier(score.confidence)
            self._start_countdown(duration, f"smart detection ({_round_half_up(score.value)}% confidence)")
        else:
            log.debug("event=auto_send_deferred words=%d", word_count(utterance))

        self._ensure_max_timer()

    def set_muted(self, muted: bool) -> None:
        """Muting with a pending utterance queues exactly one forced send."""
        if muted == self.muted:
            return
        self.muted = muted
        log.info("event=mute_changed muted=%s pending=%s", muted, self.has_pending)
        if muted:
            if self.auto_send and self.has_pending and self._mute_timer is None:
                self._cancel_countdown()
                self._mute_timer = self._scheduler.call_later(0, self._on_mute_send)
        elif self.auto_send and self.has_pending:
            self._ensure_max_timer()

    def send_now(self, reason: str = REASON_MANUAL) -> Optional[str]:
        """Dispatch whatever has accumulated, gate or not."""
        return self._dispatch(reason)

    def reset(self) -> None:
        self.cancel_timers()
        self.transcript = ""
        self.interim_transcript = ""
        self.last_score = None
        self._last_activity = None
        log.debug("event=turn_reset")

    # -- Timers --

    def _start_countdown(self, duration: float, reason: str) -> None:
        self.countdown = CountdownTimer(remaining_seconds=math.ceil(duration), reason=reason, duration_sec=duration)
        log.info("event=countdown_started duration_sec=%.2f remaining=%d reason=%r",
                 duration, self.countdown.remaining_seconds, reason)
        self._countdown_tick = self._scheduler.call_later(COUNTDOWN_TICK_SEC, self._on_countdown_tick)

    def _cancel_countdown(self) -> None:
        if self._countdown_tick is not None:
            self._countdown_tick.cancel()
            self._countdown_tick = None
            log.debug("event=countdown_cancelled")
        self.countdown = None

    def _on_countdown_tick(self) -> None:
        self._countdown_tick = None
        if self.countdown is None:
            return
        self.countdown.remaining_seconds -= 1
        if self.countdown.remaining_seconds > 0:
            self._countdown_tick = self._scheduler.call_later(COUNTDOWN_TICK_SEC, self._on_countdown_tick)
            return

        self.countdown = None
        if not should_auto_send(self.transcript, self.config.min_words):
            log.info("event=countdown_expired action=wait reason=gate_not_met")
            return
        self._dispatch(REASON_COUNTDOWN)

    def _ensure_max_timer(self) -> None:
        if self._max_timer is not None or not self.has_pending:
            return
        self._max_timer = self._scheduler.call_later(self.config.max_accumulation_sec, self._on_max_accumulation)
        log.debug("event=max_timer_armed sec=%.1f", self.config.max_accumulation_sec)

    def _on_max_accumulation(self) -> None:
        self._max_timer = None
        if not self.has_pending:
            return
        log.info("event=forced_send reason=max_accumulation sec=%.1f words=%d",
                 self.config.max_accumulation_sec, word_count(self.transcript))
        self._dispatch(REASON_MAX_ACCUMULATION)

    def _on_mute_send(self) -> None:
        self._mute_timer = None
        if not self.has_pending:
            return
        log.info("event=forced_send reason=muted words=%d", word_count(self.transcript))
        self._dispatch(REASON_MUTED)

    def cancel_timers(self) -> None:
        self._cancel_countdown()
        for name in ("_max_timer", "_mute_timer"):
            timer = getattr(self, name)
            if timer is not None:
                timer.cancel()
                setattr(self, name, None)

    def _dispatch(self, reason: str) -> Optional[str]:
        text = self.transcript.strip()
        self.cancel_timers()
        self.transcript = ""
        self.interim_transcript = ""
        self.last_score = None
        self._last_activity = self._scheduler.time()
        if not text:
            return None
        self.sends += 1
        log.info("event=turn_sent reason=%r words=%d chars=%d forced=%s",
                 reason, word_count(text), len(text), reason in FORCED_REASONS)
        self._on_send(text, reason)
        return text
