import pytest

from voice_engine.config import TurnTakingConfig
from voice_engine.turns import (
    REASON_COUNTDOWN,
    REASON_MANUAL,
    REASON_MAX_ACCUMULATION,
    REASON_MUTED,
    REASON_NATURAL_BREAK,
    TurnTakingEngine,
    countdown_multiplier,
    is_natural_break,
    score_end_of_turn,
    should_auto_send,
)

QUESTION = "How are you doing today and what are your thoughts?"
LONG_PLAIN = "so we spent the whole weekend moving all of the furniture into the new apartment downtown"
FOLLOW_UP = "I think the living room finally feels like home"


@pytest.fixture
def engine(scheduler, sent):
    engine = TurnTakingEngine(TurnTakingConfig(), scheduler, lambda text, reason: sent.append((text, reason)))
    engine.set_auto_send(True)
    return engine


class TestScoring:
    def test_long_silence_and_punctuation_clamp_to_100(self):
        score = score_end_of_turn("Thank you so much for all of your help today.", 4000, 2000)
        assert score.value == 100
        assert score.is_end_of_turn is True
        assert score.factors.silence_score == 2.0
        assert score.factors.has_punctuation is True

    def test_short_incomplete_fragment_clamps_to_zero(self):
        score = score_end_of_turn("I was going to", 0, 2000)
        assert score.value == 0
        assert score.is_end_of_turn is False
        assert score.factors.has_incomplete_pattern is True
        assert score.factors.word_count == 4

    def test_short_question_reaches_threshold(self):
        # 20 silence + 25 punctuation + 15 question
        score = score_end_of_turn("What time does the store open?", 1000, 2000)
        assert score.value == pytest.approx(60)
        assert score.is_end_of_turn is True

    def test_trailing_comma_penalised(self):
        score = score_end_of_turn("I went to the store and bought some milk,", 2000, 2000)
        assert score.value == pytest.approx(30)
        assert score.factors.has_punctuation is False

    def test_completion_phrase(self):
        score = score_end_of_turn("That sounds good okay", 0, 2000)
        assert score.factors.has_complete_pattern is True
        assert score.value == pytest.approx(5)

    def test_discourse_marker_bonus(self):
        plain = score_end_of_turn("the meeting went well for the whole team", 0, 2000)
        marked = score_end_of_turn("I think the meeting went well for the team", 0, 2000)
        assert marked.value - plain.value == pytest.approx(10)


class TestAutoSendGate:
    @pytest.mark.parametrize("text", [
        "we should probably look at the budget numbers again before the meeting on friday afternoon",
        "my sister told me the restaurant on the corner closed down last month after twenty years",
        "the report covers revenue growth churn and the hiring plan for the next two quarters",
    ])
    def test_fifteen_words_always_pass(self, text):
        assert len(text.split()) >= 15
        assert should_auto_send(text) is True

    @pytest.mark.parametrize("text", [
        "I wanted to tell you about the new project and",
        "When we talk about the real problem here I am",
        "There are lots of ways to fix this and I can",
        "Let me explain what happened yesterday at the office because",
    ])
    def test_trailing_incomplete_blocks(self, text):
        assert len(text.split()) >= 8
        assert should_auto_send(text) is False

    def test_short_utterance_blocked(self):
        assert should_auto_send("I am") is False
        assert should_auto_send("Is it ready?") is False

    def test_eight_word_question_passes(self):
        assert should_auto_send("Can you tell me where the station is?") is True

    def test_ten_words_need_natural_ending(self):
        assert should_auto_send("I moved the boxes into the garage this morning.") is False
        assert should_auto_send("I moved all the boxes into the garage this morning.") is True
        assert should_auto_send("I moved all the boxes into the garage this morning") is False

    def test_empty(self):
        assert should_auto_send("   ") is False


class TestNaturalBreak:
    def test_fragment_punctuation(self):
        assert is_natural_break("is that right?", "so is that right?")
        assert is_natural_break("we are done here.", "we are done here.")

    def test_conversation_ender(self):
        assert is_natural_break("thank you", "ok thank you")

    def test_greeting_and_request_read_whole_utterance(self):
        assert is_natural_break("there", "hello there")
        assert is_natural_break("the weather today", "can you tell me the weather today")

    def test_mid_sentence(self):
        assert not is_natural_break("and then we went", "and then we went")


def test_countdown_multiplier_non_increasing():
    multipliers = [countdown_multiplier(c) for c in (0.1, 0.6, 0.61, 0.8, 0.81, 1.0)]
    assert multipliers == sorted(multipliers, reverse=True)
    assert countdown_multiplier(0.9) == 0.7
    assert countdown_multiplier(0.7) == 0.85
    assert countdown_multiplier(0.3) == 1.2


class TestEngine:
    def test_question_sends_immediately(self, engine, sent):
        engine.handle_final(QUESTION)
        assert sent == [(QUESTION, REASON_NATURAL_BREAK)]
        assert engine.transcript == ""
        assert engine.countdown is None

    def test_incomplete_stays_pending(self, engine, sent, scheduler):
        engine.handle_final("I am")
        assert sent == []
        assert engine.transcript == "I am "
        assert engine.max_timer_armed

    def test_max_accumulation_forces_send_at_boundary(self, engine, sent, scheduler):
        engine.handle_final("I am")
        scheduler.advance(5)
        engine.handle_final("going to the")
        scheduler.advance(9)
        assert sent == []
        scheduler.advance(1)
        assert sent == [("I am going to the", REASON_MAX_ACCUMULATION)]
        assert scheduler.now == 15
        assert not engine.max_timer_armed

    def test_countdown_superseded_by_next_final(self, engine, sent, scheduler):
        engine.handle_final(LONG_PLAIN)
        assert sent == []
        assert engine.countdown.remaining_seconds == 3
        assert engine.auto_send_reason == "smart detection (15% confidence)"

        scheduler.advance(2)
        assert engine.countdown.remaining_seconds == 1
        engine.handle_final(FOLLOW_UP)
        # 40 silence + 15 length + 10 discourse marker → 0.85 × 2.0s
        assert engine.countdown.remaining_seconds == 2
        assert engine.countdown.duration_sec == pytest.approx(1.7)
        assert engine.auto_send_reason == "smart detection (65% confidence)"
        # one countdown tick plus the max-accumulation timer
        assert scheduler.active == 2

        scheduler.advance(1)
        assert sent == []
        scheduler.advance(1)
        assert sent == [(f"{LONG_PLAIN} {FOLLOW_UP}", REASON_COUNTDOWN)]
        scheduler.advance(30)
        assert len(sent) == 1

    def test_interim_does_not_touch_countdown(self, engine, scheduler):
        engine.handle_final(LONG_PLAIN)
        before = engine.countdown
        engine.handle_interim("and then")
        assert engine.countdown is before
        assert engine.interim_transcript == "and then"

    def test_mute_forces_one_send_next_tick(self, engine, sent, scheduler):
        engine.handle_final("I am")
        engine.set_muted(True)
        assert sent == []
        engine.set_muted(True)
        scheduler.advance(0)
        assert sent == [("I am", REASON_MUTED)]
        scheduler.advance(30)
        assert len(sent) == 1

    def test_muted_text_is_not_evaluated(self, engine, sent):
        engine.set_muted(True)
        engine.handle_final(QUESTION)
        assert sent == []
        assert engine.transcript.strip() == QUESTION

    def test_manual_send_ignores_gate(self, engine, sent):
        engine.handle_final("I am")
        assert engine.send_now() == "I am"
        assert sent == [("I am", REASON_MANUAL)]
        assert engine.send_now() is None

    def test_reset_clears_transcripts_and_timers(self, engine, sent, scheduler):
        engine.handle_interim("partial")
        engine.handle_final(LONG_PLAIN)
        engine.reset()
        assert engine.transcript == ""
        assert engine.interim_transcript == ""
        assert engine.countdown is None
        scheduler.advance(60)
        assert sent == []

    def test_without_auto_send_nothing_is_automatic(self, scheduler, sent):
        engine = TurnTakingEngine(TurnTakingConfig(), scheduler, lambda text, reason: sent.append((text, reason)))
        engine.handle_final(QUESTION)
        scheduler.advance(60)
        assert sent == []
        assert engine.has_pending

    def test_speaker_prefix(self, engine, sent):
        engine.handle_final("I am", speaker="A")
        assert engine.transcript == "[A] I am "
