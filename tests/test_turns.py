"""
Tests for turn reconstruction: accumulator and completion policy.
"""

import pytest

from conftest import FakeScheduler
from polyglot.config import TurnPolicyConfig
from polyglot.models import Speaker
from polyglot.turns import CompletionPolicy, TurnAccumulator


class TestTurnAccumulator:

    def test_fragments_concatenate_in_arrival_order(self):
        acc = TurnAccumulator()
        for fragment in ["I ", "went ", "to ", "the ", "store"]:
            acc.append_fragment(Speaker.USER, fragment)

        turn = acc.seal_turn(Speaker.USER)

        assert turn.speaker is Speaker.USER
        assert turn.text == "I went to the store"

    def test_append_returns_untrimmed_buffer(self):
        acc = TurnAccumulator()
        acc.append_fragment(Speaker.ASSISTANT, " Bon")
        assert acc.append_fragment(Speaker.ASSISTANT, "jour ") == " Bonjour "

    @pytest.mark.parametrize("fragments", [[], [""], ["   "], [" ", "\n", "\t "]])
    def test_whitespace_only_buffer_emits_no_turn(self, fragments):
        acc = TurnAccumulator()
        for fragment in fragments:
            acc.append_fragment(Speaker.ASSISTANT, fragment)

        assert acc.seal_turn(Speaker.ASSISTANT) is None
        assert not acc.is_active(Speaker.ASSISTANT)
        assert acc.pending_text(Speaker.ASSISTANT) == ""

    def test_sealing_twice_emits_once(self):
        acc = TurnAccumulator()
        acc.append_fragment(Speaker.USER, "hola")

        assert acc.seal_turn(Speaker.USER) is not None
        assert acc.seal_turn(Speaker.USER) is None

    def test_one_buffer_per_direction(self):
        acc = TurnAccumulator()
        acc.append_fragment(Speaker.USER, "a")
        acc.append_fragment(Speaker.ASSISTANT, "b")
        acc.append_fragment(Speaker.USER, "c")

        assert acc.pending_text(Speaker.USER) == "ac"
        assert acc.pending_text(Speaker.ASSISTANT) == "b"
        acc.seal_turn(Speaker.USER)
        assert not acc.is_active(Speaker.USER)
        assert acc.is_active(Speaker.ASSISTANT)

    def test_discard_clears_without_turn(self):
        acc = TurnAccumulator()
        acc.append_fragment(Speaker.ASSISTANT, "Bonjo")
        acc.discard(Speaker.ASSISTANT)

        assert acc.seal_turn(Speaker.ASSISTANT) is None

    def test_model_turn_seals_user_once_per_utterance(self):
        acc = TurnAccumulator()
        acc.append_fragment(Speaker.USER, "Ich bin müde")

        first = acc.seal_user_on_model_turn()
        assert first.text == "Ich bin müde"
        assert acc.seal_user_on_model_turn() is None

        acc.append_fragment(Speaker.USER, "und hungrig")
        assert acc.seal_user_on_model_turn().text == "und hungrig"

    def test_reset_discards_every_buffer(self):
        acc = TurnAccumulator()
        acc.append_fragment(Speaker.USER, "x")
        acc.append_fragment(Speaker.ASSISTANT, "y")
        acc.reset()

        assert acc.seal_turn(Speaker.USER) is None
        assert acc.seal_turn(Speaker.ASSISTANT) is None

    def test_turn_ids_are_unique(self):
        acc = TurnAccumulator()
        ids = set()
        for i in range(50):
            acc.append_fragment(Speaker.USER, f"t{i}")
            ids.add(acc.seal_turn(Speaker.USER).id)
        assert len(ids) == 50

    def test_system_speaker_has_no_buffer(self):
        with pytest.raises(ValueError, match="no pending buffer"):
            TurnAccumulator().append_fragment(Speaker.SYSTEM, "x")


class TestCompletionPolicy:

    def make(self, **kwargs):
        fired = []
        scheduler = FakeScheduler()
        policy = CompletionPolicy(on_timeout=fired.append, scheduler=scheduler, **kwargs)
        return policy, scheduler, fired

    @pytest.mark.parametrize("text,expected", [
        ("Hello", 0.3),
        ("Hello!", 0.1),
        ("Really?", 0.1),
        ("Note:", 0.1),
        ("One; ", 0.1),
        ("Done.  \n", 0.1),
        ("e.g", 0.3),
        ("", 0.3),
    ])
    def test_delay_for(self, text, expected):
        policy, _, _ = self.make()
        assert policy.delay_for(text) == expected

    def test_new_fragment_replaces_timer(self):
        policy, scheduler, fired = self.make()
        policy.fragment_received(Speaker.ASSISTANT, "Hello")
        policy.fragment_received(Speaker.ASSISTANT, "Hello!")

        assert len(scheduler.pending()) == 1
        scheduler.advance(0.099)
        assert fired == []
        scheduler.advance(0.002)
        assert fired == [Speaker.ASSISTANT]
        scheduler.advance(1.0)
        assert fired == [Speaker.ASSISTANT]

    def test_at_most_one_fires_after_many_fragments(self):
        policy, scheduler, fired = self.make()
        text = ""
        for word in ["Je ", "suis ", "très ", "content"]:
            text += word
            policy.fragment_received(Speaker.ASSISTANT, text)
            scheduler.advance(0.2)

        scheduler.advance(5.0)
        assert fired == [Speaker.ASSISTANT]

    def test_cancel_prevents_fire(self):
        policy, scheduler, fired = self.make()
        policy.fragment_received(Speaker.ASSISTANT, "Hi")
        policy.cancel(Speaker.ASSISTANT)

        scheduler.advance(1.0)
        assert fired == []
        assert not policy.pending(Speaker.ASSISTANT)

    def test_user_fragments_arm_nothing_by_default(self):
        policy, scheduler, _ = self.make()
        policy.fragment_received(Speaker.USER, "hello")
        assert scheduler.pending() == []

    def test_user_silence_timeout(self):
        policy, scheduler, fired = self.make(user_silence_timeout_sec=1.5)
        policy.fragment_received(Speaker.USER, "hello.")

        scheduler.advance(1.4)
        assert fired == []
        scheduler.advance(0.2)
        assert fired == [Speaker.USER]

    def test_from_config(self):
        cfg = TurnPolicyConfig(debounce_ms=500, punctuation_debounce_ms=50, user_silence_timeout_ms=2000)
        policy = CompletionPolicy.from_config(cfg, on_timeout=lambda s: None, scheduler=FakeScheduler())

        assert policy.debounce_sec == 0.5
        assert policy.punctuation_debounce_sec == 0.05
        assert policy.user_silence_timeout_sec == 2.0
