"""
Tests for SkipController — phase-dependent skip semantics.
"""
import asyncio

import pytest

from models.schemas import SpeakerRole, TurnState
from voice.context import SessionContext
from voice.skip import SkipController
from voice.speech_queue import SpeechQueue, Utterance, UtteranceOutcome
from fakes import FakeAudioOutput, wait_until


def utterance(text, ends):
    return Utterance(text=text, speaker=SpeakerRole.LOGIC, voice_ref="v",
                     on_end=lambda outcome: ends.append((text, outcome)))


@pytest.fixture
def hanging_output():
    return FakeAudioOutput(hang_on=("first", "second", "answer"))


class TestSkipCurrent:

    @pytest.mark.asyncio
    async def test_ignored_while_listening(self, output):
        context = SessionContext(state=TurnState.USER_LISTENING)
        skip = SkipController(SpeechQueue(output), context)
        finished = []

        async def finisher():
            finished.append(True)
        skip.bind_finisher(finisher)

        assert skip.skip_current() is False
        assert skip.skip_to_end() is False
        await asyncio.sleep(0.01)
        assert finished == []
        assert not skip.skip_current_requested

    @pytest.mark.asyncio
    async def test_thought_phase_skips_one_utterance(self, hanging_output, synthesizer):
        context = SessionContext(state=TurnState.AI_SPEAKING_THOUGHTS)
        queue = SpeechQueue(hanging_output, synthesizer)
        skip = SkipController(queue, context)
        ends = []
        queue.enqueue_all([utterance("first", ends), utterance("second", ends)])
        await wait_until(lambda: "first" in hanging_output.started)

        assert skip.skip_current() is True
        await wait_until(lambda: "second" in hanging_output.started)

        assert ends == [("first", UtteranceOutcome.SKIPPED)]
        assert skip.skip_current_requested
        queue.clear()

    @pytest.mark.asyncio
    async def test_response_phase_force_completes_once(self, hanging_output, synthesizer):
        context = SessionContext(state=TurnState.AI_SPEAKING_RESPONSE)
        queue = SpeechQueue(hanging_output, synthesizer)
        skip = SkipController(queue, context)
        calls = []

        async def finisher():
            calls.append(True)
            await asyncio.sleep(0.02)
        skip.bind_finisher(finisher)

        ends = []
        queue.enqueue(utterance("answer", ends))
        await wait_until(lambda: "answer" in hanging_output.started)

        assert skip.skip_current() is True
        assert skip.skip_current() is True
        await wait_until(lambda: calls)
        await asyncio.sleep(0.03)

        assert calls == [True]
        assert queue.is_idle
        assert len(queue) == 0
        # force-complete clears silently; the finisher records the turn
        assert ends == []


class TestSkipToEnd:

    @pytest.mark.asyncio
    async def test_thought_phase_drops_remaining(self, hanging_output, synthesizer):
        context = SessionContext(state=TurnState.AI_SPEAKING_THOUGHTS)
        queue = SpeechQueue(hanging_output, synthesizer)
        skip = SkipController(queue, context)
        ends = []
        queue.enqueue_all([utterance("first", ends), utterance("second", ends)])
        await wait_until(lambda: "first" in hanging_output.started)

        assert skip.skip_to_end() is True
        await asyncio.wait_for(queue.wait_drained(), timeout=1.0)

        assert ends == [("first", UtteranceOutcome.SKIPPED), ("second", UtteranceOutcome.SKIPPED)]
        assert skip.skip_to_end_requested

    @pytest.mark.asyncio
    async def test_thinking_phase_sets_flag(self, output):
        context = SessionContext(state=TurnState.AI_THINKING)
        skip = SkipController(SpeechQueue(output), context)
        assert skip.skip_to_end() is True
        assert skip.skip_to_end_requested

    @pytest.mark.asyncio
    async def test_response_phase_force_completes(self, output):
        context = SessionContext(state=TurnState.AI_SPEAKING_RESPONSE)
        skip = SkipController(SpeechQueue(output), context)
        calls = []

        async def finisher():
            calls.append(True)
        skip.bind_finisher(finisher)

        assert skip.skip_to_end() is True
        await wait_until(lambda: calls)

    def test_reset_clears_flags(self, output):
        skip = SkipController(SpeechQueue(output), SessionContext())
        skip.skip_current_requested = True
        skip.skip_to_end_requested = True
        skip.reset()
        assert not skip.skip_current_requested
        assert not skip.skip_to_end_requested
