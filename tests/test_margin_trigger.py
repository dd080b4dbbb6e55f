"""Tests for trigger pacing driven by a virtual clock."""

import asyncio

import pytest

from margin_engine.core.margin_trigger import TriggerController, pipeline_runner
from margin_engine.core.scheduler import VirtualScheduler
from margin_engine.core.schemas_margin import PipelineResult, paragraph_hash
from margin_engine.core.schemas_tuning import MarginClientTuning
from tests.fakes.fake_margin import spark_nudge

TEXT_A = "Booked another Saturday call with the Denver client because saying no felt impossible."
TEXT_B = "Mom called twice about Thanksgiving plans and I let both calls go to voicemail again."
TEXT_C = "Finally ran the long loop by the river this morning and my knee held up the whole way."

# No per-entry caps, so only debounce, dedupe and the query gap apply
UNCAPPED = MarginClientTuning(annotation_cooldown_ms=0, min_query_gap_ms=0)


class RecordingRunner:
    def __init__(self, results=None, block=False):
        self.results = results or {}
        self.block = block
        self.requests = []
        self.tokens = []

    async def __call__(self, request, token):
        self.requests.append(request)
        self.tokens.append(token)
        if self.block:
            await token.run(asyncio.Event().wait())
        return self.results.get(request.paragraph_index, [])


def _controller(runner, tuning=None):
    scheduler = VirtualScheduler()
    controller = TriggerController(runner, scheduler, tuning or MarginClientTuning(), entry_date="2025-03-01")
    return controller, scheduler


async def _settle(controller, scheduler, ms):
    scheduler.advance(ms)
    await controller.drain()


class TestDebounce:
    @pytest.mark.asyncio
    async def test_fires_once_after_quiet_period(self):
        runner = RecordingRunner()
        controller, scheduler = _controller(runner)

        assert controller.on_paragraph_change(0, TEXT_A) is True
        await _settle(controller, scheduler, 3499)
        assert runner.requests == []

        await _settle(controller, scheduler, 1)
        assert len(runner.requests) == 1
        request = runner.requests[0]
        assert request.content_hash == paragraph_hash(TEXT_A)
        assert request.entry_date == "2025-03-01"
        assert request.paragraph_index == 0

    @pytest.mark.asyncio
    async def test_edits_restart_the_timer(self):
        runner = RecordingRunner()
        controller, scheduler = _controller(runner)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3000)
        controller.on_paragraph_change(0, TEXT_A + " Again.")
        await _settle(controller, scheduler, 3000)
        assert runner.requests == []

        await _settle(controller, scheduler, 500)
        assert [r.text for r in runner.requests] == [TEXT_A + " Again."]

    @pytest.mark.asyncio
    async def test_short_paragraphs_ignored(self):
        runner = RecordingRunner()
        controller, scheduler = _controller(runner)

        assert controller.on_paragraph_change(0, "Too short to matter") is False
        assert controller.on_paragraph_change(
            0, "Supercalifragilistic expialidocious antidisestablishmentarianism words here"
        ) is False
        assert scheduler.pending == 0

    def test_disabled_controller_ignores_edits(self):
        controller = TriggerController(RecordingRunner(), VirtualScheduler(), enabled=False)

        assert controller.on_paragraph_change(0, TEXT_A) is False


class TestDedupeAndGap:
    @pytest.mark.asyncio
    async def test_same_content_never_requeried(self):
        runner = RecordingRunner()
        controller, scheduler = _controller(runner)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        await _settle(controller, scheduler, 10000)

        controller.on_paragraph_change(0, f"  {TEXT_A}  ")
        await _settle(controller, scheduler, 3500)

        assert len(runner.requests) == 1
        assert controller.state.runs_started == 1

    @pytest.mark.asyncio
    async def test_min_query_gap_defers_next_run(self):
        runner = RecordingRunner()
        controller, scheduler = _controller(runner)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        controller.on_paragraph_change(1, TEXT_B)

        await _settle(controller, scheduler, 3500)
        assert len(runner.requests) == 1

        await _settle(controller, scheduler, 3499)
        assert len(runner.requests) == 1

        await _settle(controller, scheduler, 1)
        assert [r.paragraph_index for r in runner.requests] == [0, 1]
        assert controller.state.last_query_at == 10500


class TestCancellation:
    @pytest.mark.asyncio
    async def test_new_run_cancels_in_flight_run(self):
        runner = RecordingRunner(block=True)
        controller, scheduler = _controller(runner)

        controller.on_paragraph_change(0, TEXT_A)
        scheduler.advance(3500)
        await asyncio.sleep(0)
        assert controller.in_flight

        controller.on_paragraph_change(1, TEXT_B)
        scheduler.advance(7000)
        await asyncio.sleep(0)

        assert len(runner.tokens) == 2
        assert runner.tokens[0].cancelled
        assert runner.tokens[0].reason == "superseded"
        assert not runner.tokens[1].cancelled

        await controller.close()
        assert runner.tokens[1].cancelled
        assert runner.tokens[1].reason == "closed"
        assert controller.visible_nudges == []

    @pytest.mark.asyncio
    async def test_reset_clears_session_and_cancels(self):
        runner = RecordingRunner(block=True)
        controller, scheduler = _controller(runner)

        controller.on_paragraph_change(0, TEXT_A)
        scheduler.advance(3500)
        await asyncio.sleep(0)
        controller.on_paragraph_change(1, TEXT_B)

        controller.reset("2025-03-02")

        assert runner.tokens[0].cancelled
        assert scheduler.pending == 0
        assert controller.state.queried_hashes == set()
        assert controller.entry_date == "2025-03-02"
        await controller.close()


class TestCaps:
    @pytest.mark.asyncio
    async def test_nudges_presented_and_cooldown_applies(self):
        runner = RecordingRunner(results={0: [spark_nudge("n1", paragraph_index=0)]})
        controller, scheduler = _controller(runner, MarginClientTuning(min_query_gap_ms=0))

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        assert [n.id for n in controller.visible_nudges] == ["n1"]
        assert controller.state.annotation_count == 1

        controller.on_paragraph_change(2, TEXT_B)
        await _settle(controller, scheduler, 3500)
        assert len(runner.requests) == 1
        assert scheduler.pending == 0

        await _settle(controller, scheduler, 20000)
        controller.on_paragraph_change(2, TEXT_B)
        await _settle(controller, scheduler, 3500)
        assert len(runner.requests) == 2

    @pytest.mark.asyncio
    async def test_paragraph_gap(self):
        runner = RecordingRunner(results={0: [spark_nudge("n1", paragraph_index=0)]})
        tuning = MarginClientTuning(annotation_cooldown_ms=0, min_query_gap_ms=0, min_paragraph_gap=1)
        controller, scheduler = _controller(runner, tuning)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        controller.on_paragraph_change(1, TEXT_B)
        await _settle(controller, scheduler, 3500)
        assert len(runner.requests) == 1

        controller.on_paragraph_change(2, TEXT_C)
        await _settle(controller, scheduler, 3500)
        assert len(runner.requests) == 2

    @pytest.mark.asyncio
    async def test_max_annotations(self):
        runner = RecordingRunner(results={0: [spark_nudge("n1", paragraph_index=0)]})
        tuning = MarginClientTuning(annotation_cooldown_ms=0, min_query_gap_ms=0, max_annotations_per_entry=1)
        controller, scheduler = _controller(runner, tuning)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        controller.on_paragraph_change(3, TEXT_C)
        await _settle(controller, scheduler, 3500)

        assert len(runner.requests) == 1

    @pytest.mark.asyncio
    async def test_empty_result_does_not_count(self):
        runner = RecordingRunner()
        controller, scheduler = _controller(runner, UNCAPPED)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        controller.on_paragraph_change(1, TEXT_B)
        await _settle(controller, scheduler, 3500)

        assert len(runner.requests) == 2
        assert controller.state.annotation_count == 0


class TestPresentation:
    @pytest.mark.asyncio
    async def test_dismissed_nudge_never_returns(self):
        repeat = spark_nudge("n1-elsewhere", paragraph_index=2)
        runner = RecordingRunner(results={
            0: [spark_nudge("n1", paragraph_index=0)],
            2: [repeat],
        })
        controller, scheduler = _controller(runner, UNCAPPED)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        controller.dismiss("n1")
        assert controller.visible_nudges == []

        controller.on_paragraph_change(2, TEXT_B)
        await _settle(controller, scheduler, 3500)

        assert len(runner.requests) == 2
        assert controller.visible_nudges == []
        assert repeat.signature in controller.state.dismissed_signatures

    @pytest.mark.asyncio
    async def test_already_shown_signature_filtered(self):
        runner = RecordingRunner(results={
            0: [spark_nudge("n1", paragraph_index=0)],
            2: [
                spark_nudge("n1-again", paragraph_index=2),
                spark_nudge("n2", paragraph_index=2, hook="Second Saturday this month you said yes."),
            ],
        })
        controller, scheduler = _controller(runner, UNCAPPED)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)
        controller.on_paragraph_change(2, TEXT_B)
        await _settle(controller, scheduler, 3500)

        assert [n.id for n in controller.visible_nudges] == ["n1", "n2"]
        assert controller.state.annotation_count == 2

    @pytest.mark.asyncio
    async def test_runner_errors_are_contained(self):
        async def failing(request, token):
            raise RuntimeError("network down")

        controller, scheduler = _controller(failing, UNCAPPED)

        controller.on_paragraph_change(0, TEXT_A)
        await _settle(controller, scheduler, 3500)

        assert controller.visible_nudges == []
        assert not controller.in_flight


@pytest.mark.asyncio
async def test_pipeline_runner_passes_session_nudges():
    calls = []

    class StubPipeline:
        async def run(self, **kwargs):
            calls.append(kwargs)
            index = kwargs["paragraph_index"]
            return PipelineResult(nudges=[spark_nudge(f"n{index}", paragraph_index=index, hook=f"hook {index}")])

    controller, scheduler = _controller(pipeline_runner(StubPipeline(), "user-1"), UNCAPPED)

    controller.on_paragraph_change(0, TEXT_A)
    await _settle(controller, scheduler, 3500)
    controller.on_paragraph_change(2, TEXT_B)
    await _settle(controller, scheduler, 3500)

    assert calls[0]["user_id"] == "user-1"
    assert calls[0]["entry_date"] == "2025-03-01"
    assert [n.id for n in calls[0]["session_nudges"]] == []
    assert [n.id for n in calls[1]["session_nudges"]] == ["n0"]
    assert [n.id for n in controller.visible_nudges] == ["n0", "n2"]


@pytest.mark.asyncio
async def test_session_nudges_start_over_after_reset():
    runner = RecordingRunner(results={
        0: [spark_nudge("n0", paragraph_index=0, hook="hook 0")],
        1: [spark_nudge("n1", paragraph_index=1, hook="hook 1")],
    })
    controller, scheduler = _controller(runner, UNCAPPED)

    controller.on_paragraph_change(0, TEXT_A)
    await _settle(controller, scheduler, 3500)
    assert [n.id for n in controller.state.session_nudges] == ["n0"]

    controller.reset("2025-03-02")
    assert controller.state.session_nudges == []

    controller.on_paragraph_change(1, TEXT_B)
    await _settle(controller, scheduler, 3500)

    assert runner.requests[1].session_nudges == []
    assert [n.id for n in controller.state.session_nudges] == ["n1"]
