"""Orchestrator tests: carousel fan-out, sequential chaining, regeneration."""

import asyncio

import pytest

from carousel_core import Orchestrator, RunInProgressError, conditioning_for
from conftest import image_for
from image_client import PermissionDeniedError
from session import CredentialError, GenerationError
from steps import GenerationMode, InlineImage, StepStatus, transition


def _complete(ws, index, image=None):
    step = ws.steps[index]
    image = image or image_for(step.prompt)
    ws.apply(step.id, lambda s: transition(transition(s, StepStatus.PENDING), StepStatus.COMPLETED, image=image))
    return image


def _statuses(ws):
    return [s.status for s in ws.steps]


# ---------------------------------------------------------------------------
# Carousel
# ---------------------------------------------------------------------------

class TestCarouselRun:
    @pytest.mark.asyncio
    async def test_variations_conditioned_on_background(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a", "b", "c"])
        fake_client.delays = {"a": 0.05, "b": 0.0, "c": 0.02}

        summary = await Orchestrator(ws, fake_client).run()

        assert _statuses(ws) == [StepStatus.COMPLETED] * 4
        assert fake_client.call_for("bg")["previous_image"] is None
        for prompt in ("a", "b", "c"):
            assert fake_client.call_for(prompt)["previous_image"] == image_for("bg")
        # results land in completion order but each goes to its own step
        assert fake_client.completion_order[1:] == ["b", "c", "a"]
        assert [s.image for s in ws.steps] == [image_for(p) for p in ("bg", "a", "b", "c")]
        assert summary["aborted"] is False
        assert len(summary["completed"]) == 4

    @pytest.mark.asyncio
    async def test_variations_run_concurrently(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a", "b"])
        in_flight = []

        def on_call(prompt):
            in_flight.append([s.status for s in ws.steps])

        fake_client.on_call = on_call
        await Orchestrator(ws, fake_client).run()

        # both variations are pending before either returns
        assert in_flight[1][1:] == [StepStatus.PENDING, StepStatus.PENDING]

    @pytest.mark.asyncio
    async def test_failed_background_aborts_run(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a", "b"])
        fake_client.failures["bg"] = GenerationError("safety filter")

        summary = await Orchestrator(ws, fake_client).run()

        assert summary["aborted"] is True
        assert [c["prompt"] for c in fake_client.calls] == ["bg"]
        assert ws.steps[0].status is StepStatus.FAILED
        assert ws.steps[0].error == "safety filter"
        assert _statuses(ws)[1:] == [StepStatus.IDLE, StepStatus.IDLE]
        assert ws.is_generating is False

    @pytest.mark.asyncio
    async def test_blank_steps_skipped(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "   ", "b"])
        events = []

        await Orchestrator(ws, fake_client, progress_cb=events.append).run()

        assert [c["prompt"] for c in fake_client.calls] == ["bg", "b"]
        assert ws.steps[1].status is StepStatus.IDLE
        assert any(e["status"] == "skipped" and e["index"] == 1 for e in events)

    @pytest.mark.asyncio
    async def test_blank_background_runs_variations_unconditioned(self, make_workspace, fake_client):
        ws = make_workspace(["", "a", "b"])

        summary = await Orchestrator(ws, fake_client).run()

        assert ws.steps[0].status is StepStatus.IDLE
        assert fake_client.call_for("a")["previous_image"] is None
        assert fake_client.call_for("b")["previous_image"] is None
        assert summary["aborted"] is False

    @pytest.mark.asyncio
    async def test_one_failed_variation_does_not_stop_others(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a", "b"])
        fake_client.failures["a"] = GenerationError("rate limited")

        summary = await Orchestrator(ws, fake_client).run()

        assert _statuses(ws) == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.COMPLETED]
        assert summary["aborted"] is False
        assert summary["failed"] == [ws.steps[1].id]

    @pytest.mark.asyncio
    async def test_subject_sent_only_where_enabled(self, make_workspace, fake_client):
        subject = InlineImage(b"face")
        ws = make_workspace(["bg", "a", "b"], subject=subject)
        ws.toggle_subject_use(ws.steps[0].id)

        await Orchestrator(ws, fake_client).run()

        assert fake_client.call_for("bg")["subject_image"] is None
        assert fake_client.call_for("a")["subject_image"] == subject
        assert fake_client.call_for("b")["subject_image"] == subject

    @pytest.mark.asyncio
    async def test_settings_forwarded(self, make_workspace, fake_client):
        ws = make_workspace(["bg"], image_size="2K", aspect_ratio="9:16", model="m-1")
        await Orchestrator(ws, fake_client).run()
        call = fake_client.call_for("bg")
        assert (call["image_size"], call["aspect_ratio"], call["model"]) == ("2K", "9:16", "m-1")


# ---------------------------------------------------------------------------
# Sequential
# ---------------------------------------------------------------------------

class TestSequentialRun:
    @pytest.mark.asyncio
    async def test_each_step_conditioned_on_previous_image(self, make_workspace, fake_client):
        ws = make_workspace(["one", "two", "three"], mode=GenerationMode.SEQUENTIAL.value)

        await Orchestrator(ws, fake_client).run()

        assert [c["prompt"] for c in fake_client.calls] == ["one", "two", "three"]
        assert fake_client.call_for("one")["previous_image"] is None
        assert fake_client.call_for("two")["previous_image"] == image_for("one")
        assert fake_client.call_for("three")["previous_image"] == image_for("two")

    @pytest.mark.asyncio
    async def test_chain_skips_blank_steps(self, make_workspace, fake_client):
        ws = make_workspace(["one", "", "three"], mode=GenerationMode.SEQUENTIAL.value)

        await Orchestrator(ws, fake_client).run()

        assert ws.steps[1].status is StepStatus.IDLE
        assert fake_client.call_for("three")["previous_image"] == image_for("one")

    @pytest.mark.asyncio
    async def test_failure_stops_the_chain(self, make_workspace, fake_client):
        ws = make_workspace(["one", "two", "three"], mode=GenerationMode.SEQUENTIAL.value)
        fake_client.failures["two"] = GenerationError("quota exceeded")
        events = []

        summary = await Orchestrator(ws, fake_client, progress_cb=events.append).run()

        assert _statuses(ws) == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.IDLE]
        assert "three" not in [c["prompt"] for c in fake_client.calls]
        assert summary["aborted"] is True
        assert events[-1]["status"] == "aborted"
        assert events[-1]["step_id"] is None

    @pytest.mark.asyncio
    async def test_selection_follows_active_step(self, make_workspace, fake_client):
        ws = make_workspace(["one", "two", "three"], mode=GenerationMode.SEQUENTIAL.value)
        seen = []
        fake_client.on_call = lambda prompt: seen.append(ws.selected_index)

        await Orchestrator(ws, fake_client).run()

        assert seen == [0, 1, 2]


# ---------------------------------------------------------------------------
# Failures, credentials and the busy flag
# ---------------------------------------------------------------------------

class TestRunGuards:
    @pytest.mark.asyncio
    async def test_second_run_refused_while_busy(self, make_workspace, fake_client):
        ws = make_workspace(["bg"])
        ws.begin_generation()
        with pytest.raises(RunInProgressError):
            await Orchestrator(ws, fake_client).run()
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_overlapping_runs_only_one_proceeds(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a"])
        fake_client.delays["bg"] = 0.02

        results = await asyncio.gather(
            Orchestrator(ws, fake_client).run(),
            Orchestrator(ws, fake_client).run(),
            return_exceptions=True,
        )

        assert sum(isinstance(r, RunInProgressError) for r in results) == 1
        assert len(fake_client.calls) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("exc", [
        CredentialError("API key is missing. Please log in with a valid API key."),
        PermissionDeniedError("Permission denied. Check API Key and billing."),
    ])
    async def test_credential_failures_flag_workspace(self, make_workspace, fake_client, exc):
        ws = make_workspace(["bg", "a"])
        fake_client.failures["bg"] = exc

        await Orchestrator(ws, fake_client).run()

        assert ws.needs_credential is True
        assert ws.steps[0].error == exc.reason

    @pytest.mark.asyncio
    async def test_plain_failure_does_not_flag_credential(self, make_workspace, fake_client):
        ws = make_workspace(["bg"])
        fake_client.failures["bg"] = GenerationError("No image data found.")
        await Orchestrator(ws, fake_client).run()
        assert ws.needs_credential is False

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates_and_clears_busy(self, make_workspace, fake_client):
        ws = make_workspace(["one"], mode=GenerationMode.SEQUENTIAL.value)
        fake_client.failures["one"] = KeyError("boom")

        with pytest.raises(KeyError):
            await Orchestrator(ws, fake_client).run()

        assert ws.is_generating is False
        assert ws.steps[0].status is StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_step_removed_mid_flight_stays_removed(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a", "b"])
        doomed = ws.steps[2].id

        def on_call(prompt):
            if prompt == "b":
                ws.remove_step(doomed)

        fake_client.on_call = on_call
        summary = await Orchestrator(ws, fake_client).run()

        assert ws.step(doomed) is None
        assert [s.prompt for s in ws.steps] == ["bg", "a"]
        assert ws.steps[1].status is StepStatus.COMPLETED
        assert summary["aborted"] is False

    @pytest.mark.asyncio
    async def test_final_event_summarises_run(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a"])
        events = []
        orchestrator = Orchestrator(ws, fake_client, progress_cb=events.append, run_id="r1")

        await orchestrator.run()

        assert all(e["run_id"] == "r1" for e in events)
        assert events[-1]["status"] == "complete"
        assert events[-1]["data"] == {"completed": 2, "failed": 0}


# ---------------------------------------------------------------------------
# Regeneration
# ---------------------------------------------------------------------------

class TestRegenerate:
    def test_conditioning_for_carousel_uses_background(self, make_workspace):
        ws = make_workspace(["bg", "a", "b"])
        bg = _complete(ws, 0)
        _complete(ws, 1)
        assert conditioning_for(ws.steps, 2, GenerationMode.CAROUSEL) == bg
        assert conditioning_for(ws.steps, 0, GenerationMode.CAROUSEL) is None

    def test_conditioning_for_sequential_uses_predecessor(self, make_workspace):
        ws = make_workspace(["one", "two", "three"])
        _complete(ws, 0)
        two = _complete(ws, 1)
        assert conditioning_for(ws.steps, 2, GenerationMode.SEQUENTIAL) == two

    def test_conditioning_needs_completed_source(self, make_workspace):
        ws = make_workspace(["one", "two"])
        assert conditioning_for(ws.steps, 1, GenerationMode.SEQUENTIAL) is None

    @pytest.mark.asyncio
    async def test_regenerate_touches_only_target(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a", "b"])
        bg = _complete(ws, 0)
        _complete(ws, 1, InlineImage(b"old-a"))
        _complete(ws, 2, InlineImage(b"old-b"))
        ws.toggle_approval(ws.steps[2].id)
        before = ws.steps

        updated = await Orchestrator(ws, fake_client).regenerate(before[1].id)

        assert updated.image == image_for("a")
        assert fake_client.call_for("a")["previous_image"] == bg
        assert ws.steps[0] is before[0]
        assert ws.steps[2] is before[2]
        assert ws.steps[2].is_approved is True

    @pytest.mark.asyncio
    async def test_regenerate_selected_in_sequential_mode(self, make_workspace, fake_client):
        ws = make_workspace(["one", "two"], mode=GenerationMode.SEQUENTIAL.value)
        one = _complete(ws, 0)
        ws.select(1)

        await Orchestrator(ws, fake_client).regenerate_selected()

        assert fake_client.call_for("two")["previous_image"] == one
        assert ws.steps[1].status is StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_regenerate_blank_step_is_noop(self, make_workspace, fake_client):
        ws = make_workspace(["bg", ""])
        result = await Orchestrator(ws, fake_client).regenerate(ws.steps[1].id)
        assert result is None
        assert fake_client.calls == []
        assert ws.is_generating is False

    @pytest.mark.asyncio
    async def test_regenerate_refused_while_busy(self, make_workspace, fake_client):
        ws = make_workspace(["bg"])
        ws.begin_generation()
        with pytest.raises(RunInProgressError):
            await Orchestrator(ws, fake_client).regenerate(ws.steps[0].id)

    @pytest.mark.asyncio
    async def test_regenerate_failure_keeps_other_steps(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a"])
        _complete(ws, 0)
        _complete(ws, 1)
        fake_client.failures["a"] = GenerationError("timeout")

        updated = await Orchestrator(ws, fake_client).regenerate(ws.steps[1].id)

        assert updated.status is StepStatus.FAILED
        assert updated.image is None
        assert ws.steps[0].status is StepStatus.COMPLETED


class TestApprovalDuringRun:
    @pytest.mark.asyncio
    async def test_approval_toggled_mid_flight_does_not_survive(self, make_workspace, fake_client):
        ws = make_workspace(["bg", "a"])
        target = ws.steps[1].id

        def on_call(prompt):
            if prompt == "a":
                ws.toggle_approval(target)

        fake_client.on_call = on_call
        await Orchestrator(ws, fake_client).run()

        assert ws.step(target).status is StepStatus.COMPLETED
        assert ws.step(target).is_approved is False
        assert ws.approved_count() == 0
