"""Tests for the workspace: selection, editing, settings and the busy flag."""

from dataclasses import replace

import pytest

from steps import AspectRatio, GenerationMode, ImageSize, InlineImage, StepStatus
from workspace import Workspace


class TestConstruction:
    def test_empty_workspace_has_one_blank_step(self):
        ws = Workspace()
        assert len(ws.steps) == 1
        assert ws.steps[0].is_blank
        assert ws.mode is GenerationMode.CAROUSEL
        assert ws.image_size is ImageSize.SIZE_1K
        assert ws.aspect_ratio is AspectRatio.SQUARE

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError):
            Workspace(mode="slideshow")


class TestSelection:
    def test_select_clamps_to_range(self, make_workspace):
        ws = make_workspace(["a", "b", "c"])
        assert ws.select(10) == 2
        assert ws.select(-3) == 0

    def test_next_and_previous_stop_at_edges(self, make_workspace):
        ws = make_workspace(["a", "b"])
        assert ws.select_previous() == 0
        assert ws.select_next() == 1
        assert ws.select_next() == 1

    def test_add_selects_new_last_step(self, make_workspace):
        ws = make_workspace(["a", "b"])
        ws.add_step()
        assert ws.selected_index == 2
        assert ws.selected_step.is_blank

    def test_remove_resets_selection(self, make_workspace):
        ws = make_workspace(["a", "b", "c"])
        ws.select(2)
        ws.remove_step(ws.steps[1].id)
        assert ws.selected_index == 0
        assert [s.prompt for s in ws.steps] == ["a", "c"]

    def test_select_step_by_id(self, make_workspace):
        ws = make_workspace(["a", "b", "c"])
        assert ws.select_step(ws.steps[2].id) == 2
        assert ws.select_step("missing") == 2

    def test_selected_step_stays_valid_after_shrinking(self, make_workspace):
        ws = make_workspace(["a", "b", "c"])
        ws.selected_index = 2
        ws.replace_steps(ws.steps[:1])
        assert ws.selected_step.prompt == "a"


class TestEditing:
    def test_update_clears_approval(self, make_workspace):
        ws = make_workspace(["a"])
        step_id = ws.steps[0].id
        ws.apply(step_id, lambda s: replace(
            s, status=StepStatus.COMPLETED, image=InlineImage(b"x"), is_approved=True,
        ))
        assert ws.approved_count() == 1

        ws.update_step(step_id, "a, but at night")
        assert ws.steps[0].prompt == "a, but at night"
        assert ws.approved_count() == 0

    def test_removing_only_step_leaves_fresh_one(self, make_workspace):
        ws = make_workspace(["only"])
        old_id = ws.steps[0].id
        ws.remove_step(old_id)
        assert len(ws.steps) == 1
        assert ws.steps[0].id != old_id

    def test_toggle_subject_use(self, make_workspace):
        ws = make_workspace(["a"])
        ws.toggle_subject_use(ws.steps[0].id)
        assert ws.steps[0].use_subject is False


class TestImportPrompts:
    def test_background_becomes_first_step_and_forces_carousel(self, make_workspace):
        ws = make_workspace(["old"], mode=GenerationMode.SEQUENTIAL.value)
        ws.select(0)
        ws.import_prompts("misty forest", ["fox", "owl"])

        assert ws.mode is GenerationMode.CAROUSEL
        assert [s.prompt for s in ws.steps] == ["misty forest", "fox", "owl"]
        assert all(s.use_subject is False for s in ws.steps)
        assert ws.selected_index == 0

    def test_without_background_keeps_mode(self, make_workspace):
        ws = make_workspace(["old"], mode=GenerationMode.SEQUENTIAL.value)
        ws.import_prompts(None, ["one", "two"])
        assert ws.mode is GenerationMode.SEQUENTIAL
        assert [s.prompt for s in ws.steps] == ["one", "two"]

    def test_empty_import_is_noop(self, make_workspace):
        ws = make_workspace(["keep"])
        before = ws.steps
        assert ws.import_prompts(None, []) is before


class TestBusyFlag:
    def test_second_begin_refused_until_end(self):
        ws = Workspace()
        assert ws.begin_generation() is True
        assert ws.begin_generation() is False
        ws.end_generation()
        assert ws.begin_generation() is True


class TestSettings:
    def test_configure_updates_values(self):
        ws = Workspace()
        ws.configure(mode="sequential", image_size="4K", aspect_ratio="9:16", model="other-model")
        assert ws.mode is GenerationMode.SEQUENTIAL
        assert ws.image_size is ImageSize.SIZE_4K
        assert ws.aspect_ratio is AspectRatio.VERTICAL
        assert ws.model == "other-model"

    @pytest.mark.parametrize("kwargs", [
        {"mode": "grid"},
        {"image_size": "8K"},
        {"aspect_ratio": "2:1"},
    ])
    def test_configure_rejects_unknown_values(self, kwargs):
        with pytest.raises(ValueError):
            Workspace().configure(**kwargs)

    def test_reset_clears_session_state(self, make_workspace):
        ws = make_workspace(["a", "b"], subject=InlineImage(b"face"))
        ws.needs_credential = True
        ws.project_id = "p1"
        ws.project_name = "Launch"
        ws.reset()

        assert len(ws.steps) == 1 and ws.steps[0].is_blank
        assert ws.subject is None
        assert ws.needs_credential is False
        assert ws.project_id is None
        assert ws.project_name == ""

    def test_to_dict(self, make_workspace):
        ws = make_workspace(["a"], subject=InlineImage(b"face", "image/jpeg"))
        data = ws.to_dict()
        assert data["mode"] == "carousel"
        assert data["steps"][0]["prompt"] == "a"
        assert data["subject"].startswith("data:image/jpeg;base64,")
        assert data["approved_count"] == 0
        assert data["is_generating"] is False
