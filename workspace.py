"""Mutable session state observed by the UI.

The workspace owns the current step snapshot plus the settings that go
with it.  Every change to the step list is a whole-snapshot swap through
``_swap``; writers that touch one step do so with a keyed update, so the
concurrent variation calls of a carousel run can land in any order.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

import steps as step_ops
from image_client import DEFAULT_IMAGE_MODEL
from steps import (
    AspectRatio,
    GenerationMode,
    ImageRef,
    ImageSize,
    Step,
    Steps,
    image_ref_to_str,
    new_step,
    step_to_dict,
)

log = logging.getLogger(__name__)


class Workspace:
    def __init__(
        self,
        steps: Optional[Iterable[Step]] = None,
        mode: str = GenerationMode.CAROUSEL.value,
        image_size: str = ImageSize.SIZE_1K.value,
        aspect_ratio: str = AspectRatio.SQUARE.value,
        model: str = DEFAULT_IMAGE_MODEL,
        subject: Optional[ImageRef] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._steps: Steps = step_ops.ensure_non_empty(steps or ())
        self.selected_index = 0
        self.mode = GenerationMode(mode)
        self.image_size = ImageSize(image_size)
        self.aspect_ratio = AspectRatio(aspect_ratio)
        self.model = model
        self.subject = subject
        self.is_generating = False
        self.needs_credential = False
        self.project_id: Optional[str] = None
        self.project_name = ""

    # ------------------------------------------------------------------
    # Snapshot access
    # ------------------------------------------------------------------

    @property
    def steps(self) -> Steps:
        return self._steps

    def step(self, step_id: str) -> Optional[Step]:
        return step_ops.find_step(self._steps, step_id)

    @property
    def selected_step(self) -> Step:
        return self._steps[self._clamp(self.selected_index)]

    def _swap(self, fn: Callable[[Steps], Steps]) -> Steps:
        with self._lock:
            self._steps = fn(self._steps)
            return self._steps

    def apply(self, step_id: str, fn: Callable[[Step], Step]) -> Steps:
        """Keyed update of one step; a missing id is a no-op."""
        return self._swap(lambda current: step_ops.apply(current, step_id, fn))

    # ------------------------------------------------------------------
    # Step list editing
    # ------------------------------------------------------------------

    def add_step(self) -> Steps:
        result = self._swap(step_ops.add_step)
        self.selected_index = len(result) - 1
        return result

    def update_step(self, step_id: str, prompt: str) -> Steps:
        return self._swap(lambda current: step_ops.update_step(current, step_id, prompt))

    def remove_step(self, step_id: str) -> Steps:
        result = self._swap(lambda current: step_ops.remove_step(current, step_id))
        self.selected_index = 0
        return result

    def toggle_approval(self, step_id: str) -> Steps:
        return self._swap(lambda current: step_ops.toggle_approval(current, step_id))

    def toggle_subject_use(self, step_id: str) -> Steps:
        return self._swap(lambda current: step_ops.toggle_subject_use(current, step_id))

    def replace_steps(self, new_steps: Iterable[Step]) -> Steps:
        result = self._swap(lambda _: step_ops.ensure_non_empty(new_steps))
        self.selected_index = 0
        return result

    def import_prompts(self, background: Optional[str], slide_prompts: List[str]) -> Steps:
        """Replace the list with imported prompts.

        A background prompt switches to carousel mode and becomes step 0.
        Imported steps do not use the subject reference.
        """
        imported: List[Step] = []
        if background:
            self.mode = GenerationMode.CAROUSEL
            imported.append(new_step(background, use_subject=False))
        imported.extend(new_step(p, use_subject=False) for p in slide_prompts)
        if not imported:
            return self._steps
        log.info("Imported %d prompts (background=%s)", len(imported), bool(background))
        return self.replace_steps(imported)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _clamp(self, index: int) -> int:
        return max(0, min(index, len(self._steps) - 1))

    def select(self, index: int) -> int:
        self.selected_index = self._clamp(index)
        return self.selected_index

    def select_next(self) -> int:
        return self.select(self.selected_index + 1)

    def select_previous(self) -> int:
        return self.select(self.selected_index - 1)

    def select_step(self, step_id: str) -> int:
        index = step_ops.index_of(self._steps, step_id)
        if index >= 0:
            self.selected_index = index
        return self.selected_index

    def approved_count(self) -> int:
        return sum(1 for s in self._steps if s.is_approved)

    # ------------------------------------------------------------------
    # Run-busy flag
    # ------------------------------------------------------------------

    def begin_generation(self) -> bool:
        with self._lock:
            if self.is_generating:
                return False
            self.is_generating = True
            return True

    def end_generation(self) -> None:
        with self._lock:
            self.is_generating = False

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def configure(
        self,
        mode: Optional[str] = None,
        image_size: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        """Update generation settings. Raises ValueError on unknown values."""
        if mode is not None:
            self.mode = GenerationMode(mode)
        if image_size is not None:
            self.image_size = ImageSize(image_size)
        if aspect_ratio is not None:
            self.aspect_ratio = AspectRatio(aspect_ratio)
        if model:
            self.model = model

    def reset(self) -> None:
        """Back to a blank session (logout)."""
        self.replace_steps(())
        self.subject = None
        self.needs_credential = False
        self.project_id = None
        self.project_name = ""

    def to_dict(self) -> Dict:
        return {
            "steps": [step_to_dict(s) for s in self._steps],
            "selected_index": self._clamp(self.selected_index),
            "mode": self.mode.value,
            "image_size": self.image_size.value,
            "aspect_ratio": self.aspect_ratio.value,
            "model": self.model,
            "subject": image_ref_to_str(self.subject) if self.subject else None,
            "is_generating": self.is_generating,
            "needs_credential": self.needs_credential,
            "approved_count": self.approved_count(),
            "project_id": self.project_id,
            "project_name": self.project_name,
        }
