"""Generation orchestration. Used by both the web app and CLI.

A full run walks the workspace's steps under one of two topologies:

  carousel    step 0 (the background) is generated alone first; every other
              non-blank step is then generated concurrently, each conditioned
              on the background image only.  A failed background aborts the
              run.
  sequential  steps are generated one after another, each conditioned on the
              most recent image produced in this run.  The first failure
              stops the run.

Single-step regeneration applies the same conditioning rule to one step,
using whatever images the other steps currently hold.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from image_client import ImageClient, PermissionDeniedError
from session import CredentialError, GenerationError
from steps import (
    GenerationMode,
    ImageRef,
    Step,
    Steps,
    StepStatus,
    index_of,
    transition,
)
from workspace import Workspace

log = logging.getLogger(__name__)


class RunInProgressError(RuntimeError):
    pass


def conditioning_for(steps: Steps, index: int, mode: GenerationMode) -> Optional[ImageRef]:
    """Image a step at ``index`` is conditioned on when regenerated on its own.

    Carousel steps use the background (step 0), sequential steps use their
    direct predecessor; either only when that step currently has an image.
    """
    if index <= 0 or index >= len(steps):
        return None
    source = steps[0] if mode is GenerationMode.CAROUSEL else steps[index - 1]
    return source.image if source.has_image else None


class Orchestrator:
    """Runs generation passes over a workspace with real-time progress callbacks."""

    def __init__(
        self,
        workspace: Workspace,
        client: ImageClient,
        progress_cb: Optional[Callable[[Dict], None]] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.workspace = workspace
        self.client = client
        self.progress_cb = progress_cb
        self.run_id = run_id or uuid.uuid4().hex[:8]

        self.completed: List[str] = []
        self.failed: List[str] = []

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(
        self,
        step_id: Optional[str],
        index: Optional[int],
        status: str,
        message: str,
        data: Optional[Dict] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "run_id": self.run_id,
            "step_id": step_id,
            "index": index,
            "status": status,
            "message": message,
            "ts": time.time(),
        }
        if data:
            event["data"] = data
        if self.progress_cb:
            self.progress_cb(event)
        lvl = logging.WARNING if status == "failed" else logging.DEBUG
        log.log(lvl, "[%s] step %s — %s", self.run_id, index, message)

    # ------------------------------------------------------------------
    # Step state writes (keyed by step id)
    # ------------------------------------------------------------------

    def _claim(self, step_id: str) -> Optional[Step]:
        """Move a step to pending and return it, or None if it is gone or blank."""
        current = self.workspace.step(step_id)
        if current is None or current.is_blank:
            return None
        self.workspace.apply(step_id, lambda s: transition(s, StepStatus.PENDING))
        return self.workspace.step(step_id)

    def _settle(self, step_id: str, status: StepStatus, image=None, error=None) -> None:
        # Only a step still waiting on this call takes the result; removed or
        # replaced steps are left alone.
        def write(step: Step) -> Step:
            if step.status is not StepStatus.PENDING:
                return step
            return transition(step, status, image=image, error=error)

        self.workspace.apply(step_id, write)

    # ------------------------------------------------------------------
    # One generation call
    # ------------------------------------------------------------------

    async def _generate_step(
        self,
        step: Step,
        index: int,
        previous: Optional[ImageRef],
    ) -> Optional[ImageRef]:
        ws = self.workspace
        subject = ws.subject if step.use_subject else None
        self._emit(step.id, index, "started", f"Generating step {index + 1}…", {
            "conditioned": previous is not None,
            "subject": subject is not None,
        })

        try:
            image = await self.client.generate(
                step.prompt,
                ws.image_size.value,
                ws.aspect_ratio.value,
                ws.model,
                previous_image=previous,
                subject_image=subject,
            )
        except GenerationError as exc:
            if isinstance(exc, (CredentialError, PermissionDeniedError)):
                ws.needs_credential = True
            self._settle(step.id, StepStatus.FAILED, error=exc.reason)
            self.failed.append(step.id)
            self._emit(step.id, index, "failed", exc.reason, {
                "needs_credential": ws.needs_credential,
            })
            return None
        except Exception as exc:
            self._settle(step.id, StepStatus.FAILED, error=f"Unexpected error: {exc}")
            self.failed.append(step.id)
            raise

        self._settle(step.id, StepStatus.COMPLETED, image=image)
        self.completed.append(step.id)
        self._emit(step.id, index, "completed", f"Step {index + 1} ready")
        return image

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run(self) -> Dict:
        """Generate every non-blank step. Returns a summary dict."""
        ws = self.workspace
        if not ws.begin_generation():
            raise RunInProgressError("A generation is already in progress")

        snapshot = ws.steps
        log.info(
            "Run start: run=%s  mode=%s  steps=%d  model=%s  size=%s  ratio=%s",
            self.run_id, ws.mode.value, len(snapshot), ws.model,
            ws.image_size.value, ws.aspect_ratio.value,
        )
        start = time.time()
        try:
            if ws.mode is GenerationMode.CAROUSEL:
                aborted = await self._run_carousel(snapshot)
            else:
                aborted = await self._run_sequential(snapshot)
        finally:
            ws.end_generation()

        duration = time.time() - start
        summary = {
            "run_id": self.run_id,
            "mode": ws.mode.value,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "aborted": aborted,
            "duration": duration,
        }
        log.info(
            "Run %s: run=%s  %.1fs  %d completed / %d failed",
            "aborted" if aborted else "complete",
            self.run_id, duration, len(self.completed), len(self.failed),
        )
        self._emit(
            None,
            None,
            "aborted" if aborted else "complete",
            f"Run {'stopped' if aborted else 'complete'} in {duration:.0f}s — "
            f"{len(self.completed)} images generated",
            {"completed": len(self.completed), "failed": len(self.failed)},
        )
        return summary

    async def _run_carousel(self, snapshot: Steps) -> bool:
        ws = self.workspace
        base = snapshot[0]
        ws.select(0)

        base_image: Optional[ImageRef] = None
        claimed = self._claim(base.id)
        if claimed is None:
            self._emit(base.id, 0, "skipped", "Background prompt is empty — variations run unconditioned")
        else:
            base_image = await self._generate_step(claimed, 0, None)
            if base_image is None:
                return True

        variations: List[Tuple[int, Step]] = []
        for index, planned in enumerate(snapshot[1:], start=1):
            step = self._claim(planned.id)
            if step is None:
                self._emit(planned.id, index, "skipped", f"Step {index + 1} skipped — empty prompt")
                continue
            variations.append((index, step))

        if not variations:
            return False

        results = await asyncio.gather(
            *(self._generate_step(step, index, base_image) for index, step in variations),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return False

    async def _run_sequential(self, snapshot: Steps) -> bool:
        ws = self.workspace
        previous: Optional[ImageRef] = None
        for index, planned in enumerate(snapshot):
            step = self._claim(planned.id)
            if step is None:
                self._emit(planned.id, index, "skipped", f"Step {index + 1} skipped — empty prompt")
                continue
            ws.select_step(step.id)
            image = await self._generate_step(step, index, previous)
            if image is None:
                return True
            previous = image
        return False

    # ------------------------------------------------------------------
    # Single-step regeneration
    # ------------------------------------------------------------------

    async def regenerate_selected(self) -> Optional[Step]:
        return await self.regenerate(self.workspace.selected_step.id)

    async def regenerate(self, step_id: str) -> Optional[Step]:
        """Regenerate one step. Returns the updated step, or None if nothing ran."""
        ws = self.workspace
        current = ws.step(step_id)
        if current is None or current.is_blank:
            log.debug("Regenerate skipped: step %s missing or blank", step_id)
            return None
        if not ws.begin_generation():
            raise RunInProgressError("A generation is already in progress")

        try:
            steps = ws.steps
            index = index_of(steps, step_id)
            previous = conditioning_for(steps, index, ws.mode)
            step = self._claim(step_id)
            if step is None:
                return None
            log.info("Regenerate: run=%s  step=%d  conditioned=%s", self.run_id, index, previous is not None)
            await self._generate_step(step, index, previous)
        finally:
            ws.end_generation()
        return ws.step(step_id)
