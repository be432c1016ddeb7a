"""Saved projects: the step list plus the settings it was generated with."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

import db
from assets import CloudinaryUploader, upload_inline_steps
from image_client import DEFAULT_IMAGE_MODEL
from steps import ImageRef, Step, Steps, new_step_id, step_from_dict, step_to_dict
from workspace import Workspace

log = logging.getLogger(__name__)


@dataclass
class Project:
    id: str
    name: str
    created_at: float
    steps: Steps = field(default_factory=tuple)
    image_size: str = "1K"
    aspect_ratio: str = "1:1"
    generation_mode: str = "carousel"
    image_model: str = DEFAULT_IMAGE_MODEL

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "steps": [step_to_dict(s) for s in self.steps],
            "image_size": self.image_size,
            "aspect_ratio": self.aspect_ratio,
            "generation_mode": self.generation_mode,
            "image_model": self.image_model,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Project":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            created_at=float(data.get("created_at") or 0.0),
            steps=tuple(step_from_dict(s) for s in data.get("steps") or []),
            image_size=data.get("image_size") or "1K",
            aspect_ratio=data.get("aspect_ratio") or "1:1",
            generation_mode=data.get("generation_mode") or "carousel",
            image_model=data.get("image_model") or DEFAULT_IMAGE_MODEL,
        )


def snapshot(workspace: Workspace, name: str, project_id: Optional[str] = None) -> Project:
    return Project(
        id=project_id or new_step_id(),
        name=name,
        created_at=time.time(),
        steps=workspace.steps,
        image_size=workspace.image_size.value,
        aspect_ratio=workspace.aspect_ratio.value,
        generation_mode=workspace.mode.value,
        image_model=workspace.model,
    )


def save_workspace(
    workspace: Workspace,
    username: str,
    name: str,
    uploader: Optional[CloudinaryUploader] = None,
) -> Project:
    """Save the workspace as a project, uploading inline images first.

    The workspace's own steps switch to the uploaded URLs as well.
    """
    name = name.strip()
    if not name:
        raise RuntimeError("Please name your project first.")

    if uploader is not None:
        before = workspace.steps
        after = upload_inline_steps(before, uploader)
        for old, new in zip(before, after):
            if new.image is not old.image:
                workspace.apply(old.id, _swap_image(old.image, new.image))

    project = snapshot(workspace, name, workspace.project_id)
    db.save_project(username, project.to_dict())
    workspace.project_id = project.id
    workspace.project_name = name
    log.info("Project saved: id=%s  name=%r  steps=%d", project.id, name, len(project.steps))
    return project


def _swap_image(expected: Optional[ImageRef], image: Optional[ImageRef]) -> Callable[[Step], Step]:
    # Leave steps regenerated while the upload ran untouched.
    def write(step: Step) -> Step:
        return replace(step, image=image) if step.image is expected else step
    return write


def load_projects(username: str) -> List[Project]:
    return [Project.from_dict(p) for p in db.list_projects(username)]


def load_into_workspace(workspace: Workspace, project: Project) -> None:
    workspace.replace_steps(project.steps)
    workspace.configure(
        mode=project.generation_mode,
        image_size=project.image_size,
        aspect_ratio=project.aspect_ratio,
        model=project.image_model,
    )
    workspace.project_id = project.id
    workspace.project_name = project.name
    log.info("Project loaded: id=%s  name=%r", project.id, project.name)


def delete_project(project_id: str) -> None:
    if not db.delete_project(project_id):
        raise RuntimeError(f"Project not found: {project_id}")
