"""Step model: the ordered list of generation steps and their state.

Every operation here is pure. A step list is an immutable tuple of frozen
``Step`` records; mutations return a new tuple and leave the input intact,
so callers can swap whole snapshots without locking and tests can compare
by value.
"""

from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple, Union


class StepStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationMode(str, Enum):
    SEQUENTIAL = "sequential"
    CAROUSEL = "carousel"


class ImageSize(str, Enum):
    SIZE_1K = "1K"
    SIZE_2K = "2K"
    SIZE_4K = "4K"


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    WIDESCREEN = "16:9"
    VERTICAL = "9:16"
    STANDARD = "4:3"
    STANDARD_PORTRAIT = "3:4"
    PORTRAIT = "4:5"


# ---------------------------------------------------------------------------
# Image references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InlineImage:
    """Image bytes held in memory (freshly generated or uploaded by the user)."""

    data: bytes
    mime_type: str = "image/png"

    def to_data_url(self) -> str:
        b64 = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{b64}"

    def __repr__(self) -> str:
        return f"InlineImage({self.mime_type}, {len(self.data)} bytes)"


@dataclass(frozen=True)
class RemoteImage:
    """Image hosted elsewhere, e.g. after a project was saved."""

    url: str


ImageRef = Union[InlineImage, RemoteImage]


def parse_image_ref(value: str) -> ImageRef:
    """Turn a stored image string (URL, data URL or bare base64) into an ImageRef.

    Raises ValueError when the value is empty or not decodable.
    """
    value = (value or "").strip()
    if not value:
        raise ValueError("empty image reference")
    if value.startswith(("http://", "https://")):
        return RemoteImage(value)

    mime_type = "image/png"
    payload = value
    if value.startswith("data:"):
        header, sep, payload = value.partition(",")
        if not sep:
            raise ValueError("malformed data URL")
        mime_type = header[len("data:"):].split(";")[0] or mime_type

    try:
        data = base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 image data: {exc}") from exc
    return InlineImage(data, mime_type)


def image_ref_to_str(ref: ImageRef) -> str:
    if isinstance(ref, RemoteImage):
        return ref.url
    return ref.to_data_url()


# ---------------------------------------------------------------------------
# Step record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    id: str
    prompt: str = ""
    status: StepStatus = StepStatus.IDLE
    image: Optional[ImageRef] = None
    error: Optional[str] = None
    is_approved: bool = False
    use_subject: bool = True

    @property
    def is_blank(self) -> bool:
        return not self.prompt.strip()

    @property
    def has_image(self) -> bool:
        return self.status is StepStatus.COMPLETED and self.image is not None


def new_step_id() -> str:
    return uuid.uuid4().hex


def new_step(prompt: str = "", use_subject: bool = True) -> Step:
    return Step(id=new_step_id(), prompt=prompt, use_subject=use_subject)


Steps = Tuple[Step, ...]


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------

class InvalidTransition(ValueError):
    pass


ALLOWED_TRANSITIONS: Dict[StepStatus, Tuple[StepStatus, ...]] = {
    StepStatus.IDLE:      (StepStatus.PENDING,),
    StepStatus.PENDING:   (StepStatus.COMPLETED, StepStatus.FAILED),
    StepStatus.COMPLETED: (StepStatus.PENDING,),
    StepStatus.FAILED:    (StepStatus.PENDING,),
}


def transition(
    step: Step,
    status: StepStatus,
    image: Optional[ImageRef] = None,
    error: Optional[str] = None,
) -> Step:
    """Move a step to ``status``, keeping image/error/approval consistent."""
    if status not in ALLOWED_TRANSITIONS[step.status]:
        raise InvalidTransition(f"{step.status.value} -> {status.value} (step {step.id})")

    if status is StepStatus.PENDING:
        return replace(step, status=status, image=None, error=None, is_approved=False)
    if status is StepStatus.COMPLETED:
        if image is None:
            raise InvalidTransition(f"completed step {step.id} needs an image")
        return replace(step, status=status, image=image, error=None, is_approved=False)
    return replace(
        step, status=status, image=None, error=error or "Generation failed", is_approved=False,
    )


# ---------------------------------------------------------------------------
# List operations
# ---------------------------------------------------------------------------

def find_step(steps: Steps, step_id: str) -> Optional[Step]:
    for step in steps:
        if step.id == step_id:
            return step
    return None


def index_of(steps: Steps, step_id: str) -> int:
    for i, step in enumerate(steps):
        if step.id == step_id:
            return i
    return -1


def apply(steps: Steps, step_id: str, fn: Callable[[Step], Step]) -> Steps:
    """Replace the step with ``step_id`` by ``fn(step)``.

    Unknown ids leave the list untouched, so a late write for a removed
    step never brings it back.
    """
    if find_step(steps, step_id) is None:
        return steps
    return tuple(fn(s) if s.id == step_id else s for s in steps)


def add_step(steps: Steps, step: Optional[Step] = None) -> Steps:
    return steps + (step or new_step(),)


def update_step(steps: Steps, step_id: str, prompt: str) -> Steps:
    return apply(steps, step_id, lambda s: replace(s, prompt=prompt, is_approved=False))


def remove_step(steps: Steps, step_id: str) -> Steps:
    remaining = tuple(s for s in steps if s.id != step_id)
    return remaining or (new_step(),)


def toggle_approval(steps: Steps, step_id: str) -> Steps:
    return apply(steps, step_id, lambda s: replace(s, is_approved=not s.is_approved))


def toggle_subject_use(steps: Steps, step_id: str) -> Steps:
    return apply(steps, step_id, lambda s: replace(s, use_subject=not s.use_subject))


def ensure_non_empty(steps: Iterable[Step]) -> Steps:
    steps = tuple(steps)
    return steps or (new_step(),)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def step_to_dict(step: Step) -> Dict:
    data: Dict = {
        "id": step.id,
        "prompt": step.prompt,
        "status": step.status.value,
        "is_approved": step.is_approved,
        "use_subject": step.use_subject,
    }
    if step.image is not None:
        data["image_url"] = image_ref_to_str(step.image)
    if step.error:
        data["error"] = step.error
    return data


def step_from_dict(data: Dict) -> Step:
    """Rebuild a step from stored data.

    A step stored mid-run (``pending``) comes back ``idle``; stored data
    that breaks the image/error/approval rules is repaired, not rejected.
    """
    status = StepStatus(data.get("status") or "idle")
    image: Optional[ImageRef] = None
    raw_image = data.get("image_url")
    if raw_image:
        try:
            image = parse_image_ref(raw_image)
        except ValueError:
            image = None

    error = data.get("error") or None
    if status is StepStatus.PENDING:
        status = StepStatus.IDLE
    if status is StepStatus.COMPLETED and image is None:
        status = StepStatus.IDLE
    if status is not StepStatus.COMPLETED:
        image = None
    if status is not StepStatus.FAILED:
        error = None

    return Step(
        id=str(data.get("id") or new_step_id()),
        prompt=str(data.get("prompt") or ""),
        status=status,
        image=image,
        error=error,
        is_approved=bool(data.get("is_approved")) and status is StepStatus.COMPLETED,
        use_subject=bool(data.get("use_subject", True)),
    )
