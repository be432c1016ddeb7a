"""ZIP export of approved images."""

from __future__ import annotations

import io
import logging
import zipfile
from typing import Optional

from image_client import load_image_bytes, sniff_mime_type
from steps import GenerationMode, InlineImage, Steps, StepStatus

log = logging.getLogger(__name__)

_EXTENSIONS = {"image/jpeg": "jpg", "image/webp": "webp"}


def build_archive(steps: Steps, mode: GenerationMode) -> Optional[bytes]:
    """Zip every approved, completed image as ``slide-N``.

    In carousel mode the background step is left out and numbering starts
    at the first variation.  Returns None when nothing qualifies.
    """
    to_export = steps[1:] if GenerationMode(mode) is GenerationMode.CAROUSEL else steps

    buf = io.BytesIO()
    added = 0
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for index, step in enumerate(to_export):
            if not (step.status is StepStatus.COMPLETED and step.image and step.is_approved):
                continue
            data = load_image_bytes(step.image)
            if isinstance(step.image, InlineImage):
                mime_type = step.image.mime_type
            else:
                mime_type = sniff_mime_type(data)
            ext = _EXTENSIONS.get(mime_type, "png")
            zf.writestr(f"slide-{index + 1}.{ext}", data)
            added += 1

    if added == 0:
        return None
    log.info("Archive built: %d images (%s mode)", added, GenerationMode(mode).value)
    return buf.getvalue()
