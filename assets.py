"""Asset hosting: turns freshly generated inline images into durable URLs."""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from typing import Optional

import requests

from steps import ImageRef, InlineImage, RemoteImage, Steps

log = logging.getLogger(__name__)

UPLOAD_TIMEOUT = 90


class CloudinaryUploader:
    """Unsigned uploads to a Cloudinary upload preset."""

    def __init__(self, cloud_name: str, upload_preset: str) -> None:
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset

    @classmethod
    def from_env(cls) -> Optional["CloudinaryUploader"]:
        cloud_name = os.environ.get("CLOUDINARY_CLOUD_NAME", "")
        preset = os.environ.get("CLOUDINARY_UPLOAD_PRESET", "")
        if not (cloud_name and preset):
            return None
        return cls(cloud_name, preset)

    @property
    def endpoint(self) -> str:
        return f"https://api.cloudinary.com/v1_1/{self.cloud_name}/image/upload"

    def upload(self, image: ImageRef) -> RemoteImage:
        if isinstance(image, RemoteImage):
            return image

        try:
            resp = requests.post(
                self.endpoint,
                data={"file": image.to_data_url(), "upload_preset": self.upload_preset},
                timeout=UPLOAD_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"Cloudinary upload failed: {exc}") from exc

        if not resp.ok:
            try:
                message = resp.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise RuntimeError(message or f"Cloudinary upload failed ({resp.status_code})")

        url = resp.json().get("secure_url")
        if not url:
            raise RuntimeError("Cloudinary response had no secure_url")
        log.info("Uploaded %d bytes to Cloudinary: %s", len(image.data), url)
        return RemoteImage(url)


def upload_inline_steps(steps: Steps, uploader: CloudinaryUploader) -> Steps:
    """Upload every inline step image; a failed upload keeps the inline image."""
    result = []
    for step in steps:
        if isinstance(step.image, InlineImage):
            try:
                step = replace(step, image=uploader.upload(step.image))
            except RuntimeError as exc:
                log.warning("Upload failed for step %s, keeping inline image: %s", step.id, exc)
        result.append(step)
    return tuple(result)
