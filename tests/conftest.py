"""Shared pytest fixtures for Carru tests."""

import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

import db
from steps import GenerationMode, ImageRef, InlineImage, new_step
from workspace import Workspace

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24


def image_for(prompt: str) -> InlineImage:
    """The image FakeImageClient returns for ``prompt``."""
    return InlineImage(f"img:{prompt}".encode())


class FakeImageClient:
    """In-process stand-in for an ImageClient.

    Records every call, returns a deterministic image per prompt, and can be
    told to fail, to delay, to return a specific image, or to run a hook
    when a prompt is submitted.
    """

    provider = "gemini"

    def __init__(self) -> None:
        self.calls: List[Dict] = []
        self.failures: Dict[str, Exception] = {}
        self.results: Dict[str, ImageRef] = {}
        self.delays: Dict[str, float] = {}
        self.completion_order: List[str] = []
        self.on_call: Optional[Callable[[str], None]] = None
        self.valid = True

    async def generate(
        self,
        prompt,
        image_size,
        aspect_ratio,
        model,
        previous_image=None,
        subject_image=None,
    ):
        self.calls.append({
            "prompt": prompt,
            "image_size": image_size,
            "aspect_ratio": aspect_ratio,
            "model": model,
            "previous_image": previous_image,
            "subject_image": subject_image,
        })
        if self.on_call:
            self.on_call(prompt)
        await asyncio.sleep(self.delays.get(prompt, 0))
        self.completion_order.append(prompt)
        if prompt in self.failures:
            raise self.failures[prompt]
        return self.results.get(prompt) or image_for(prompt)

    async def validate(self) -> bool:
        return self.valid

    def call_for(self, prompt: str) -> Dict:
        matches = [c for c in self.calls if c["prompt"] == prompt]
        assert len(matches) == 1, f"expected one call for {prompt!r}, got {len(matches)}"
        return matches[0]


@pytest.fixture
def fake_client() -> FakeImageClient:
    return FakeImageClient()


@pytest.fixture
def make_workspace() -> Callable[..., Workspace]:
    """Build a workspace from a list of prompts."""

    def _make(prompts: List[str], mode: str = GenerationMode.CAROUSEL.value, **kwargs) -> Workspace:
        return Workspace([new_step(p) for p in prompts], mode=mode, **kwargs)

    return _make


@pytest.fixture
def temp_db(tmp_path: Path, monkeypatch) -> Path:
    """Point the SQLite store at a fresh file for the test."""
    path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path
