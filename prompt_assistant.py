"""Text-model helpers for writing step prompts.

Refines a single prompt, brainstorms ideas, turns a topic into a full
carousel script (background + slides) that can be imported as steps, and
runs multi-turn chats under a user-chosen system prompt.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from typing import Dict, List, Optional, Tuple

from google import genai
from google.genai import types

from session import SessionContext

log = logging.getLogger(__name__)

TEXT_PROVIDERS = ("gemini", "openai", "anthropic")

CHAT_MODEL = "gemini-3-pro-preview"

DEFAULT_TEXT_MODELS: Dict[str, str] = {
    "gemini": "gemini-3-flash-preview",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-haiku-4-5-20251001",
}

REFINE_TEMPLATE = (
    "Improve this image generation prompt to be professional, detailed, and visually "
    "stunning. Keep it in the same language as input. Only return the improved prompt "
    'text, no intro or outro: "{prompt}"'
)

SLIDES_SYSTEM_PROMPT = (
    "You write image-generation prompts for social media carousels. "
    "Return valid JSON only — no markdown fences, no commentary. Schema: "
    '{"background": "prompt for a shared background scene", '
    '"slide_1": "prompt", "slide_2": "prompt", ...}'
)

_SLIDE_KEY = re.compile(r"^slide_(\d+)$")


class PromptAssistantError(RuntimeError):
    pass


def parse_json(text: str) -> Dict:
    text = text.strip()
    # Strip markdown fences if present
    if text.startswith("```"):
        lines = text.splitlines()
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end != -1:
            return json.loads(text[start : end + 1])
        raise


def slide_prompts_from_json(data: Dict) -> Tuple[Optional[str], List[str]]:
    """Split ``{"background": ..., "slide_N": ...}`` into (background, slides).

    Slides are ordered by their number, not by key order.
    """
    background = str(data["background"]) if data.get("background") else None
    numbered = []
    for key, value in data.items():
        match = _SLIDE_KEY.match(key)
        if match and value:
            numbered.append((int(match.group(1)), str(value)))
    numbered.sort(key=lambda item: item[0])
    return background, [value for _, value in numbered]


Message = Dict[str, str]


class PromptAssistant:
    def __init__(
        self,
        session: SessionContext,
        provider: str = "gemini",
        model: Optional[str] = None,
    ) -> None:
        if provider not in TEXT_PROVIDERS:
            raise ValueError(f"provider must be one of {TEXT_PROVIDERS}")
        if provider == "gemini" and session.provider != "gemini" and not os.environ.get("GEMINI_API_KEY"):
            raise ValueError(
                f"The {session.provider} login cannot call Gemini text models. "
                "Set GEMINI_API_KEY or choose the openai or anthropic provider."
            )
        self.session = session
        self.provider = provider
        self.model = model or DEFAULT_TEXT_MODELS[provider]

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------

    def refine_prompt(self, prompt: str) -> str:
        """Return an improved prompt, or the original one if the call fails."""
        try:
            refined = self._ask(None, REFINE_TEMPLATE.format(prompt=prompt), max_tokens=200)
        except RuntimeError as exc:
            log.warning("Refine failed, keeping original prompt: %s", exc)
            return prompt
        return refined or prompt

    def generate_creative_idea(self, topic: str, system_instruction: str) -> str:
        try:
            return self._ask(system_instruction, topic)
        except RuntimeError as exc:
            raise PromptAssistantError(f"Failed to generate creative idea: {exc}") from exc

    def generate_slide_prompts(
        self,
        topic: str,
        system_instruction: Optional[str] = None,
    ) -> Tuple[Optional[str], List[str]]:
        try:
            text = self._ask(system_instruction or SLIDES_SYSTEM_PROMPT, topic, json_mode=True)
            background, slides = slide_prompts_from_json(parse_json(text))
        except (RuntimeError, ValueError) as exc:
            raise PromptAssistantError(f"Failed to generate slide prompts: {exc}") from exc
        log.info("Slide prompts: background=%s  slides=%d", bool(background), len(slides))
        return background, slides

    def _ask(self, system: Optional[str], user: str, json_mode: bool = False, max_tokens: int = 2048) -> str:
        return self._call_llm(system, [{"role": "user", "text": user}], json_mode, max_tokens)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _gemini_key(self) -> str:
        if self.session.provider == "gemini":
            return self.session.require()
        key = os.environ.get("GEMINI_API_KEY", "")
        if not key:
            raise RuntimeError("GEMINI_API_KEY not set")
        return key

    def _call_llm(
        self,
        system: Optional[str],
        messages: List[Message],
        json_mode: bool = False,
        max_tokens: int = 2048,
    ) -> str:
        """Send ``messages`` (oldest first, roles ``user``/``model``) and return the reply."""
        t0 = time.time()
        if self.provider == "gemini":
            client = genai.Client(api_key=self._gemini_key())
            contents = [
                types.Content(role=m["role"], parts=[types.Part.from_text(text=m["text"])])
                for m in messages
            ]
            try:
                resp = client.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=types.GenerateContentConfig(
                        system_instruction=system or None,
                        max_output_tokens=max_tokens,
                        response_mime_type="application/json" if json_mode else None,
                    ),
                )
            except Exception as exc:
                raise RuntimeError(f"Gemini call failed: {exc}") from exc
            log.info("Gemini text call: model=%s  turns=%d  %.1fs", self.model, len(messages), time.time() - t0)
            return (resp.text or "").strip()

        chat = [
            {"role": "assistant" if m["role"] == "model" else "user", "content": m["text"]}
            for m in messages
        ]

        if self.provider == "anthropic":
            import anthropic
            api_key = os.environ.get("ANTHROPIC_API_KEY", "")
            if not api_key:
                raise RuntimeError("ANTHROPIC_API_KEY not set")
            client = anthropic.Anthropic(api_key=api_key)
            kwargs: Dict = {}
            if system:
                kwargs["system"] = system
            try:
                msg = client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=chat,
                    **kwargs,
                )
            except anthropic.AuthenticationError:
                raise RuntimeError("Anthropic API key is invalid or expired.")
            except anthropic.APIError as exc:
                raise RuntimeError(f"Anthropic call failed: {exc}") from exc
            log.info(
                "Anthropic call: model=%s  %d in / %d out tokens  %.1fs",
                self.model, msg.usage.input_tokens, msg.usage.output_tokens, time.time() - t0,
            )
            return msg.content[0].text.strip()

        from openai import APIError, AuthenticationError, OpenAI, RateLimitError
        api_key = os.environ.get("OPENAI_API_KEY", "")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY not set")
        client = OpenAI(api_key=api_key)
        if system:
            chat.insert(0, {"role": "system", "content": system})
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        try:
            resp = client.chat.completions.create(
                model=self.model,
                messages=chat,
                max_tokens=max_tokens,
                **kwargs,
            )
        except AuthenticationError:
            raise RuntimeError("OpenAI API key is invalid or expired.")
        except RateLimitError as exc:
            msg = str(exc)
            if "insufficient_quota" in msg or "quota" in msg.lower():
                raise RuntimeError(
                    "OpenAI account is out of credits. "
                    "Please add billing at platform.openai.com."
                )
            raise RuntimeError(f"OpenAI rate limit: {exc}")
        except APIError as exc:
            raise RuntimeError(f"OpenAI call failed: {exc}") from exc
        log.info(
            "OpenAI call: model=%s  %d in / %d out tokens  %.1fs",
            self.model, resp.usage.prompt_tokens, resp.usage.completion_tokens, time.time() - t0,
        )
        return (resp.choices[0].message.content or "").strip()


# ---------------------------------------------------------------------------
# Multi-turn chats
# ---------------------------------------------------------------------------

class PromptChat:
    """A conversation with a text model under a fixed system prompt.

    The history lives here and is replayed on every turn, so any provider
    works. A failed turn leaves the history as it was.
    """

    def __init__(self, assistant: PromptAssistant, system_prompt: str = "") -> None:
        self.assistant = assistant
        self.system_prompt = system_prompt
        self.history: List[Message] = []
        self._lock = threading.Lock()

    def send(self, message: str) -> str:
        message = message.strip()
        if not message:
            raise ValueError("message is required")
        with self._lock:
            turns = self.history + [{"role": "user", "text": message}]
            try:
                reply = self.assistant._call_llm(self.system_prompt or None, turns)
            except RuntimeError as exc:
                raise PromptAssistantError(f"Chat failed: {exc}") from exc
            reply = reply or "No response generated."
            self.history = turns + [{"role": "model", "text": reply}]
        return reply

    def reset(self, system_prompt: Optional[str] = None) -> None:
        with self._lock:
            self.history = []
            if system_prompt is not None:
                self.system_prompt = system_prompt
