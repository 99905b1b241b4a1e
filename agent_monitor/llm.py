"""LLM provider client for natural-language session summaries and topics."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx

from .config import MonitorConfig
from .models import Message, Session

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0

PROMPT_TOOLS = 10
PROMPT_TURNS = 4
RESULT_CHARS = 120
TURN_CHARS = 200

SYSTEM_PROMPT_SUMMARY = (
    "You summarize what an autonomous coding agent is doing right now. "
    "Write 1-2 concise, specific sentences. No markdown."
)

SYSTEM_PROMPT_TOPIC = (
    "You name coding sessions. Reply with a short title of at most 6 words "
    "describing the session's overall goal. No quotes, no markdown."
)

# Providers answering in the Anthropic Messages shape; everything else is
# treated as OpenAI-compatible chat completions.
MESSAGES_API_PROVIDERS = ("anthropic",)


class EnrichmentError(Exception):
    """The provider answered, but not in a shape we understand."""


def _clip(text: str, limit: int) -> str:
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def build_summary_prompt(session: Session) -> str:
    """Prompt from the most recent tools and the last few conversation turns."""
    lines = []
    for tool in list(session.recent_tools)[:PROMPT_TOOLS]:
        line = f"- {tool.tool_name}: {tool.detail or tool.summary}"
        if tool.result_brief:
            line += f" -> {_clip(tool.result_brief, RESULT_CHARS)}"
        lines.append(line)
    tool_list = "\n".join(lines) or "(no tool calls yet)"

    prompt = (
        f'Recent tool calls for agent "{session.name}" working in project '
        f'"{session.cwd}" (newest first):\n{tool_list}\n'
    )
    turns = list(session.conversation)[-PROMPT_TURNS:]
    if turns:
        convo = "\n".join(f"{m.role}: {_clip(m.text, TURN_CHARS)}" for m in turns)
        prompt += f"\nRecent conversation:\n{convo}\n"
    prompt += "\nWrite a 1-2 sentence summary of what the agent is currently doing."
    return prompt


def sample_topic_messages(session: Session) -> list[Message]:
    """A few messages from the start, middle and end of the session."""
    conversation = list(session.conversation)
    picked: list[Message] = list(session.opening_messages[:2])
    if conversation:
        picked.append(conversation[len(conversation) // 2])
        picked.extend(conversation[-2:])
    # Short sessions overlap between the samples.
    unique: list[Message] = []
    for msg in picked:
        if msg not in unique:
            unique.append(msg)
    return unique


def build_topic_prompt(session: Session, messages: Sequence[Message]) -> str:
    convo = "\n".join(f"{m.role}: {_clip(m.text, TURN_CHARS)}" for m in messages)
    return (
        f'Coding session in project "{session.cwd}". Sampled messages:\n{convo}\n\n'
        "Give this session a short title."
    )


class LLMClient:
    """One configured text-generation endpoint.

    Two response shapes are supported: the Anthropic Messages API
    (``content[0].text``) and OpenAI-compatible chat completions
    (``choices[0].message.content``).
    """

    def __init__(self, config: MonitorConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def is_ready(self) -> bool:
        return self.config.enrichment_enabled

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def generate_summary(self, session: Session) -> str | None:
        """Natural-language activity summary, or None on any failure."""
        return await self._generate(build_summary_prompt(session), SYSTEM_PROMPT_SUMMARY, max_tokens=100)

    async def generate_topic(self, session: Session) -> str | None:
        """Short session title, or None on any failure."""
        messages = sample_topic_messages(session)
        if not messages:
            return None
        text = await self._generate(build_topic_prompt(session, messages), SYSTEM_PROMPT_TOPIC, max_tokens=30)
        return text.strip().strip('"\'') if text else None

    async def _generate(self, user_prompt: str, system_prompt: str, *, max_tokens: int) -> str | None:
        if not self.is_ready():
            return None
        try:
            text = await self._dispatch(user_prompt, system_prompt, max_tokens=max_tokens)
        except (httpx.HTTPError, EnrichmentError, ValueError) as exc:
            log.warning("Enrichment call failed: %s", str(exc) or type(exc).__name__)
            return None
        text = text.strip()
        return text or None

    async def _dispatch(self, user_prompt: str, system_prompt: str, *, max_tokens: int) -> str:
        """Route to the configured provider's request/response shape."""
        if self.config.provider in MESSAGES_API_PROVIDERS:
            return await self._call_messages_api(user_prompt, system_prompt, max_tokens=max_tokens)
        return await self._call_chat_completions(user_prompt, system_prompt, max_tokens=max_tokens)

    async def _call_messages_api(self, user_prompt: str, system_prompt: str, *, max_tokens: int) -> str:
        url = f"{self.config.base_url.rstrip('/')}/messages"
        headers = {
            "x-api-key": self.config.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        payload = {
            "model": self.config.model,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": [
                {"role": "user", "content": user_prompt},
            ],
        }
        resp = await self._get_client().post(url, json=payload, headers=headers)
        resp.raise_for_status()
        body = resp.json()
        try:
            text = body["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EnrichmentError(f"unexpected response shape: {exc!r}") from exc
        if not isinstance(text, str):
            raise EnrichmentError("response text is not a string")
        return text

    async def _call_chat_completions(self, user_prompt: str, system_prompt: str, *, max_tokens: int) -> str:
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
        }
        resp = await self._get_client().post(url, json=payload, headers=headers)
        resp.raise_for_status()
        body = resp.json()
        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EnrichmentError(f"unexpected response shape: {exc!r}") from exc
        if not isinstance(text, str):
            raise EnrichmentError("response text is not a string")
        return text
