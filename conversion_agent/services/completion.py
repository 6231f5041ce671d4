import json
import logging
import re

import httpx
from pydantic import BaseModel, Field

from conversion_agent.errors import CompletionServiceFailure

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

MAX_CHOICES = 4


class CompletionTurn(BaseModel):
    role: str  # "user" | "assistant"
    content: str


class CompletionRequest(BaseModel):
    system: str
    turns: list[CompletionTurn]
    max_tokens: int = 600


class CompletionResult(BaseModel):
    content: str
    choices: list[str] = Field(default_factory=list)


def extract_json(text: str) -> dict:
    """Pull the JSON object out of a model reply, tolerating code fences and chatter."""
    cleaned = _FENCE_RE.sub("", text.strip())
    match = _OBJECT_RE.search(cleaned)
    if match is None:
        raise ValueError("no JSON object in completion output")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("completion output is not a JSON object")
    return parsed


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        api_url: str = "https://api.anthropic.com/v1/messages",
        api_version: str = "2023-06-01",
        timeout: float = 8.0,
        max_chars: int = 1200,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.max_chars = max_chars
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

        self.headers = {
            "x-api-key": api_key,
            "anthropic-version": api_version,
            "Content-Type": "application/json",
        }

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    # -- Low-level helpers --

    async def _post(self, request: CompletionRequest) -> str:
        """Send one Messages API call and return the concatenated text blocks."""
        try:
            response = await self._client.post(
                self.api_url,
                headers=self.headers,
                json={
                    "model": self.model,
                    "max_tokens": request.max_tokens,
                    "system": request.system,
                    "messages": [turn.model_dump() for turn in request.turns],
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CompletionServiceFailure(f"completion request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise CompletionServiceFailure("completion service returned a non-object payload")
        if "error" in data:
            raise CompletionServiceFailure(f"completion service error: {data['error']}")
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise CompletionServiceFailure("completion payload has no content blocks")
        return "".join(
            str(block.get("text", ""))
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )

    # -- Completion --

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Ask for a ``{content, choices}`` reply; non-JSON output is retried once."""
        if not self.enabled:
            raise CompletionServiceFailure("completion service is not configured (no API key)")

        last_error: Exception | None = None
        for attempt in (1, 2):
            raw = await self._post(request)
            try:
                parsed = extract_json(raw)
            except ValueError as exc:
                last_error = exc
                logger.warning("Completion attempt %d returned non-JSON output", attempt)
                continue
            return self._to_result(parsed)

        raise CompletionServiceFailure(f"completion output unusable after retry: {last_error}")

    def _to_result(self, parsed: dict) -> CompletionResult:
        content = str(parsed.get("content") or "").strip()
        if not content:
            raise CompletionServiceFailure("completion output has no content")
        if len(content) > self.max_chars:
            cut = content[: self.max_chars]
            # keep whole sentences when one ends inside the cap
            end = max(cut.rfind(". "), cut.rfind("? "), cut.rfind("! "))
            content = cut[: end + 1] if end > 0 else cut.rstrip()
        choices = parsed.get("choices")
        if not isinstance(choices, list):
            choices = []
        choices = [str(c).strip() for c in choices if str(c).strip()][:MAX_CHOICES]
        return CompletionResult(content=content, choices=choices)

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
