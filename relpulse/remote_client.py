"""
Remote analysis gateway.

Sends one journal entry to the Gemini generateContent endpoint and parses the
structured JSON reply into a RemoteResult. Each call is a single attempt:
retries, backoff and fallback are the scheduler's job, so every failure is
raised as a typed RelPulseError.
"""

import json
import logging
import re
import time
from typing import Any, Dict, Optional

import requests

from . import config
from .exceptions import (
    ProviderAuthError,
    ProviderServerError,
    ProviderTimeout,
    ProviderUnavailable,
    ProviderValidationError,
    RateLimited,
)
from .models import PatternSummary, RemoteResult

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """You are analyzing a personal journal entry about a relationship.
{context}
Journal entry:
\"\"\"{text}\"\"\"

Respond in valid JSON with exactly these fields:
{{
  "sentiment_score": <number 1-10, 1 very negative, 10 very positive>,
  "emotional_keywords": [<up to 8 short emotion words>],
  "confidence_level": <number 0-1>,
  "reasoning": <one or two sentences>,
  "patterns": {{
    "recurring_themes": [<snake_case themes such as mutual_support, quality_time, communication, empathy, personal_growth>],
    "emotional_triggers": [<snake_case triggers>],
    "communication_style": <"collaborative" | "direct" | "confrontational" | "neutral">,
    "relationship_dynamics": [<snake_case dynamics>]
  }}
}}"""

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def scale_to_unit(score: float) -> float:
    """Map the provider's 1-10 sentiment scale onto [-1, 1]."""
    return max(-1.0, min(1.0, (float(score) - 5.5) / 4.5))


class RemoteAnalysisClient:
    """
    Client for the remote text-analysis provider.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        mock_mode: Optional[bool] = None,
        clock=None,
    ):
        """
        Initialize remote client.

        Args:
            api_key: Provider API key (default from config)
            model: Model name (default from config)
            api_url: generateContent URL template with a {model} slot (default from config)
            timeout: Request timeout in seconds (default from config)
            mock_mode: Answer locally without network (default from config)
            clock: Time source for created_at stamps
        """
        self.mock_mode = config.REMOTE_MOCK_MODE if mock_mode is None else mock_mode
        self.api_key = api_key or config.REMOTE_API_KEY
        if not self.api_key and not self.mock_mode:
            raise ValueError("REMOTE_API_KEY not set - add to .env file or pass as argument")

        self.model = model or config.REMOTE_MODEL
        self.api_url = api_url or config.REMOTE_API_URL
        self.timeout = timeout or config.API_TIMEOUT
        self.clock = clock or time.time

        logger.info(f"RemoteAnalysisClient initialized (model={self.model}, mock={self.mock_mode})")

    def analyze(self, text: str, context: Optional[Dict[str, Any]] = None) -> RemoteResult:
        """
        Analyze one entry.

        Args:
            text: Entry content
            context: entry_id, user_id, relationship_id, relationship_type, mood

        Returns:
            RemoteResult

        Raises:
            ProviderTimeout, ProviderUnavailable, RateLimited, ProviderServerError:
                transient, worth retrying
            ProviderValidationError, ProviderAuthError: permanent
        """
        context = context or {}
        if not text or not text.strip():
            raise ProviderValidationError("Entry content is empty")

        start = time.perf_counter()
        if self.mock_mode:
            payload, tokens = self._mock_query(text, context)
        else:
            payload, tokens = self._api_query(text, context)
        elapsed_ms = (time.perf_counter() - start) * 1000

        return self._to_result(payload, tokens, elapsed_ms, context)

    def _build_prompt(self, text: str, context: Dict[str, Any]) -> str:
        lines = []
        if context.get("relationship_type"):
            lines.append(f"Relationship type: {context['relationship_type']}")
        if context.get("mood"):
            lines.append(f"Author's self-reported mood: {context['mood']}")
        return PROMPT_TEMPLATE.format(context="\n".join(lines), text=text)

    def _api_query(self, text: str, context: Dict[str, Any]):
        url = self.api_url.format(model=self.model)
        body = {
            "contents": [{"parts": [{"text": self._build_prompt(text, context)}]}],
            "generationConfig": {"temperature": 0.2, "responseMimeType": "application/json"},
        }

        try:
            response = requests.post(
                url,
                params={"key": self.api_key},
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ProviderTimeout(f"Request timed out after {self.timeout}s") from e
        except requests.exceptions.ConnectionError as e:
            raise ProviderUnavailable(f"Network error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(f"Request failed: {e}") from e

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as e:
                raise ProviderServerError(f"Provider returned invalid JSON: {e}") from e
            return self._parse_response(data)

        detail = response.text[:200]
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning("Remote provider rate limited the request")
            raise RateLimited(
                f"Rate limited: {detail}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        elif response.status_code in (401, 403):
            logger.error(f"Remote provider rejected credentials ({response.status_code})")
            raise ProviderAuthError(f"Authentication failed ({response.status_code}): {detail}")
        elif response.status_code in (400, 404, 422):
            raise ProviderValidationError(f"Invalid request ({response.status_code}): {detail}")
        elif response.status_code >= 500:
            raise ProviderServerError(f"Server error: {response.status_code}", status_code=response.status_code)
        else:
            raise ProviderServerError(
                f"Unexpected status {response.status_code}: {detail}", status_code=response.status_code
            )

    def _parse_response(self, data: Dict[str, Any]):
        candidates = data.get("candidates") or []
        if not candidates:
            if (data.get("promptFeedback") or {}).get("blockReason"):
                raise ProviderValidationError(f"Content blocked: {data['promptFeedback']['blockReason']}")
            raise ProviderServerError("Empty response from provider")

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ProviderValidationError("Content blocked by provider safety filter")

        parts = (candidate.get("content") or {}).get("parts") or []
        raw = "".join(part.get("text", "") for part in parts)
        match = _JSON_BLOCK.search(raw)
        if not match:
            raise ProviderServerError("Provider reply did not contain JSON")
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ProviderServerError(f"Failed to parse provider reply: {e}") from e

        tokens = (data.get("usageMetadata") or {}).get("totalTokenCount")
        return payload, tokens

    def _mock_query(self, text: str, context: Dict[str, Any]):
        """Deterministic local stand-in for the provider, built on the keyword scorer."""
        from .fallback import run_fallback_analysis

        local = run_fallback_analysis(text, mood=context.get("mood"))
        payload = {
            "sentiment_score": local.sentiment_score * 4.5 + 5.5,
            "emotional_keywords": local.emotional_keywords[:8],
            "confidence_level": 0.85,
            "reasoning": "Mock analysis derived from local keyword scoring.",
            "patterns": {
                "recurring_themes": local.patterns.recurring_themes,
                "emotional_triggers": local.patterns.emotional_triggers,
                "communication_style": local.patterns.communication_style,
                "relationship_dynamics": local.patterns.relationship_dynamics,
            },
        }
        return payload, max(1, len(text) // 4) + 150

    def _to_result(self, payload: Dict[str, Any], tokens: Optional[int], elapsed_ms: float,
                   context: Dict[str, Any]) -> RemoteResult:
        try:
            raw_score = float(payload["sentiment_score"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderServerError(f"Provider reply missing sentiment_score: {e}") from e

        confidence = payload.get("confidence_level", 0.8)
        try:
            confidence = max(0.0, min(1.0, float(confidence)))
        except (TypeError, ValueError):
            confidence = 0.8

        keywords = payload.get("emotional_keywords") or []
        return RemoteResult(
            entry_id=context.get("entry_id", ""),
            user_id=context.get("user_id", ""),
            relationship_id=context.get("relationship_id"),
            sentiment_score=round(scale_to_unit(raw_score), 4),
            confidence_level=confidence,
            reasoning=str(payload.get("reasoning") or ""),
            emotional_keywords=[str(k) for k in keywords][:8],
            patterns=PatternSummary.from_dict(payload.get("patterns")),
            status="completed",
            processing_time_ms=round(elapsed_ms, 2),
            created_at=self.clock(),
            model=self.model,
            tokens_used=tokens,
            cost=round(tokens * config.REMOTE_COST_PER_1K_TOKENS / 1000, 6) if tokens else None,
        )
