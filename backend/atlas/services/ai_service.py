"""
AI Service - Run enrichment agents against OpenAI, Anthropic and Gemini
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import requests
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from atlas.config import settings
from atlas.core.cancellation import CancellationToken
from atlas.core.exceptions import ProviderError
from atlas.models.grid import AgentConfig, AgentProvider, AgentType, ColumnDefinition, Row
from atlas.services.reference_service import resolve_references

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
SERPER_URL = "https://google.serper.dev/search"

DEFAULT_SYSTEM = "You are a helpful assistant. Always return your response as a valid JSON object."

# Models that accept response_format=json_object
JSON_FORMAT_MODELS = ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo")

_FENCE_RE = re.compile(r"```(?:json)?")


def parse_agent_response(raw: str, sources: Optional[List[str]] = None) -> Dict[str, Any]:
    """Decode a model reply into a dict; non-JSON replies land under `result`"""
    cleaned = _FENCE_RE.sub("", raw or "").strip()
    try:
        data = json.loads(cleaned)
        if not isinstance(data, dict):
            data = {"result": data}
    except json.JSONDecodeError:
        data = {"result": raw}

    if sources:
        data["_sources"] = sources
    return data


def build_input_context(agent: AgentConfig, row: Row, columns: List[ColumnDefinition]) -> Dict[str, Any]:
    """Agent inputs keyed by column header"""
    context = {}
    for input_id in agent.inputs:
        column = next((c for c in columns if c.id == input_id), None)
        if column:
            context[column.header] = row.get(input_id)
    return context


def build_agent_prompt(agent: AgentConfig, row: Row, columns: List[ColumnDefinition]) -> str:
    """
    Build the full prompt sent for one row

    Args:
        agent: Agent configuration; its prompt may contain `/column_id` references
        row: Row being enriched
        columns: Sheet columns

    Returns:
        Prompt text with goal, input context and required output keys
    """
    goal = resolve_references(agent.prompt, row, columns)
    context = json.dumps(build_input_context(agent, row, columns), default=str)
    outputs = json.dumps(agent.outputs)

    if agent.type == AgentType.WEB_SEARCH:
        return (
            "You are a Web Search Agent.\n"
            f"GOAL: {goal}\n"
            f"INPUT: {context}\n"
            "REQUIREMENT: Use the Google Search tool to find REAL-TIME information. Do not hallucinate.\n"
            f"OUTPUT FORMAT: Single JSON object containing keys: {outputs}."
        )
    if agent.type == AgentType.GOOGLE_SEARCH:
        return (
            "You are a Research Agent working from Google search results.\n"
            f"GOAL: {goal}\n"
            f"INPUT: {context}\n"
            "REQUIREMENT: Only use facts found in the SEARCH RESULTS below. Do not hallucinate.\n"
            f"OUTPUT FORMAT: Single JSON object containing keys: {outputs}."
        )
    return (
        "You are a Data Enrichment Agent.\n"
        f"GOAL: {goal}\n"
        f"INPUT: {context}\n"
        f"OUTPUT FORMAT: Single JSON object containing keys: {outputs}."
    )


class AIService:
    """Service for calling LLM and search providers on behalf of agents"""

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        anthropic_client: Optional[AsyncAnthropic] = None
    ):
        self.openai_client = openai_client
        self.anthropic_client = anthropic_client

        if self.openai_client is None and settings.openai_enabled:
            self.openai_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
            logger.info("Initialized OpenAI client")
        if self.anthropic_client is None and settings.anthropic_enabled:
            self.anthropic_client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
            logger.info("Initialized Anthropic client")
        if not (self.openai_client or self.anthropic_client or settings.gemini_enabled):
            logger.warning("No AI provider configured, agents will fail until a key is set")

    async def run_agent(
        self,
        agent: AgentConfig,
        row: Row,
        columns: List[ColumnDefinition],
        token: Optional[CancellationToken] = None
    ) -> Dict[str, Any]:
        """
        Run one agent for one row

        Args:
            agent: Agent configuration
            row: Row being enriched
            columns: Sheet columns
            token: Batch cancellation token, checked before each provider call

        Returns:
            Parsed result dict (with `_sources` for search agents)

        Raises:
            ProviderError: provider missing or call failed
            BatchCancelled: the batch was stopped
        """
        prompt = build_agent_prompt(agent, row, columns)
        sources: List[str] = []

        if token:
            token.raise_if_cancelled()

        if agent.type == AgentType.WEB_SEARCH:
            raw, sources = await self.search_web(prompt, agent.model_id)
        elif agent.type == AgentType.GOOGLE_SEARCH:
            query = resolve_references(agent.prompt, row, columns)
            results = await self.search_google(query)
            sources = [r["url"] for r in results if r.get("url")]
            if token:
                token.raise_if_cancelled()
            prompt = f"{prompt}\nSEARCH RESULTS: {json.dumps(results)}"
            raw = await self.complete(agent.provider, agent.model_id, prompt)
        else:
            raw = await self.complete(agent.provider, agent.model_id, prompt)

        return parse_agent_response(raw, sources)

    async def complete(
        self,
        provider: AgentProvider,
        model_id: Optional[str],
        prompt: str,
        system: str = DEFAULT_SYSTEM
    ) -> str:
        """Single prompt completion on the given provider"""
        if provider == AgentProvider.OPENAI:
            return await self._complete_openai(model_id or settings.DEFAULT_OPENAI_MODEL, prompt, system)
        if provider == AgentProvider.ANTHROPIC:
            return await self._complete_anthropic(model_id or settings.DEFAULT_ANTHROPIC_MODEL, prompt, system)
        text, _ = await self._generate_gemini(model_id or settings.DEFAULT_GEMINI_MODEL, prompt, system)
        return text

    async def _complete_openai(self, model: str, prompt: str, system: str) -> str:
        if not self.openai_client:
            raise ProviderError("OpenAI API key missing")

        kwargs: Dict[str, Any] = {}
        if model.startswith(JSON_FORMAT_MODELS):
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.openai_client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt}
                ],
                temperature=0.7,
                **kwargs
            )
        except Exception as e:
            raise ProviderError(f"OpenAI call failed: {e}") from e

        return response.choices[0].message.content or ""

    async def _complete_anthropic(self, model: str, prompt: str, system: str) -> str:
        if not self.anthropic_client:
            raise ProviderError("Anthropic API key missing")

        try:
            response = await self.anthropic_client.messages.create(
                model=model,
                max_tokens=settings.AGENT_MAX_TOKENS,
                system=system,
                messages=[{"role": "user", "content": prompt}]
            )
        except Exception as e:
            raise ProviderError(f"Anthropic call failed: {e}") from e

        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    async def _generate_gemini(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        google_search: bool = False
    ) -> Tuple[str, List[str]]:
        if not settings.gemini_enabled:
            raise ProviderError("Gemini API key missing")

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.3},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if google_search:
            payload["tools"] = [{"google_search": {}}]

        def _post():
            return requests.post(
                GEMINI_URL.format(model=model),
                params={"key": settings.GEMINI_API_KEY},
                json=payload
            )

        try:
            response = await asyncio.to_thread(_post)
        except requests.RequestException as e:
            raise ProviderError(f"Gemini call failed: {e}") from e

        if not response.ok:
            raise ProviderError(f"Gemini API error: HTTP {response.status_code}: {response.text[:200]}")

        data = response.json()
        candidate = (data.get("candidates") or [{}])[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        chunks = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
        sources = [
            (c.get("web") or {}).get("uri") or (c.get("web") or {}).get("title")
            for c in chunks
        ]
        return text, [s for s in sources if s]

    async def search_web(self, prompt: str, model_id: Optional[str] = None) -> Tuple[str, List[str]]:
        """Gemini completion grounded with Google Search; returns text and source urls"""
        return await self._generate_gemini(
            model_id or settings.DEFAULT_GEMINI_MODEL,
            prompt,
            "Return valid JSON object.",
            google_search=True
        )

    async def search_google(self, query: str, max_results: int = 10) -> List[Dict[str, str]]:
        """
        Google results via Serper

        Returns:
            List of {title, url, description}
        """
        if not settings.SERPER_API_KEY:
            raise ProviderError("SERPER_API_KEY not configured")

        def _post():
            return requests.post(
                SERPER_URL,
                headers={"X-API-KEY": settings.SERPER_API_KEY, "Content-Type": "application/json"},
                json={"q": query, "num": max_results}
            )

        try:
            response = await asyncio.to_thread(_post)
        except requests.RequestException as e:
            raise ProviderError(f"Serper search failed: {e}") from e

        if not response.ok:
            raise ProviderError(f"Serper API error ({response.status_code}): {response.text[:200]}")

        organic = response.json().get("organic") or []
        return [
            {
                "title": item.get("title", ""),
                "url": item.get("link", ""),
                "description": item.get("snippet", ""),
            }
            for item in organic[:max_results]
        ]


# Global instance
_ai_service: Optional[AIService] = None


def get_ai_service() -> AIService:
    """Get or create global AI service instance"""
    global _ai_service
    if _ai_service is None:
        _ai_service = AIService()
    return _ai_service
