"""OpenAI-compatible chat-completions client for the external AI advisor."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from futures_engine.models.signal import AIRecommendation

if TYPE_CHECKING:
    from futures_engine.config import Settings
    from futures_engine.models.analytics import MarketAnalysis
    from futures_engine.models.snapshot import MarketSnapshot

logger = structlog.get_logger()

ADVISOR_SYSTEM_PROMPT = """You are an expert crypto futures trading analyst.
Assess the market snapshot and order-flow analytics for one perpetual contract.
Default to HOLD if uncertain.
Respond ONLY with a single JSON object:
{"action": "LONG|SHORT|HOLD|EXIT", "confidence": 0.0-1.0,
 "targetPrice": number|null, "stopLoss": number|null, "reasoning": "..."}"""


def _is_retryable(exc: BaseException) -> bool:
    """Transport failures, throttling and 5xx. Other 4xx answers cannot succeed on retry."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.TransportError)


class AIAdvisor:
    """
    One recommendation per call. Any timeout, HTTP, parse or schema failure
    yields None so the rule-based signal runs alone.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self.settings = settings
        self.enabled = settings.AI_ENABLED
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._http = http_client
        self._owns_client = http_client is None

    async def aclose(self) -> None:
        if self._http is not None and self._owns_client:
            await self._http.aclose()
        self._http = None

    async def recommend(
        self, snapshot: MarketSnapshot, analysis: MarketAnalysis
    ) -> AIRecommendation | None:
        if not self.enabled:
            return None

        prompt = self.build_prompt(snapshot, analysis)
        try:
            raw = await asyncio.wait_for(
                self._call_api_with_retry(prompt),
                timeout=self.settings.AI_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("ai_advisor_timeout", timeout=self.settings.AI_TIMEOUT_SECONDS)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("ai_advisor_error", error=str(e))
            return None

        try:
            content = raw["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            logger.warning("ai_advisor_unexpected_response", raw=str(raw)[:200])
            return None

        data = self._extract_json(content or "")
        if data is None:
            logger.warning("ai_advisor_parse_error", content=(content or "")[:200])
            return None

        try:
            recommendation = AIRecommendation.model_validate(data)
        except PydanticValidationError:
            logger.warning("ai_advisor_schema_error", raw_text=str(data)[:200])
            return None

        logger.info(
            "ai_recommendation",
            symbol=snapshot.symbol,
            action=recommendation.action.value,
            confidence=recommendation.confidence,
        )
        return recommendation

    def build_prompt(self, snapshot: MarketSnapshot, analysis: MarketAnalysis) -> str:
        ind = snapshot.indicators
        context = {
            "symbol": snapshot.symbol,
            "timeframe": snapshot.timeframe,
            "price": snapshot.price,
            "indicators": {
                "rsi": round(ind.rsi, 2),
                "macd_histogram": round(ind.macd.histogram, 6),
                "bollinger": ind.bollinger.model_dump(),
                "atr": round(ind.atr, 6),
                "warm": ind.is_warm,
            },
            "cvd": analysis.cvd.model_dump(mode="json"),
            "volume": analysis.volume.model_dump(mode="json"),
            "pattern": analysis.pattern.model_dump(mode="json"),
            "support_levels": analysis.vrvp.support_levels,
            "resistance_levels": analysis.vrvp.resistance_levels,
            "hunter_zones": [
                z.price for z in analysis.vrvp.liquidity_zones if z.is_hunter_zone
            ],
        }
        return "Market snapshot:\n" + json.dumps(context, indent=2)

    async def _call_api_with_retry(self, prompt: str) -> dict:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=10),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                return await self._call_api(prompt)
        raise RuntimeError("unreachable")

    async def _call_api(self, prompt: str) -> dict:
        """Low-level HTTP POST."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.settings.AI_TIMEOUT_SECONDS)
        response = await self._http.post(
            self.settings.AI_API_URL,
            headers={
                "Authorization": f"Bearer {self.settings.AI_API_KEY}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.settings.AI_MODEL,
                "temperature": 0.2,
                "messages": [
                    {"role": "system", "content": ADVISOR_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            },
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _extract_json(text: str) -> dict | None:
        """Try to extract a JSON object from text."""
        try:
            data = json.loads(text)
            return data if isinstance(data, dict) else None
        except json.JSONDecodeError:
            pass

        try:
            start = text.index("{")
            end = text.rindex("}") + 1
            data = json.loads(text[start:end])
            return data if isinstance(data, dict) else None
        except (ValueError, json.JSONDecodeError):
            pass

        return None
