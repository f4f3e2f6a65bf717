import time
from typing import List, Optional

import httpx

from gateway.logging_config import get_logger
from gateway.services.circuit_breaker import CircuitBreaker
from gateway.services.llm.base import LLMProvider, LLMResponse
from gateway.services.model_stats import ModelStats
from gateway.services.result import BreakerOutcome, Fallback

logger = get_logger("llm.openai")


class LLMCallError(Exception):
    pass


def parse_completion(response: httpx.Response, model: str) -> LLMResponse:
    """Turn a chat completions response into an ``LLMResponse``.

    Raises ``LLMCallError`` for non-200 statuses and bodies that are not a
    completion object.
    """
    if response.status_code != 200:
        raise LLMCallError(f"HTTP {response.status_code}")
    try:
        data = response.json()
    except ValueError as exc:
        raise LLMCallError(f"invalid JSON body: {response.text[:80]!r}") from exc
    if not isinstance(data, dict):
        raise LLMCallError(f"unexpected body type: {type(data).__name__}")

    content = ""
    choices = data.get("choices")
    if choices:
        try:
            content = choices[0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise LLMCallError(f"malformed choices: {exc!r}") from exc
    return LLMResponse(content=content, model=data.get("model", model), usage=data.get("usage"))


class OpenAIProvider(LLMProvider):
    """OpenAI-compatible chat completions behind a circuit breaker.

    Models are tried best first (see ``ModelStats.get_model_priority``); the
    first one that answers wins. One ``generate`` call is one breaker call,
    however many models it tries. All failures resolve to ``Fallback``.
    """

    def __init__(
        self,
        api_key: str,
        breaker: CircuitBreaker,
        *,
        models: Optional[List[str]] = None,
        base_url: str = "https://api.openai.com/v1",
        model_stats: Optional[ModelStats] = None,
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.breaker = breaker
        self.models = models or ["gpt-4o-mini"]
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"
        self.model_stats = model_stats or ModelStats()
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def _candidate_models(self, model: Optional[str]) -> List[str]:
        if model:
            return [model]
        return self.model_stats.get_model_priority(self.models)

    async def _complete(
        self,
        candidates: List[str],
        messages: List[dict],
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        errors = []
        for candidate in candidates:
            payload = {
                "model": candidate,
                "messages": messages,
                "temperature": temperature,
                "max_completion_tokens": max_tokens,
            }
            logger.debug(f"OpenAI request: model={candidate}, messages_count={len(messages)}")

            started = time.monotonic()
            try:
                response = await self._client.post(
                    self.base_url,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
                result = parse_completion(response, candidate)
            except (httpx.HTTPError, LLMCallError) as exc:
                error = str(exc) or type(exc).__name__
                logger.error(f"OpenAI error ({candidate}): {error}")
                self.model_stats.record_failure(candidate, error, (time.monotonic() - started) * 1000)
                errors.append(f"{candidate}: {error}")
                continue

            self.model_stats.record_success(candidate, (time.monotonic() - started) * 1000)
            logger.debug(f"OpenAI content: {result.content[:100] if result.content else 'EMPTY'}")
            return result

        raise LLMCallError("; ".join(errors))

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> BreakerOutcome:
        candidates = self._candidate_models(model)
        if not candidates:
            return Fallback(reason="failure", detail="no model configured")

        outcome = await self.breaker.execute(
            lambda: self._complete(candidates, messages, temperature, max_tokens)
        )
        if isinstance(outcome, Fallback) and outcome.reason != "open":
            logger.warning(
                "No model answered",
                extra={"context": {"reason": outcome.reason, "detail": outcome.detail}},
            )
        return outcome

    async def aclose(self) -> None:
        await self._client.aclose()
