"""Grounded answers over retrieved history."""

import asyncio
from typing import List, Optional

from loguru import logger

from .bus import EventBus
from .config_store import ConfigStore
from .error_handling import CircuitBreaker
from .errors import CircuitOpenError, ProviderError
from .llm import OllamaClient
from .models import Answer, SearchMode, SearchResult, SearchStatus
from .search import RetrievalEngine


NO_HISTORY_ANSWER = "No relevant history found."

PROMPT_TEMPLATE = """You are a personal memory assistant. Answer the question using ONLY the history entries below.
If the entries do not contain the answer, say that the history does not contain it.
When the answer is a command, reply with the exact command as it was captured.

History entries:
{entries}

Question: {question}
Answer:"""


def _describe(result: SearchResult) -> str:
    entry = result.entry
    when = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC")
    details = [entry.source_type.value, when]
    if entry.context and entry.context.get("cwd"):
        details.append(f"cwd: {entry.context['cwd']}")
    return f"({', '.join(details)}) {entry.content}"


def build_prompt(question: str, results: List[SearchResult]) -> str:
    lines = [f"[{i}] {_describe(result)}" for i, result in enumerate(results, 1)]
    return PROMPT_TEMPLATE.format(entries="\n".join(lines), question=question.strip())


def format_raw_results(results: List[SearchResult], reason: str) -> str:
    lines = [f"{reason} Relevant history:"]
    lines.extend(f"{i}. {_describe(result)}" for i, result in enumerate(results, 1))
    return "\n".join(lines)


class AnswerComposer:
    """
    Answers natural-language questions from captured history.

    Retrieval runs in auto mode; the LLM is only called when there is
    something to ground on. If the provider fails or times out, the
    retrieved entries are returned verbatim and ``degraded`` is set.
    """

    def __init__(
        self,
        engine: RetrievalEngine,
        config_store: ConfigStore,
        client: Optional[OllamaClient] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.engine = engine
        self.config_store = config_store
        self.client = client or OllamaClient()
        self.event_bus = event_bus
        self.breaker = CircuitBreaker("llm", failure_threshold=3, recovery_timeout=30, expected_exception=ProviderError)

    async def ask(self, question: str, timeout: Optional[float] = None) -> Answer:
        snapshot = self.config_store.snapshot()
        llm_config = snapshot.config.llm
        if timeout is None:
            timeout = llm_config.timeout_s

        response = await self.engine.search(
            question, SearchMode.AUTO, limit=llm_config.max_history_results
        )
        if response.status is SearchStatus.FAILED:
            answer = Answer(
                text=f"Search failed: {response.error}",
                degraded=True,
                error=response.error,
            )
            return self._finish(answer)

        results = response.results
        if not results:
            return self._finish(Answer(text=NO_HISTORY_ANSWER))

        used = [result.entry.id for result in results]
        prompt = build_prompt(question, results)
        try:
            text = await asyncio.wait_for(
                self.breaker.call(self.client.generate, prompt, llm_config),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"LLM timed out after {timeout}s, returning raw history")
            return self._finish(Answer(
                text=format_raw_results(results, "The language model timed out."),
                used_entries=used, degraded=True, error="timeout", results=results,
            ))
        except (ProviderError, CircuitOpenError) as e:
            logger.warning(f"LLM unavailable, returning raw history: {e}")
            return self._finish(Answer(
                text=format_raw_results(results, "The language model is unavailable."),
                used_entries=used, degraded=True, error=str(e), results=results,
            ))

        text = text.strip()
        if not text:
            return self._finish(Answer(
                text=format_raw_results(results, "The language model returned no answer."),
                used_entries=used, degraded=True, error="empty response", results=results,
            ))
        return self._finish(Answer(text=text, used_entries=used, results=results))

    def _finish(self, answer: Answer) -> Answer:
        if self.event_bus is not None:
            self.event_bus.publish(
                "ask.completed", "answer_composer",
                used_entries=answer.used_entries, degraded=answer.degraded, error=answer.error,
            )
        return answer

    async def close(self) -> None:
        await self.client.close()

    async def llm_available(self) -> bool:
        """Whether the configured provider answers a health check right now."""
        return await self.client.is_available(self.config_store.snapshot().config.llm)
