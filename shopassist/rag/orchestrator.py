"""RAG orchestration: retrieval, context assembly and grounded completion.

A call ends in one of three ways: a normal answer, a degraded answer (query
embedding, vector search or the completion provider failed), or a quota
rejection. Only malformed input raises.
"""
import asyncio
import sqlite3
import time
from typing import List, Optional, Set, Tuple

import structlog

from shopassist import config
from shopassist.errors import ProviderError, ValidationError
from shopassist.events import RESPONSE_GENERATED, EventBus
from shopassist.license import FEATURE_BASIC_CHAT, METRIC_CONVERSATIONS
from shopassist.memory import ConversationManager
from shopassist.models import Completion, ResponseResult, ResponseStatus, RetrievalResult
from shopassist.protocols import CompletionProvider, QuotaService
from shopassist.rag.confidence import compute_confidence
from shopassist.rag.prompt import PromptBuilder, classify_query_type, detect_prompt_injection
from shopassist.rag.retriever import AssembledContext, Retriever

logger = structlog.get_logger()

FALLBACK_MODEL = "fallback"
QUOTA_MESSAGE = (
    "The assistant has reached its usage limit for now. "
    "Please contact the store directly for help."
)


class RagOrchestrator:
    """Answers shopper queries grounded in the indexed content."""

    def __init__(
        self,
        retriever: Retriever,
        completion_provider: CompletionProvider,
        memory: ConversationManager,
        quota: Optional[QuotaService] = None,
        events: Optional[EventBus] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        chat_model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 500,
        provider_timeout: Optional[float] = None,
        max_query_length: Optional[int] = None,
    ):
        self.retriever = retriever
        self.completion_provider = completion_provider
        self.memory = memory
        self.quota = quota
        self.events = events
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.chat_model = chat_model or config.CHAT_MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.provider_timeout = provider_timeout or config.PROVIDER_TIMEOUT
        self.max_query_length = max_query_length or config.MAX_QUERY_LENGTH
        # Conversations whose first turn holds a quota reservation
        self._opening: Set[str] = set()

    def _validate(
        self,
        query: str,
        conversation_id: str,
        top_k: Optional[int],
        min_score: Optional[float],
    ) -> str:
        if query is None or not query.strip():
            raise ValidationError("Query cannot be empty")
        query = query.strip()
        if len(query) > self.max_query_length:
            raise ValidationError(
                f"Query too long ({len(query)} characters, max {self.max_query_length})"
            )
        if conversation_id is None or not str(conversation_id).strip():
            raise ValidationError("conversation_id is required")
        if top_k is not None and top_k <= 0:
            raise ValidationError(f"top_k must be positive, got {top_k}")
        if min_score is not None and not 0.0 <= min_score <= 1.0:
            raise ValidationError(f"min_score must be within [0, 1], got {min_score}")
        return query

    def _admit(self, conversation_id: str) -> Tuple[Optional[str], bool]:
        """Decide whether a call may proceed, reserving quota for new conversations.

        The limit check and the reservation are a single quota call made
        before any provider call. A conversation whose first turn is still
        in flight is not reserved twice.

        Returns:
            (exhausted metric/feature or None, whether a conversation was reserved)
        """
        if self.quota is None:
            return None, False
        if not self.quota.is_feature_enabled(FEATURE_BASIC_CHAT):
            return FEATURE_BASIC_CHAT, False
        if self.memory.has_conversation(conversation_id) or conversation_id in self._opening:
            return None, False
        if not self.quota.reserve(METRIC_CONVERSATIONS).within_limits:
            return METRIC_CONVERSATIONS, False
        self._opening.add(conversation_id)
        return None, True

    async def generate_response(
        self,
        query: str,
        conversation_id: str,
        use_rag: bool = True,
        content_type: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> ResponseResult:
        """Answer a shopper query.

        Args:
            query: Shopper message
            conversation_id: Conversation the message belongs to
            use_rag: Retrieve store content as grounding; False answers from
                the model's general knowledge only
            content_type: Restrict retrieval to one content type
            top_k: Number of chunks to retrieve (default from the retriever)
            min_score: Minimum similarity (default from the retriever)

        Returns:
            ResponseResult; status DEGRADED when retrieval or completion
            failed, QUOTA_EXCEEDED when the license does not allow the call

        Raises:
            ValidationError: If the query or conversation id is malformed
        """
        query = self._validate(query, conversation_id, top_k, min_score)
        conversation_id = str(conversation_id)
        log = logger.bind(conversation_id=conversation_id)

        rejected, reserved = self._admit(conversation_id)
        if rejected is not None:
            log.warning("response_quota_exceeded", metric=rejected)
            return ResponseResult(
                text=QUOTA_MESSAGE,
                confidence=0.0,
                sources=[],
                model_used="",
                tokens_used=0,
                context_chunks=0,
                conversation_id=conversation_id,
                status=ResponseStatus.QUOTA_EXCEEDED,
                error=f"Quota exceeded for '{rejected}'",
            )

        try:
            result = await self._answer(
                query, conversation_id, use_rag, content_type, top_k, min_score, log
            )
        except BaseException:
            if reserved:
                self.quota.release(METRIC_CONVERSATIONS)
            raise
        finally:
            if reserved:
                self._opening.discard(conversation_id)

        if self.events is not None:
            self.events.publish(RESPONSE_GENERATED, result=result)
        return result

    async def _answer(
        self,
        query: str,
        conversation_id: str,
        use_rag: bool,
        content_type: Optional[str],
        top_k: Optional[int],
        min_score: Optional[float],
        log,
    ) -> ResponseResult:
        started = time.monotonic()
        query_type = classify_query_type(query)
        injection_detected = detect_prompt_injection(query)
        degraded = False
        error: Optional[str] = None

        results: List[RetrievalResult] = []
        if use_rag:
            query_vector = await self.retriever.embed_query(query)
            if query_vector is None:
                degraded = True
                error = "Query embedding unavailable"
                log.warning("rag_retrieval_degraded", reason="embedding_failed")
            else:
                try:
                    results = await self.retriever.search(
                        query_vector, top_k=top_k, content_type=content_type, min_score=min_score
                    )
                except (ValidationError, sqlite3.Error) as e:
                    degraded = True
                    error = f"Retrieval unavailable: {e}"
                    log.warning("rag_retrieval_degraded", reason="search_failed", error=str(e))
                else:
                    if not results:
                        log.info("no_relevant_context_found")

        context = self.retriever.build_context(results) if results else AssembledContext()

        history = self.memory.format_conversation_history(conversation_id)
        messages = self.prompt_builder.build_messages(
            query,
            context=context.text,
            history=history,
            query_type=query_type,
            injection_detected=injection_detected,
        )

        completion: Optional[Completion] = None
        try:
            async with asyncio.timeout(self.provider_timeout):
                completion = await self.completion_provider.complete(
                    messages,
                    model=self.chat_model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
        except TimeoutError:
            error = f"Completion timed out after {self.provider_timeout}s"
            log.warning("completion_timeout", timeout=self.provider_timeout)
        except ProviderError as e:
            error = str(e)
            log.warning(
                "completion_failed",
                error=str(e),
                retryable=e.retryable,
                status_code=e.status_code,
            )

        if completion is not None:
            text = completion.text
            tokens_used = completion.tokens_used
            model_used = completion.model_used or self.chat_model
            model_confidence = completion.confidence
        else:
            degraded = True
            text = self.prompt_builder.build_fallback_response(query_type, context.results)
            tokens_used = 0
            model_used = FALLBACK_MODEL
            model_confidence = None

        confidence = compute_confidence(
            [r.score for r in context.results],
            model_confidence=model_confidence,
            response_text=text,
            degraded=degraded,
        )

        self.memory.add_turn(conversation_id, query, text)

        result = ResponseResult(
            text=text,
            confidence=confidence,
            sources=context.results,
            model_used=model_used,
            tokens_used=tokens_used,
            context_chunks=len(context.results),
            conversation_id=conversation_id,
            status=ResponseStatus.DEGRADED if degraded else ResponseStatus.SUCCESS,
            query_type=query_type,
            error=error,
        )

        log.info(
            "response_generated",
            status=result.status.value,
            use_rag=use_rag,
            query_type=query_type,
            context_chunks=result.context_chunks,
            confidence=round(confidence, 3),
            tokens_used=tokens_used,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return result
