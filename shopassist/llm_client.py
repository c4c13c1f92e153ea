"""Ollama client wrapper for embeddings and chat completions."""
import httpx
from typing import Any, Dict, List, Optional
import structlog

from shopassist import config
from shopassist.errors import (
    FatalProviderError,
    RetryableProviderError,
    provider_error_from_status,
)
from shopassist.models import Completion

logger = structlog.get_logger()


class OllamaClient:
    """Async client for the Ollama embedding and chat APIs.

    Transport and HTTP failures surface as ProviderError subclasses so
    callers can tell retryable conditions from fatal ones.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        chat_model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
        max_input_chars: Optional[int] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            chat_model: Completion model (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            batch_size: Maximum texts per embedding request
            max_input_chars: Texts longer than this are truncated before embedding
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.chat_model = chat_model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.PROVIDER_TIMEOUT
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.max_input_chars = max_input_chars or config.EMBEDDING_MAX_INPUT_CHARS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
                response.raise_for_status()
                return response.json()

        except httpx.TimeoutException as e:
            logger.warning("ollama_timeout", path=path, timeout=self.timeout, error=str(e))
            raise RetryableProviderError(f"Provider timed out after {self.timeout}s") from e
        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise RetryableProviderError(f"Provider unreachable: {e}") from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error("ollama_http_error", path=path, status_code=status_code, error=str(e))
            raise provider_error_from_status(
                status_code, f"Provider returned HTTP {status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("ollama_transport_error", path=path, error=str(e))
            raise RetryableProviderError(f"Provider request failed: {e}") from e
        except ValueError as e:
            # response.json() on a non-JSON body
            raise FatalProviderError(f"Malformed provider response: {e}") from e

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: Texts to embed

        Returns:
            One embedding vector per input text, in input order

        Raises:
            ProviderError: On API errors or malformed responses
        """
        if not texts:
            return []

        embeddings: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = [text[: self.max_input_chars] for text in texts[i : i + self.batch_size]]

            logger.debug(
                "ollama_embedding_request",
                model=self.embedding_model,
                batch_size=len(batch),
            )

            data = await self._post(
                "/api/embed",
                {"model": self.embedding_model, "input": batch},
            )
            vectors = data.get("embeddings") or []

            if len(vectors) != len(batch) or any(not v for v in vectors):
                raise FatalProviderError(
                    f"Expected {len(batch)} embeddings, got {len(vectors)}"
                )

            embeddings.extend(vectors)

        logger.debug(
            "ollama_embedding_response",
            model=self.embedding_model,
            count=len(embeddings),
            dimension=len(embeddings[0]),
        )
        return embeddings

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Completion:
        """Send a chat completion request to Ollama.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to the client's chat model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Cap on generated tokens

        Returns:
            Completion with text, token usage and the model that answered

        Raises:
            ProviderError: On API errors or an empty answer
        """
        model = model or self.chat_model

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": False,
        }

        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options:
            payload["options"] = options

        logger.info(
            "ollama_chat_request",
            model=model,
            message_count=len(messages),
        )

        data = await self._post("/api/chat", payload)
        content = data.get("message", {}).get("content", "")

        if not content:
            raise FatalProviderError("Empty response from completion provider")

        tokens_used = int(data.get("prompt_eval_count", 0)) + int(data.get("eval_count", 0))

        logger.info(
            "ollama_chat_response",
            model=data.get("model", model),
            response_length=len(content),
            tokens_used=tokens_used,
        )

        return Completion(
            text=content,
            tokens_used=tokens_used,
            model_used=data.get("model", model),
        )
