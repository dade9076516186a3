"""Ollama client wrapper implementing the embedding and generative providers."""
from typing import List, Dict, Optional, Protocol

import httpx
import structlog

from docqa import config
from docqa.errors import ProviderError

logger = structlog.get_logger()


class EmbeddingProvider(Protocol):
    """Anything that turns a batch of texts into one vector per text."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class GenerativeProvider(Protocol):
    """Anything that answers a prompt under a system instruction."""

    async def generate(self, system_instruction: str, user_prompt: str) -> str:
        ...


class OllamaClient:
    """Async client for interacting with Ollama API."""

    def __init__(
        self,
        base_url: str = None,
        chat_model: str = None,
        embedding_model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            chat_model: Generative model (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport, mainly for tests
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.chat_model = chat_model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.PROVIDER_TIMEOUT
        self.transport = transport

    def _client(self, timeout: float = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout, transport=self.transport
        )

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> Dict:
        """Send a non-streaming chat completion request to Ollama.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to the client's chat model)
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            Response dict with 'message' containing 'content'

        Raises:
            ProviderError: On connection or API errors
        """
        model = model or self.chat_model

        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
        }

        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        try:
            async with self._client() as client:
                logger.info(
                    "ollama_chat_request",
                    model=model,
                    message_count=len(messages),
                )

                response = await client.post(
                    f"{self.base_url}/api/chat",
                    json=payload,
                )
                response.raise_for_status()

                data = response.json()

                logger.info(
                    "ollama_chat_response",
                    model=model,
                    response_length=len(data.get("message", {}).get("content", "")),
                )

                return data

        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise ProviderError(f"Ollama unavailable at {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise ProviderError(f"Chat request failed: {e}") from e

    async def generate(self, system_instruction: str, user_prompt: str) -> str:
        """Answer a user prompt under a system instruction.

        Returns:
            The assistant message content (may be empty)
        """
        data = await self.chat(
            [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": user_prompt},
            ]
        )
        return data.get("message", {}).get("content", "") or ""

    async def embed(self, texts: List[str], model: str = None) -> List[List[float]]:
        """Generate one embedding per input text in a single request.

        Args:
            texts: Texts to embed
            model: Model to use (defaults to the client's embedding model)

        Returns:
            Embedding vectors in input order

        Raises:
            ProviderError: On API errors or a malformed response
        """
        if not texts:
            return []

        model = model or self.embedding_model

        payload = {
            "model": model,
            "input": texts,
        }

        try:
            async with self._client() as client:
                logger.debug(
                    "ollama_embedding_request",
                    model=model,
                    batch_size=len(texts),
                )

                response = await client.post(
                    f"{self.base_url}/api/embed",
                    json=payload,
                )
                response.raise_for_status()

                data = response.json()

        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e), batch_size=len(texts))
            raise ProviderError(f"Embedding request failed: {e}") from e

        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise ProviderError(
                f"Expected {len(texts)} embeddings, got "
                f"{len(embeddings) if isinstance(embeddings, list) else 'none'}"
            )

        logger.debug(
            "ollama_embedding_response",
            model=model,
            dimension=len(embeddings[0]) if embeddings else 0,
        )

        return embeddings
