"""
OpenAI-compatible HTTP collaborators for the virtual tool engine.

OpenAICompatibleChatClient implements the chat endpoint used to name and
divide tool groups; OpenAICompatibleEmbeddingsClient implements the remote
embeddings computer. Both speak plain OpenAI JSON over `requests` and run the
blocking call in a worker thread so the event loop keeps going.

Errors are mapped to builtin exceptions:
- PermissionError: authentication failures (401/403)
- RuntimeError: rate limits, server errors and malformed responses
- TimeoutError: request timeouts
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from config import config
from utils.cancellation import CancellationToken
from virtual_tools.types import Embedding, Embeddings, EmbeddingType

logger = logging.getLogger(__name__)


def _headers(api_key: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _handle_http_error(client_name: str, error: requests.HTTPError) -> None:
    """
    Map HTTP errors to builtin exceptions.

    Raises:
        PermissionError: For authentication failures
        RuntimeError: For rate limits, server errors and anything else
    """
    status = error.response.status_code if error.response is not None else 0

    if status == 401 or status == 403:
        logger.error(f"{client_name} authentication failed: {status}")
        raise PermissionError(f"{client_name} authentication failed")
    elif status == 429:
        logger.error(f"{client_name} rate limit exceeded")
        raise RuntimeError(f"{client_name} rate limit exceeded")
    elif status >= 500:
        logger.error(f"{client_name} server error: {status}")
        raise RuntimeError(f"{client_name} server error: {status}")
    else:
        logger.error(f"{client_name} API error: {status}")
        raise RuntimeError(f"{client_name} API error: {status}")


def _post(client_name: str, endpoint: str, api_key: Optional[str], payload: Dict[str, Any], timeout: int) -> Dict[str, Any]:
    try:
        logger.debug(f"{client_name} request to {endpoint} with model {payload.get('model')}")
        response = requests.post(endpoint, headers=_headers(api_key), json=payload, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except requests.Timeout:
        logger.error(f"{client_name} request timed out")
        raise TimeoutError(f"{client_name} request timed out")
    except requests.HTTPError as e:
        try:
            logger.error(f"{client_name} HTTP error: {e.response.status_code} - {e.response.json()}")
        except ValueError:
            logger.error(f"{client_name} HTTP error: {e.response.status_code} - {e.response.text}")
        _handle_http_error(client_name, e)
    except (requests.RequestException, ValueError) as e:
        logger.error(f"{client_name} error: {e}")
        raise RuntimeError(f"{client_name} error: {e}")


class OpenAICompatibleChatClient:
    """Chat endpoint backed by any OpenAI-compatible /chat/completions URL."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None
    ):
        """
        Initialize the chat client.

        Args:
            endpoint: Full URL to the chat completions endpoint
            model: Model identifier to use
            api_key: API key (optional for local providers like Ollama)
            timeout: Request timeout in seconds
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
        """
        settings = config.categorization
        self.endpoint = endpoint or settings.endpoint
        self.model = model or settings.model
        self.api_key = api_key if api_key is not None else settings.api_key
        self.timeout = timeout or settings.timeout
        self.max_tokens = max_tokens or settings.max_tokens
        self.temperature = temperature if temperature is not None else settings.temperature

        logger.info(f"OpenAICompatibleChatClient initialized: {self.endpoint} / {self.model}")

    async def make_chat_request(self, messages: List[Dict[str, Any]], token: CancellationToken) -> str:
        if token.is_cancellation_requested:
            return ""

        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        body = await asyncio.to_thread(_post, "Chat client", self.endpoint, self.api_key, payload, self.timeout)
        return self._extract_text(body)

    @staticmethod
    def _extract_text(body: Dict[str, Any]) -> str:
        choices = body.get("choices") if isinstance(body, dict) else None
        if not choices:
            logger.error(f"Invalid chat response: missing or empty choices - {body}")
            raise RuntimeError("Invalid chat response: missing or empty choices")

        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str):
            logger.error(f"Invalid chat response: no text content - {body}")
            raise RuntimeError("Invalid chat response: no text content")
        return content


class OpenAICompatibleEmbeddingsClient:
    """Embeddings computer backed by any OpenAI-compatible /embeddings URL."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None
    ):
        settings = config.embeddings
        self.endpoint = endpoint or settings.endpoint
        self.model = model or settings.model
        self.api_key = api_key if api_key is not None else settings.api_key
        self.timeout = timeout or settings.timeout

        logger.info(f"OpenAICompatibleEmbeddingsClient initialized: {self.endpoint} / {self.model}")

    async def compute_embeddings(
        self,
        embedding_type: EmbeddingType,
        texts: Sequence[str],
        token: CancellationToken
    ) -> Optional[Embeddings]:
        if token.is_cancellation_requested or not texts:
            return None

        payload = {
            "model": self.model,
            "input": list(texts),
            "dimensions": embedding_type.dimensions,
        }
        body = await asyncio.to_thread(_post, "Embeddings client", self.endpoint, self.api_key, payload, self.timeout)
        if token.is_cancellation_requested:
            return None

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            logger.error(f"Invalid embeddings response: expected {len(texts)} vectors")
            raise RuntimeError("Invalid embeddings response")

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return Embeddings(
            type=embedding_type,
            values=[Embedding(type=embedding_type, value=list(item["embedding"])) for item in ordered]
        )
