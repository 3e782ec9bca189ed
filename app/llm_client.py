"""Gemini API client wrapper with error handling."""
import httpx
from typing import Any, Dict, List, Optional, Sequence
import structlog

from app import config
from app.errors import ConfigurationError, UpstreamError

logger = structlog.get_logger()

# Gemini calls the assistant side of a conversation "model"
ROLE_MAP = {"user": "user", "assistant": "model"}


class GeminiClient:
    """Async client for the Gemini REST API (embeddings and generation).

    One instance owns one ``httpx.AsyncClient``; build it once per process
    and call ``aclose()`` on shutdown.
    """

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        chat_model: str = None,
        embedding_model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Gemini client.

        Args:
            api_key: Gemini API key (defaults to config.GEMINI_API_KEY)
            base_url: API base URL (defaults to config.GEMINI_BASE_URL)
            chat_model: Generation model (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests inject a mock here)
        """
        self.api_key = config.GEMINI_API_KEY if api_key is None else api_key
        self.base_url = (base_url or config.GEMINI_BASE_URL).rstrip("/")
        self.chat_model = chat_model or config.CHAT_MODEL
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.HTTP_TIMEOUT
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def _headers(self) -> Dict[str, str]:
        if not self.is_configured:
            raise ConfigurationError("GEMINI_API_KEY is not set in environment variables")
        return {"x-goog-api-key": self.api_key}

    async def _post(self, path: str, payload: Dict[str, Any], stage: str) -> Dict[str, Any]:
        headers = self._headers()
        response = await self._client.post(
            f"{self.base_url}/{path}", json=payload, headers=headers
        )
        response.raise_for_status()
        return self._json(response, stage)

    @staticmethod
    def _json(response: httpx.Response, stage: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            logger.error(
                "gemini_invalid_response_body",
                stage=stage,
                status_code=response.status_code,
            )
            raise UpstreamError(
                stage,
                "Response body is not valid JSON",
                {"status_code": response.status_code, "body": response.text[:500]},
            ) from e
        if not isinstance(data, dict):
            raise UpstreamError(stage, "Unexpected response body", {"status_code": response.status_code})
        return data

    async def embed_content(
        self,
        text: str,
        task_type: str,
        model: str = None,
        output_dimensionality: Optional[int] = None,
    ) -> List[float]:
        """Embed one text.

        Args:
            text: Text to embed
            task_type: Gemini task type, e.g. "RETRIEVAL_DOCUMENT"
            model: Model to use (defaults to the client's embedding model)
            output_dimensionality: Requested vector length

        Returns:
            Embedding values

        Raises:
            ConfigurationError: If the API key is missing
            httpx.HTTPError: On API errors
            UpstreamError: If the response carries no embedding
        """
        model = model or self.embedding_model
        payload = self._embed_request(text, task_type, model, output_dimensionality)

        try:
            logger.debug(
                "gemini_embedding_request",
                model=model,
                task_type=task_type,
                text_length=len(text),
            )
            data = await self._post(f"models/{model}:embedContent", payload, "embedding")
        except httpx.HTTPError as e:
            logger.error("gemini_embedding_error", error=str(e), model=model)
            raise

        values = (data.get("embedding") or {}).get("values")
        if not values:
            raise UpstreamError("embedding", "Failed to generate embeddings: invalid response")

        return values

    async def batch_embed_contents(
        self,
        texts: Sequence[str],
        task_type: str,
        model: str = None,
        output_dimensionality: Optional[int] = None,
    ) -> List[List[float]]:
        """Embed many texts in a single request.

        Returns:
            Embedding values in the same order as ``texts``

        Raises:
            ConfigurationError: If the API key is missing
            httpx.HTTPError: On API errors
            UpstreamError: If the response carries no embeddings
        """
        model = model or self.embedding_model
        payload = {
            "requests": [
                self._embed_request(text, task_type, model, output_dimensionality)
                for text in texts
            ]
        }

        try:
            logger.info(
                "gemini_batch_embedding_request",
                model=model,
                task_type=task_type,
                batch_size=len(texts),
            )
            data = await self._post(f"models/{model}:batchEmbedContents", payload, "embedding")
        except httpx.HTTPError as e:
            logger.error("gemini_batch_embedding_error", error=str(e), model=model)
            raise

        embeddings = data.get("embeddings")
        if not embeddings:
            raise UpstreamError(
                "embedding", "Failed to generate batch embeddings: invalid response"
            )

        return [embedding.get("values") or [] for embedding in embeddings]

    @staticmethod
    def _embed_request(
        text: str, task_type: str, model: str, output_dimensionality: Optional[int]
    ) -> Dict[str, Any]:
        request = {
            "model": f"models/{model}",
            "content": {"role": "user", "parts": [{"text": text}]},
            "taskType": task_type,
        }
        if output_dimensionality:
            request["outputDimensionality"] = output_dimensionality
        return request

    async def generate(
        self,
        prompt: str,
        history: Optional[Sequence[Any]] = None,
        model: str = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a reply to ``prompt``.

        Args:
            prompt: The final user turn
            history: Earlier turns (objects with ``role`` and ``content``),
                oldest first, sent before the prompt
            model: Model to use (defaults to the client's chat model)
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            The generated text

        Raises:
            ConfigurationError: If the API key is missing
            httpx.HTTPError: On API errors
            UpstreamError: If the model returned no text
        """
        model = model or self.chat_model

        contents = [
            {"role": ROLE_MAP[turn.role], "parts": [{"text": turn.content}]}
            for turn in history or []
        ]
        contents.append({"role": "user", "parts": [{"text": prompt}]})

        payload: Dict[str, Any] = {"contents": contents}
        if temperature is not None:
            payload["generationConfig"] = {"temperature": temperature}

        try:
            logger.info(
                "gemini_generate_request",
                model=model,
                turn_count=len(contents),
                prompt_length=len(prompt),
            )
            data = await self._post(f"models/{model}:generateContent", payload, "generation")
        except httpx.HTTPError as e:
            logger.error(
                "gemini_generate_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

        text = self._candidate_text(data)
        if text is None:
            reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise UpstreamError(
                "generation",
                "Model returned no text" + (f" (blocked: {reason})" if reason else ""),
            )

        logger.info("gemini_generate_response", model=model, response_length=len(text))
        return text

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> Optional[str]:
        candidates = data.get("candidates") or []
        if not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts = [part["text"] for part in parts if "text" in part]
        if not texts:
            return None
        return "".join(texts)

    async def list_models(self) -> List[str]:
        """List the model names available to this API key.

        Raises:
            ConfigurationError: If the API key is missing
            httpx.HTTPError: On API errors
            UpstreamError: If the response body is not JSON
        """
        try:
            response = await self._client.get(
                f"{self.base_url}/models", headers=self._headers(), timeout=5.0
            )
            response.raise_for_status()
            data = self._json(response, "model listing")
            return [m["name"].split("/", 1)[-1] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("gemini_list_models_error", error=str(e))
            raise

    async def aclose(self) -> None:
        await self._client.aclose()
