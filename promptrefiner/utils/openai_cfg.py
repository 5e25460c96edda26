from dataclasses import dataclass, field
from typing import Any

import openai
from loguru import logger
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from promptrefiner.agents.errors import ErrorKind, TransportError
from promptrefiner.agents.types import GenerationRequest
from promptrefiner.utils.env_cfg import load_model_env

_MESSAGE_HINTS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("api key not valid", "permission_denied", "invalid api key", "unauthorized"), ErrorKind.AUTH_INVALID),
    (("rate limit", "resource_exhausted", "too many requests", "quota"), ErrorKind.RATE_LIMITED),
    (("overloaded", "unavailable", "503", "internal error"), ErrorKind.SERVICE_UNAVAILABLE),
    (("fetch", "timed out", "timeout", "connection", "network"), ErrorKind.NETWORK),
)


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Map an SDK or network exception onto a transport classification hint.

    Typed SDK errors are matched first; the message text is used as a fallback.

    Args:
        exc (BaseException): The exception raised by the client.

    Returns:
        ErrorKind: One of AUTH_INVALID, RATE_LIMITED, SERVICE_UNAVAILABLE, NETWORK, UNKNOWN.
    """
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorKind.AUTH_INVALID
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, openai.InternalServerError):
        return ErrorKind.SERVICE_UNAVAILABLE
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code in (502, 503, 504, 529) or exc.status_code >= 500:
            return ErrorKind.SERVICE_UNAVAILABLE
        if exc.status_code == 429:
            return ErrorKind.RATE_LIMITED
        if exc.status_code in (401, 403):
            return ErrorKind.AUTH_INVALID
    if isinstance(exc, (openai.APIConnectionError, TimeoutError, ConnectionError)):
        return ErrorKind.NETWORK

    message = str(exc).lower()
    for needles, kind in _MESSAGE_HINTS:
        if any(n in message for n in needles):
            return kind
    return ErrorKind.UNKNOWN


@dataclass
class OpenAITransport:
    """
    Sends one structured generation request to an OpenAI-compatible endpoint.

    The SDK's own retries are disabled; retrying is the caller's job.
    """

    api_base: str | None = None
    request_timeout: float | None = None
    temperature: float | None = None
    _clients: dict[str, AsyncOpenAI] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        """
        Post-initialization to fill unset values from configuration.
        """
        _model_config = load_model_env()
        if self.api_base is None:
            self.api_base = _model_config.api_base
        if self.request_timeout is None:
            self.request_timeout = _model_config.request_timeout
        if self.temperature is None:
            self.temperature = _model_config.temperature

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.api_base,
                timeout=self.request_timeout,
                max_retries=0,
            )
            self._clients[api_key] = client
        return client

    @staticmethod
    def build_messages(request: GenerationRequest) -> list[ChatCompletionMessageParam]:
        """
        Build chat messages for a request.

        Args:
            request (GenerationRequest): The request.

        Returns:
            list[ChatCompletionMessageParam]: System instruction followed by the conversational text.
        """
        messages: list[ChatCompletionMessageParam] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        messages.append({"role": "user", "content": request.contents})
        return messages

    @staticmethod
    def build_response_format(request: GenerationRequest) -> dict[str, Any]:
        if not request.response_schema:
            return {"type": "json_object"}
        return {
            "type": "json_schema",
            "json_schema": {"name": "refinement_step", "schema": request.response_schema},
        }

    async def generate(self, request: GenerationRequest, api_key: str) -> str:
        """
        Send the request and return the raw response text.

        Args:
            request (GenerationRequest): The request to send.
            api_key (str): The credential for the endpoint.

        Returns:
            str: The raw text of the first choice (may be empty).

        Raises:
            TransportError: If the call fails, with a classification hint.
        """
        client = self._client_for(api_key)
        try:
            response = await client.chat.completions.create(
                model=request.model,
                messages=self.build_messages(request),
                response_format=self.build_response_format(request),  # type: ignore[arg-type]
                temperature=self.temperature,
            )
        except Exception as e:
            hint = classify_exception(e)
            logger.error("TransportError ({}): {}", hint.value, e)
            raise TransportError(hint, detail=str(e)) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
