"""Orchestrator that turns a conversation context into the next refinement step."""

from typing import Callable

from loguru import logger

from promptrefiner.agents.context import ConversationContextBuilder
from promptrefiner.agents.errors import ErrorKind, RefinementError, TransportError
from promptrefiner.agents.policies import RetryConfig, RetryController, Sleep
from promptrefiner.agents.repair import CanonicalResult, ResponseRepairPipeline
from promptrefiner.agents.types import (
    ConversationContext,
    CredentialProvider,
    GenerationRequest,
    RetryAttemptRecord,
    Transport,
)
from promptrefiner.utils.env_cfg import load_model_env
from promptrefiner.utils.telemetry import Telemetry


class RefinementOrchestrator:
    """
    Produce the next step for a context: a batch of questions or final prompts.
    Handles credentials, request building, retries and response repair in sequence.
    """

    def __init__(
        self,
        transport: Transport,
        credentials: CredentialProvider,
        builder: ConversationContextBuilder | None = None,
        pipeline: ResponseRepairPipeline | None = None,
        retry_config: RetryConfig | None = None,
        telemetry: Telemetry | None = None,
        sleep: Sleep | None = None,
        model: str | None = None,
    ) -> None:
        """
        Initialize the RefinementOrchestrator.

        Args:
            transport (Transport): Sends a request and returns the raw text.
            credentials (CredentialProvider): Supplies the API key at dispatch time.
            builder (ConversationContextBuilder | None, optional): Builds requests. Defaults to None.
            pipeline (ResponseRepairPipeline | None, optional): Normalizes raw text. Defaults to None.
            retry_config (RetryConfig | None, optional): Retry policy. Defaults to RetryConfig.from_env().
            telemetry (Telemetry | None, optional): Receives stage events. Defaults to a disabled instance.
            sleep (Sleep | None, optional): Awaitable sleep used between attempts. Defaults to asyncio.sleep.
            model (str | None, optional): Model identifier. Defaults to the configured model.
        """
        self.transport = transport
        self.credentials = credentials
        self.telemetry = telemetry or Telemetry(enabled=False)
        self.builder = builder or ConversationContextBuilder()
        self.pipeline = pipeline or ResponseRepairPipeline(telemetry=self.telemetry)
        self.retry_config = retry_config or RetryConfig.from_env()
        self.sleep = sleep
        self.model = model or load_model_env().model

    def _credential(self) -> str:
        key = self.credentials.get_credential()
        if not key or not key.strip():
            logger.error("RefinementError: no API key configured.")
            self.telemetry.emit("error", {"kind": ErrorKind.AUTH_MISSING.value})
            raise RefinementError(ErrorKind.AUTH_MISSING)
        return key.strip()

    async def _attempt(
        self, request: GenerationRequest, api_key: str, idea: str, attempt: int
    ) -> CanonicalResult:
        """
        Send one request and repair its response.

        Args:
            request (GenerationRequest): The prebuilt request.
            api_key (str): The credential.
            idea (str): The user's idea, for placeholder prompts.
            attempt (int): The 1-based attempt number.

        Returns:
            CanonicalResult: The canonical result of this attempt.

        Raises:
            RefinementError: If the call or the repair fails.
        """
        try:
            raw = await self.transport.generate(request, api_key)
        except TransportError as e:
            self.telemetry.emit(
                "error",
                {"attempt": attempt, "kind": e.hint.value, "detail": e.detail[:500]},
            )
            raise
        except RefinementError:
            raise
        except Exception as e:
            logger.exception("Unexpected transport failure on attempt {}", attempt)
            self.telemetry.emit(
                "error", {"attempt": attempt, "kind": ErrorKind.UNKNOWN.value, "detail": str(e)}
            )
            raise RefinementError(ErrorKind.UNKNOWN) from e

        self.telemetry.emit(
            "response", {"attempt": attempt, "raw": raw[:2000] if raw else ""}
        )
        return self.pipeline.repair(raw, idea=idea)

    async def run(
        self,
        context: ConversationContext,
        on_attempt: Callable[[RetryAttemptRecord], None] | None = None,
        on_delay: Callable[[int, float, bool], None] | None = None,
    ) -> CanonicalResult:
        """
        Produce the next refinement step for the context.

        The request is built once; every retry re-sends the same request.

        Args:
            context (ConversationContext): The current conversation context.
            on_attempt (Callable[[RetryAttemptRecord], None] | None, optional): Called before each attempt.
            on_delay (Callable[[int, float, bool], None] | None, optional): Called before each wait.

        Returns:
            CanonicalResult: A RefiningResult or a CompleteResult.

        Raises:
            RefinementError: If no credential is configured, a non-retryable error occurs
                or retries are exhausted (RetryExhaustedError).
        """
        api_key = self._credential()
        request = self.builder.build(context, self.model)
        logger.info(
            "Dispatching round {} ({} prior turns, stacks={})",
            context.round,
            len(context.turns),
            sorted(context.stacks),
        )
        self.telemetry.emit(
            "request",
            {
                "model": request.model,
                "round": context.round,
                "turns": len(context.turns),
                "contents": request.contents,
                "systemInstruction": request.system_instruction,
            },
        )

        controller = RetryController(
            config=self.retry_config,
            sleep=self.sleep,
            telemetry=self.telemetry,
            on_attempt=on_attempt,
            on_delay=on_delay,
        )

        async def _op(attempt: int) -> CanonicalResult:
            return await self._attempt(request, api_key, context.idea, attempt)

        result = await controller.execute(_op)
        logger.info("Round {} produced status '{}'", context.round, result.status)
        return result
