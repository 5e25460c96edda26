import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

load_dotenv()


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class HostConfig:
    """
    Dataclass for HTTP host configuration.
    """

    backend_host: str
    cors_allowed_origins: str


@dataclass(frozen=True)
class ModelConfig:
    """
    Dataclass for model endpoint configuration.
    """

    model: str
    api_base: str
    api_key_env: str
    request_timeout: float
    temperature: float


@dataclass(frozen=True)
class RetryEnvConfig:
    """
    Dataclass for retry configuration.
    """

    max_attempts: int
    base_delay: float
    backoff_factor: float
    max_delay: float


@dataclass(frozen=True)
class SessionConfig:
    """
    Dataclass for session defaults.
    """

    max_rounds: int
    complexity: str
    output_style: str
    output_format: str


@dataclass(frozen=True)
class TelemetryConfig:
    """
    Dataclass for telemetry configuration.
    """

    enabled: bool
    buffer_size: int


@dataclass(frozen=True)
class PathConfig:
    """
    Dataclass for path configuration.
    """

    data: Path
    logs: Path
    history_db: str
    credentials: Path
    prompts: Path


def load_host_env() -> HostConfig:
    """
    Loads host configuration from environment variables or defaults.

    Returns:
        HostConfig: Dataclass containing host configuration.
        - backend_host (str): The backend host URL.
        - cors_allowed_origins (str): Comma-separated list of allowed CORS origins.
    """
    return HostConfig(
        backend_host=os.getenv("BACKEND_HOST", "http://localhost:8000"),
        cors_allowed_origins=os.getenv(
            "CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ),
    )


def load_model_env() -> ModelConfig:
    """
    Loads model endpoint configuration from environment variables or defaults.

    Returns:
        ModelConfig: Dataclass containing model configuration.
        - model (str): The model identifier sent with every request.
        - api_base (str): Base URL of the OpenAI-compatible endpoint.
        - api_key_env (str): Name of the environment variable holding the API key.
        - request_timeout (float): Per-request timeout in seconds.
        - temperature (float): Sampling temperature.
    """
    return ModelConfig(
        model=os.getenv("REFINER_MODEL", "gemini-2.5-pro"),
        api_base=os.getenv(
            "REFINER_API_BASE",
            "https://generativelanguage.googleapis.com/v1beta/openai/",
        ),
        api_key_env=os.getenv("REFINER_API_KEY_ENV", "GEMINI_API_KEY"),
        request_timeout=float(os.getenv("REFINER_REQUEST_TIMEOUT", "120")),
        temperature=float(os.getenv("REFINER_TEMPERATURE", "0.7")),
    )


def load_retry_env() -> RetryEnvConfig:
    """
    Loads retry configuration from environment variables or defaults.

    Returns:
        RetryEnvConfig: Dataclass containing retry configuration.
        - max_attempts (int): Total attempts including the first one.
        - base_delay (float): Delay in seconds before the second attempt.
        - backoff_factor (float): Multiplier applied to each further delay.
        - max_delay (float): Upper bound for any single delay in seconds.
    """
    return RetryEnvConfig(
        max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
        base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
        backoff_factor=float(os.getenv("RETRY_BACKOFF_FACTOR", "2.0")),
        max_delay=float(os.getenv("RETRY_MAX_DELAY", "10.0")),
    )


def load_session_env() -> SessionConfig:
    """
    Loads session defaults from environment variables or defaults.

    Returns:
        SessionConfig: Dataclass containing session defaults.
        - max_rounds (int): Rounds after which the model is told to finalize.
        - complexity (str): Target output complexity.
        - output_style (str): Target tone of the final prompts.
        - output_format (str): Format of the final prompts.
    """
    return SessionConfig(
        max_rounds=int(os.getenv("REFINER_MAX_ROUNDS", "5")),
        complexity=os.getenv("REFINER_COMPLEXITY", "detailed"),
        output_style=os.getenv("REFINER_OUTPUT_STYLE", "professional"),
        output_format=os.getenv("REFINER_OUTPUT_FORMAT", "Markdown"),
    )


def load_telemetry_env() -> TelemetryConfig:
    """
    Loads telemetry configuration from environment variables or defaults.

    Returns:
        TelemetryConfig: Dataclass containing telemetry configuration.
        - enabled (bool): Whether stage events are recorded.
        - buffer_size (int): Number of events kept in memory.
    """
    return TelemetryConfig(
        enabled=_as_bool(os.getenv("REFINER_TELEMETRY"), False),
        buffer_size=int(os.getenv("REFINER_TELEMETRY_BUFFER", "200")),
    )


def load_path_env() -> PathConfig:
    """
    Loads path configuration from environment variables or defaults.

    Returns:
        PathConfig: Dataclass containing path configuration.
        - data (Path): Directory for local state.
        - logs (Path): Path to the log file.
        - history_db (str): SQLAlchemy URL of the history database.
        - credentials (Path): File holding a saved API key.
        - prompts (Path): Directory with prompt templates.
    """
    data_dir = Path(
        os.getenv("REFINER_DATA_PATH", Path.home() / ".promptrefiner")
    ).expanduser()
    project_root: Path = Path(__file__).parents[2].resolve()
    utils_dir: Path = Path(__file__).parent.resolve()

    history_db = os.getenv("REFINER_HISTORY_DB") or f"sqlite:///{data_dir / 'history.db'}"

    return PathConfig(
        data=data_dir,
        logs=Path(
            os.getenv("LOG_PATH", project_root / ".logs" / "promptrefiner.log")
        ).expanduser(),
        history_db=history_db,
        credentials=Path(
            os.getenv("REFINER_CREDENTIALS_PATH", data_dir / "api_key")
        ).expanduser(),
        prompts=utils_dir / "prompts",
    )


def load_prompt(kw: str = "system", prompt_dir: Path | None = None) -> str:
    """
    Load a prompt template from the prompts directory.

    Args:
        kw (str, optional): The keyword identifying the prompt file. Defaults to "system".
        prompt_dir (Path | None, optional): Directory to read from. Defaults to the configured prompts path.

    Returns:
        str: The content of the prompt file.

    Raises:
        FileNotFoundError: If the prompt file for the given keyword does not exist.
    """
    prompt_dir = prompt_dir or load_path_env().prompts
    prompt_path = prompt_dir / f"{kw}.txt"
    if not prompt_path.is_file():
        logger.error("FileNotFoundError: Prompt file for keyword '{}' not found.", kw)
        raise FileNotFoundError(f"Prompt file for keyword '{kw}' not found.")
    with open(prompt_path, "r", encoding="utf-8") as f:
        logger.debug("Loaded prompt from '{}'", prompt_path)
        return f.read().strip()
