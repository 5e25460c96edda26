import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from promptrefiner.utils.env_cfg import load_model_env, load_path_env


@dataclass
class EnvCredentialProvider:
    """
    Reads the API key from an environment variable on every call.
    """

    env_var: str | None = None

    def __post_init__(self) -> None:
        if self.env_var is None:
            self.env_var = load_model_env().api_key_env

    def get_credential(self) -> str | None:
        value = os.getenv(self.env_var or "")
        return value.strip() if value and value.strip() else None


@dataclass
class FileCredentialStore:
    """
    Persists a single API key in a local file.

    The environment variable, when set, takes precedence over the saved key.
    """

    path: Path | None = None
    env_var: str | None = None

    def __post_init__(self) -> None:
        """
        Post-initialization to resolve the file path and variable name.
        """
        if self.path is None:
            self.path = load_path_env().credentials
        if self.env_var is None:
            self.env_var = load_model_env().api_key_env

    def get_credential(self) -> str | None:
        """
        Return the configured API key.

        Returns:
            str | None: The key from the environment, else the saved key, else None.
        """
        env_value = os.getenv(self.env_var or "")
        if env_value and env_value.strip():
            return env_value.strip()
        if self.path is None or not self.path.is_file():
            return None
        saved = self.path.read_text(encoding="utf-8").strip()
        return saved or None

    def has_credential(self) -> bool:
        return self.get_credential() is not None

    def save(self, api_key: str) -> None:
        """
        Save an API key to the credentials file.

        Args:
            api_key (str): The key to store.

        Raises:
            ValueError: If the key is blank.
            RuntimeError: If no credential file path is configured.
        """
        key = api_key.strip()
        if not key:
            logger.error("ValueError: API key must not be empty.")
            raise ValueError("API key must not be empty.")
        if self.path is None:
            logger.error("RuntimeError: Credential file path is not configured.")
            raise RuntimeError("Credential file path is not configured.")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(key, encoding="utf-8")
        try:
            self.path.chmod(0o600)
        except OSError as e:
            logger.warning("Could not restrict permissions on {}: {}", self.path, e)
        logger.info("Saved API key to {}", self.path)

    def remove(self) -> None:
        if self.path is not None and self.path.exists():
            self.path.unlink()
            logger.info("Removed API key from {}", self.path)
