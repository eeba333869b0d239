"""
Backend configuration.

Settings come from environment variables (a '.env' file in the working directory
is loaded first). API keys are read with 'get_secret', which prefers a mounted
secret file at '/secrets/<name>' over the environment variable of the same name.
"""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

SECRETS_DIR = Path("/secrets")


def get_secret(name: str, required: bool = True) -> str:
    """Load a secret from a mounted secret file or an environment variable.

    Checks in order:
    1. /secrets/<name>
    2. <name> environment variable

    Raises ValueError if neither is available and 'required' is set.
    """
    secret_file = SECRETS_DIR / name
    if secret_file.exists():
        return secret_file.read_text().strip()
    key = os.environ.get(name, "")
    if not key and required:
        raise ValueError(
            f"{name} not found. Either:\n"
            f"  - Mount it as a secret file at {secret_file}, or\n"
            f"  - Set the {name} environment variable."
        )
    return key


class Settings(BaseModel):
    model_name: str = "gpt-4o"
    small_model_name: str = "gpt-4o-mini"
    llm_base_url: str | None = None
    max_steps: int = 5

    mcp_url: str | None = None

    store: Literal["memory", "dynamodb"] = "memory"
    table_name: str = "Chat"
    aws_region: str | None = None
    bucket: str | None = None

    turn_timeout: float = 120.0
    cors_origins: list[str] = []
    user_header: str = "X-User-Id"
    default_user_id: str | None = None

    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000


_ENV_PREFIX = "EVA_"


def load_settings(env_file: str | Path | None = None) -> Settings:
    load_dotenv(env_file)
    values: dict[str, object] = {}
    for name, field in Settings.model_fields.items():
        raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if field.annotation == list[str]:
            values[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            values[name] = raw
    return Settings.model_validate(values)
