import os
import re
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import BaseModel, Field

# ${VAR} or ${VAR:-default}.
_ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def expand_env(text: str) -> str:
    """Substitute environment references, unset variables without a default become empty."""
    return _ENV_PATTERN.sub(lambda match: os.environ.get(match.group(1), match.group(2) or ""), text)


class ConfigClass(BaseModel):
    kwargs: dict[str, Any] = Field(default_factory=dict)


class Config(BaseModel):
    logging: ConfigClass = Field(default_factory=ConfigClass)
    store: ConfigClass = Field(default_factory=ConfigClass)
    chain: ConfigClass = Field(default_factory=ConfigClass)
    prover: ConfigClass = Field(default_factory=ConfigClass)
    orchestrator: ConfigClass = Field(default_factory=ConfigClass)
    api: ConfigClass = Field(default_factory=ConfigClass)

    @classmethod
    def from_file(cls, path: Path | str) -> Self:
        with Path(path).open("r") as file:
            raw = expand_env(file.read())

        config_data = yaml.safe_load(raw) or {}
        config = cls.model_validate(config_data)
        return config
