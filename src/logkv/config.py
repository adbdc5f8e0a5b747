"""
Engine configuration.

Validated with pydantic so bad values fail at startup with a readable
message rather than deep inside the storage layer.
"""

import os
from pathlib import Path
from typing import ClassVar, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class EngineConfig(BaseModel):
    """Settings for opening an ``Engine``."""

    model_config = ConfigDict(frozen=True)

    # Directory holding the segment files; created on first use
    data_dir: Path = Path("data")

    # Rollover threshold: the active segment is sealed once it reaches this size
    max_segment_size: int = Field(default=16 * 1024, gt=0)

    ENV_PREFIX: ClassVar[str] = "LOGKV_"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Build a config from ``LOGKV_DATA_DIR`` and ``LOGKV_MAX_SEGMENT_SIZE``.

        Unset variables keep their defaults.
        """
        if environ is None:
            environ = os.environ

        values = {}
        for field in ("data_dir", "max_segment_size"):
            name = f"{cls.ENV_PREFIX}{field.upper()}"
            if name in environ:
                values[field] = environ[name]
        return cls(**values)
