from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "DEVBOOT_"


class Settings(BaseModel):
    """Run configuration; environment first, CLI options on top."""
    store: str = ".devboot/status"
    locks: str = ".devboot/locks"
    idle_timeout: float = Field(default=20.0, gt=0)
    deadline: float = Field(default=300.0, gt=0)
    poll_interval: float = Field(default=3.0, gt=0)
    report_interval: float = Field(default=3.0, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw:
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
