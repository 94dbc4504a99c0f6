"""
Tunables for the orchestration engine.
"""
import os
from typing import Any, Dict, Mapping, Optional
from pydantic import BaseModel, Field

ENV_PREFIX = "DOCKSTACK_"


class EngineSettings(BaseModel):
    """
    Timeouts and concurrency limits. Values can come from DOCKSTACK_* environment
    variables; CLI options override them.
    """
    grace_period: float = Field(default=10.0, ge=0)
    start_timeout: float = Field(default=60.0, gt=0)
    health_timeout: float = Field(default=120.0, gt=0)
    poll_interval: float = Field(default=0.5, gt=0)
    level_timeout: float = Field(default=300.0, gt=0)
    max_workers: int = Field(default=8, ge=1)

    @classmethod
    def from_environ(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "EngineSettings":
        """
        Builds settings from the environment, then applies explicit overrides.

        :param environ: Mapping to read from; defaults to os.environ.
        :param overrides: Field values that win over the environment. None values are ignored.
        :return: Validated settings.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for field_name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
