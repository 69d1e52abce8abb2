"""Runtime configuration, read from the environment (and .env)."""

import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class RefinementConfig(BaseModel):
    """Tunable limits of one refinement turn.

    The retry budgets carry hard upper bounds: validation never makes more
    than 3 generation attempts and review never runs more than 5 cycles.
    """
    ambiguity_threshold: float = Field(0.6, ge=0.0, le=1.0, description="Below this confidence a request is AMBIGUOUS")
    max_validation_attempts: int = Field(3, ge=1, le=3)
    max_review_cycles: int = Field(5, ge=1, le=5)
    review_stall_limit: int = Field(3, ge=1, description="Non-improving review cycles before stopping")

    classifier_timeout: float = Field(20.0, gt=0)
    generation_timeout: float = Field(120.0, gt=0)
    probe_timeout: float = Field(10.0, gt=0)
    review_timeout: float = Field(90.0, gt=0)

    quality_window: int = Field(10, ge=2)
    enable_visual_review: bool = True
    concurrency_policy: Literal["queue", "cancel"] = "queue"
    history_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RefinementConfig":
        values = {
            "ambiguity_threshold": os.getenv("AMBIGUITY_THRESHOLD"),
            "max_validation_attempts": os.getenv("MAX_VALIDATION_ATTEMPTS"),
            "max_review_cycles": os.getenv("MAX_REVIEW_CYCLES"),
            "review_stall_limit": os.getenv("REVIEW_STALL_LIMIT"),
            "classifier_timeout": os.getenv("CLASSIFIER_TIMEOUT"),
            "generation_timeout": os.getenv("GENERATION_TIMEOUT"),
            "probe_timeout": os.getenv("PROBE_TIMEOUT"),
            "review_timeout": os.getenv("REVIEW_TIMEOUT"),
            "quality_window": os.getenv("QUALITY_WINDOW"),
            "concurrency_policy": os.getenv("CONCURRENCY_POLICY"),
            "history_dir": os.getenv("HISTORY_DIR"),
        }
        values = {key: value for key, value in values.items() if value not in (None, "")}
        values["enable_visual_review"] = _env_bool("ENABLE_VISUAL_REVIEW", True)
        return cls(**values)
