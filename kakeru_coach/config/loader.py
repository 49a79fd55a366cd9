"""
Configuration management and loading.

Handles plan limits, operation costs, storage paths and session behavior.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from kakeru_coach.core.guardrails import SubmissionLimits
from kakeru_coach.core.token_budget import CostTable, OperationKind, OPERATION_COSTS
from kakeru_coach.storage.models import LearnerProfile


@dataclass(frozen=True)
class PlanConfig:
    """Monthly allowance of a subscription plan."""
    token_limit: int
    vocabulary_limit: Optional[int] = None

    def __post_init__(self):
        if self.token_limit <= 0:
            raise ValueError("token_limit must be > 0")
        if self.vocabulary_limit is not None and self.vocabulary_limit <= 0:
            raise ValueError("vocabulary_limit must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = "kakeru.db"
    cache_path: str = "kakeru-cache.db"
    local_id_prefix: str = "local-"


@dataclass(frozen=True)
class SessionConfig:
    chat_retry_delay: float = 0.1
    discard_stale_responses: bool = True


DEFAULT_PLANS = {
    "free": PlanConfig(token_limit=10_000, vocabulary_limit=50),
    "pro": PlanConfig(token_limit=2_000_000, vocabulary_limit=None),
}


@dataclass(frozen=True)
class CoachConfig:
    """Complete application configuration."""
    plans: Dict[str, PlanConfig] = field(default_factory=lambda: dict(DEFAULT_PLANS))
    costs: CostTable = OPERATION_COSTS
    submission: SubmissionLimits = SubmissionLimits()
    storage: StorageConfig = StorageConfig()
    model: str = "gpt-4o-mini"
    session: SessionConfig = SessionConfig()
    profile: Optional[LearnerProfile] = None

    def get_plan(self, plan: str) -> PlanConfig:
        """Get a plan's allowance, falling back to the free plan."""
        if plan in self.plans:
            return self.plans[plan]
        return self.plans["free"]


def default_config() -> CoachConfig:
    """Built-in configuration used when no file is given."""
    return CoachConfig()


_ALLOWED_TOP_KEYS = {
    "plans", "operation_costs", "submission", "storage", "openai", "session", "profile"
}


def load_config(path: str) -> CoachConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are errors so a typo never silently falls back to a
    default limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated CoachConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - _ALLOWED_TOP_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = default_config()

    plans = dict(defaults.plans)
    for name, data in _section(raw_config, "plans").items():
        plans[name] = _parse_plan(data, f"plans.{name}")
    if "free" not in plans:
        raise ValueError("A 'free' plan is required")

    costs = dict(defaults.costs.costs)
    for name, value in _section(raw_config, "operation_costs").items():
        try:
            kind = OperationKind(name)
        except ValueError:
            valid = [k.value for k in OperationKind]
            raise ValueError(f"Unknown operation in operation_costs: {name} (valid: {valid})")
        costs[kind] = _positive_int(value, f"operation_costs.{name}")

    submission_data = _section(raw_config, "submission")
    _check_keys(submission_data, {"min_word_count", "max_answer_chars"}, "submission")
    submission = SubmissionLimits(
        min_word_count=_positive_int(
            submission_data.get("min_word_count", defaults.submission.min_word_count),
            "submission.min_word_count"),
        max_answer_chars=_positive_int(
            submission_data.get("max_answer_chars", defaults.submission.max_answer_chars),
            "submission.max_answer_chars"),
    )

    storage_data = _section(raw_config, "storage")
    _check_keys(storage_data, {"db_path", "cache_path", "local_id_prefix"}, "storage")
    storage = StorageConfig(
        db_path=str(storage_data.get("db_path", defaults.storage.db_path)),
        cache_path=str(storage_data.get("cache_path", defaults.storage.cache_path)),
        local_id_prefix=str(storage_data.get("local_id_prefix", defaults.storage.local_id_prefix)),
    )
    if not storage.local_id_prefix:
        raise ValueError("storage.local_id_prefix cannot be empty")

    openai_data = _section(raw_config, "openai")
    _check_keys(openai_data, {"model"}, "openai")
    model = str(openai_data.get("model", defaults.model))

    session_data = _section(raw_config, "session")
    _check_keys(session_data, {"chat_retry_delay", "discard_stale_responses"}, "session")
    retry_delay = session_data.get("chat_retry_delay", defaults.session.chat_retry_delay)
    if not isinstance(retry_delay, (int, float)) or retry_delay < 0:
        raise ValueError("'session.chat_retry_delay' must be >= 0")
    discard_stale = session_data.get(
        "discard_stale_responses", defaults.session.discard_stale_responses)
    if not isinstance(discard_stale, bool):
        raise ValueError("'session.discard_stale_responses' must be a boolean")

    profile = None
    if "profile" in raw_config:
        profile = _parse_profile(_section(raw_config, "profile"))

    return CoachConfig(
        plans=plans,
        costs=CostTable(costs),
        submission=submission,
        storage=storage,
        model=model,
        session=SessionConfig(
            chat_retry_delay=float(retry_delay),
            discard_stale_responses=discard_stale,
        ),
        profile=profile,
    )


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _parse_plan(data: Any, path: str) -> PlanConfig:
    """Parse and validate a plan section.

    Raises:
        ValueError: If the plan is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"Plan '{path}' must be a dictionary")
    _check_keys(data, {"token_limit", "vocabulary_limit"}, path)
    if "token_limit" not in data:
        raise ValueError(f"Missing required 'token_limit' in {path}")

    vocabulary_limit = data.get("vocabulary_limit")
    if vocabulary_limit is not None:
        vocabulary_limit = _positive_int(vocabulary_limit, f"{path}.vocabulary_limit")

    return PlanConfig(
        token_limit=_positive_int(data["token_limit"], f"{path}.token_limit"),
        vocabulary_limit=vocabulary_limit,
    )


def _parse_profile(data: Dict[str, Any]) -> LearnerProfile:
    _check_keys(data, {"uid", "level", "goal", "hobbies", "explanation_lang", "plan"}, "profile")
    if not data.get("uid"):
        raise ValueError("Missing required 'uid' in profile")

    hobbies = data.get("hobbies") or []
    if not isinstance(hobbies, list):
        raise ValueError("'profile.hobbies' must be a list")

    explanation_lang = str(data.get("explanation_lang", "ja"))
    if explanation_lang not in ("ja", "en"):
        raise ValueError("'profile.explanation_lang' must be one of: ['ja', 'en']")

    return LearnerProfile(
        uid=str(data["uid"]),
        level=str(data.get("level", "B1")),
        goal=str(data.get("goal", "")),
        hobbies=tuple(str(h) for h in hobbies),
        explanation_lang=explanation_lang,
        plan=str(data.get("plan", "free")),
    )
