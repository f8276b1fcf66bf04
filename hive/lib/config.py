"""
Hive configuration.

Loads .hive/hive.yaml and merges it over defaults. A missing file yields the
defaults; an unparseable file logs a warning and yields the defaults.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

HIVE_DIR_NAME = ".hive"
CONFIG_FILE_NAME = "hive.yaml"
DB_FILE_NAME = "hive.db"
LOCK_FILE_NAME = "manager.lock"

AGENT_TIERS = ("tech_lead", "senior", "intermediate", "junior", "qa")

DEFAULT_MODELS = {
    "tech_lead": "opus",
    "senior": "sonnet",
    "intermediate": "sonnet",
    "junior": "haiku",
    "qa": "sonnet",
}


class HiveRootNotFound(Exception):
    """No .hive directory at or above the starting directory."""
    pass


@dataclass
class ModelConfig:
    """CLI and model used to run one agent tier."""
    model: str
    cli_tool: str = "claude"
    safety_mode: str = "unsafe"  # "safe" leaves permission prompts to a human


@dataclass
class RefactorConfig:
    enabled: bool = False
    capacity_percent: int = 0
    allow_without_feature_work: bool = False


@dataclass
class ScalingConfig:
    senior_capacity: int = 20
    max_seniors_per_team: int = 3
    junior_max_complexity: int = 3
    intermediate_max_complexity: int = 5
    refactor: RefactorConfig = field(default_factory=RefactorConfig)


@dataclass
class ClassifierConfig:
    """Local CLI used to judge whether a stalled session finished its story."""
    cli_tool: str = "codex"
    model: str = "gpt-5-mini"
    timeout_ms: int = 60000


@dataclass
class ManagerConfig:
    slow_poll_interval: int = 60000
    stuck_threshold_ms: int = 120000
    nudge_cooldown_ms: int = 300000
    lock_stale_ms: int = 120000
    screen_static_inactivity_threshold_ms: int = 600000
    max_stuck_nudges_per_story: int = 1
    completion_classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    use_prefect: bool = False


@dataclass
class MergeQueueConfig:
    autonomy: str = "full"  # "partial" leaves approved PRs for a human to merge
    max_pr_age_hours: float | None = None
    stale_review_min_age_ms: int = 600000


@dataclass
class ClusterConfig:
    enabled: bool = False
    is_leader: bool = True


@dataclass
class LoggingConfig:
    level: str = "info"


@dataclass
class HiveConfig:
    models: dict[str, ModelConfig] = field(
        default_factory=lambda: {tier: ModelConfig(model=m) for tier, m in DEFAULT_MODELS.items()}
    )
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    merge_queue: MergeQueueConfig = field(default_factory=MergeQueueConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def model_for(self, agent_type: str) -> ModelConfig:
        return self.models.get(agent_type) or ModelConfig(model=DEFAULT_MODELS.get(agent_type, "sonnet"))


@dataclass
class HivePaths:
    """Filesystem locations under a Hive workspace root."""
    root: Path

    @property
    def hive_dir(self) -> Path:
        return self.root / HIVE_DIR_NAME

    @property
    def db_path(self) -> Path:
        return self.hive_dir / DB_FILE_NAME

    @property
    def config_path(self) -> Path:
        return self.hive_dir / CONFIG_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.hive_dir / LOCK_FILE_NAME


def find_hive_root(start: Path | None = None) -> Path:
    """Walk up from `start` to the first directory containing .hive/."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / HIVE_DIR_NAME).is_dir():
            return candidate
    raise HiveRootNotFound(f"No {HIVE_DIR_NAME} directory found at or above {current}. Run 'hive init'.")


def _section(data: dict, key: str) -> dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        logger.warning(f"Ignoring non-mapping config section '{key}'")
        return {}
    return value


def _pick(cls, values: dict) -> dict[str, Any]:
    """Keep only keys the dataclass knows; unknown keys are logged and dropped."""
    known = set(cls.__dataclass_fields__)
    for key in set(values) - known:
        logger.warning(f"Unknown config key '{key}' for {cls.__name__}")
    return {k: v for k, v in values.items() if k in known}


def config_from_dict(data: dict | None) -> HiveConfig:
    """Build a HiveConfig from a parsed YAML mapping."""
    if not data:
        return HiveConfig()

    config = HiveConfig()

    for tier, tier_data in _section(data, "models").items():
        if not isinstance(tier_data, dict):
            continue
        base = config.model_for(tier)
        merged = {"model": base.model, "cli_tool": base.cli_tool, "safety_mode": base.safety_mode}
        merged.update(_pick(ModelConfig, tier_data))
        config.models[tier] = ModelConfig(**merged)

    scaling = dict(_section(data, "scaling"))
    refactor = scaling.pop("refactor", None) or {}
    config.scaling = ScalingConfig(
        **_pick(ScalingConfig, scaling),
        refactor=RefactorConfig(**_pick(RefactorConfig, refactor)),
    )

    manager = dict(_section(data, "manager"))
    classifier = manager.pop("completion_classifier", None) or {}
    config.manager = ManagerConfig(
        **_pick(ManagerConfig, manager),
        completion_classifier=ClassifierConfig(**_pick(ClassifierConfig, classifier)),
    )

    config.merge_queue = MergeQueueConfig(**_pick(MergeQueueConfig, _section(data, "merge_queue")))
    config.cluster = ClusterConfig(**_pick(ClusterConfig, _section(data, "cluster")))
    config.logging = LoggingConfig(**_pick(LoggingConfig, _section(data, "logging")))
    return config


def load_config(root: Path) -> HiveConfig:
    """Load .hive/hive.yaml under `root`, falling back to defaults."""
    config_path = HivePaths(root).config_path
    if not config_path.exists():
        return HiveConfig()

    try:
        data = yaml.safe_load(config_path.read_text())
        return config_from_dict(data)
    except (yaml.YAMLError, TypeError) as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return HiveConfig()


DEFAULT_CONFIG_YAML = """\
# Hive configuration. Omitted keys use built-in defaults.
models:
  senior:
    cli_tool: claude
    model: sonnet
    safety_mode: unsafe
  junior:
    cli_tool: claude
    model: haiku
scaling:
  senior_capacity: 20
  max_seniors_per_team: 3
  junior_max_complexity: 3
  intermediate_max_complexity: 5
manager:
  stuck_threshold_ms: 120000
  nudge_cooldown_ms: 300000
  max_stuck_nudges_per_story: 1
merge_queue:
  autonomy: full
logging:
  level: info
"""
