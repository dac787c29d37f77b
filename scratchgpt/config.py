"""
Configuration

All hyperparameters live in dataclasses, grouped by concern. A Config can be
built from defaults, a JSON or TOML file, a plain dict or environment
variables, and must pass validate() before a model is built from it.

Classes:
    ModelConfig: Architecture hyperparameters
    TrainingConfig: Optimizer and training-loop settings for both phases
    DataConfig: Where the training texts live
    OutputConfig: Checkpoint directory, logging level, progress display
    Config: The four groups together
"""

import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

from scratchgpt.activations import ActivationKind
from scratchgpt.errors import ConfigurationError
from scratchgpt.layers import PositionalKind

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

DATA_FORMATS = ("json", "csv")
LOG_LEVELS = ("debug", "info", "warning", "warn", "error", "critical")


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters.

    Attributes:
        embedding_dim: Width of the hidden state (d_model)
        hidden_dim: Inner width of the feed-forward block (d_ff)
        num_heads: Attention heads; must divide embedding_dim
        num_blocks: Number of stacked transformer blocks
        max_seq_len: Longest sequence the model accepts
        vocab_size: Vocabulary size (0 = take it from the built vocabulary)
        activation: "gelu" or "relu"
        positional_encoding: "sinusoidal" (fixed) or "learned"
        layer_norm_epsilon: Variance epsilon in every LayerNorm
        seed: Seed for parameter initialization
    """

    embedding_dim: int = 128
    hidden_dim: int = 256
    num_heads: int = 4
    num_blocks: int = 3
    max_seq_len: int = 80
    vocab_size: int = 0
    activation: str = "gelu"
    positional_encoding: str = "sinusoidal"
    layer_norm_epsilon: float = 1e-5
    seed: int = 42

    @property
    def head_dim(self) -> int:
        return self.embedding_dim // self.num_heads


@dataclass
class TrainingConfig:
    """
    Training-loop and optimizer settings.

    Pretraining and instruction tuning run as two phases with their own epoch
    counts and learning rates, sharing one optimizer.
    """

    pretraining_epochs: int = 100
    finetuning_epochs: int = 100
    pretraining_lr: float = 5e-4
    finetuning_lr: float = 1e-4
    gradient_clip: float = 5.0
    beta1: float = 0.9
    beta2: float = 0.999
    adam_epsilon: float = 1e-8
    weight_decay: float = 0.0
    shuffle: bool = False
    shuffle_seed: int = 0
    checkpoint_enabled: bool = True
    checkpoint_interval: int = 10
    keep_checkpoints: int = 3
    metrics_window: int = 100


@dataclass
class DataConfig:
    pretraining_data: str = "data/pretraining_data.json"
    chat_training_data: str = "data/chat_training_data.json"
    format: str = "json"


@dataclass
class OutputConfig:
    checkpoint_dir: str = "./checkpoints"
    log_level: str = "info"
    show_progress: bool = True


# Environment variable -> (section, field, type)
ENV_OVERRIDES = {
    "SCRATCHGPT_EMBEDDING_DIM": ("model", "embedding_dim", int),
    "SCRATCHGPT_HIDDEN_DIM": ("model", "hidden_dim", int),
    "SCRATCHGPT_MAX_SEQ_LEN": ("model", "max_seq_len", int),
    "SCRATCHGPT_NUM_HEADS": ("model", "num_heads", int),
    "SCRATCHGPT_NUM_BLOCKS": ("model", "num_blocks", int),
    "SCRATCHGPT_PRETRAINING_LR": ("training", "pretraining_lr", float),
    "SCRATCHGPT_FINETUNING_LR": ("training", "finetuning_lr", float),
}


@dataclass
class Config:
    """
    Complete configuration.

    Example:
        config = Config.from_json("config.json")
        config.validate()
    """

    model: ModelConfig = field(default_factory=ModelConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    data: DataConfig = field(default_factory=DataConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "Config":
        """
        Build a Config from nested dicts; missing keys keep their defaults.

        Raises:
            ConfigurationError: On unknown sections or keys, or a value of the
                wrong type
        """
        sections = {
            "model": ModelConfig,
            "training": TrainingConfig,
            "data": DataConfig,
            "output": OutputConfig,
        }
        unknown_sections = set(values) - set(sections)
        if unknown_sections:
            raise ConfigurationError(
                f"Unknown configuration sections: {sorted(unknown_sections)}"
            )

        built = {}
        for name, section_cls in sections.items():
            section_values = values.get(name) or {}
            if not isinstance(section_values, dict):
                raise ConfigurationError(f"Section {name!r} must be a mapping")
            known = {f.name for f in fields(section_cls)}
            unknown_keys = set(section_values) - known
            if unknown_keys:
                raise ConfigurationError(
                    f"Unknown keys in section {name!r}: {sorted(unknown_keys)}"
                )
            section = section_cls(**section_values)
            _check_types(name, section)
            built[name] = section
        return cls(**built)

    @classmethod
    def from_json(cls, path: str) -> "Config":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                values = json.load(f)
        except OSError as error:
            raise ConfigurationError(f"Failed to read config file {path}: {error}") from error
        except json.JSONDecodeError as error:
            raise ConfigurationError(f"Failed to parse config file {path}: {error}") from error
        if not isinstance(values, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        logger.info("Loaded configuration from %s", path)
        return cls.from_dict(values)

    @classmethod
    def from_toml(cls, path: str) -> "Config":
        """Load configuration from a TOML file with [model], [training], ... tables."""
        try:
            with open(path, "rb") as f:
                values = tomllib.load(f)
        except OSError as error:
            raise ConfigurationError(f"Failed to read config file {path}: {error}") from error
        except tomllib.TOMLDecodeError as error:
            raise ConfigurationError(f"Failed to parse config file {path}: {error}") from error
        logger.info("Loaded configuration from %s", path)
        return cls.from_dict(values)

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """Load a .toml file as TOML and anything else as JSON."""
        if os.path.splitext(path)[1].lower() == ".toml":
            return cls.from_toml(path)
        return cls.from_json(path)

    def save_json(self, path: str) -> None:
        """Write configuration to a JSON file."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_env(
        cls, environ: Optional[Dict[str, str]] = None, base: Optional["Config"] = None
    ) -> "Config":
        """
        Defaults (or ``base``) overridden by SCRATCHGPT_* environment variables.

        Raises:
            ConfigurationError: If a variable cannot be parsed
        """
        environ = os.environ if environ is None else environ
        config = base if base is not None else cls()
        for variable, (section, name, parse) in ENV_OVERRIDES.items():
            raw = environ.get(variable)
            if raw is None:
                continue
            try:
                value = parse(raw)
            except ValueError:
                raise ConfigurationError(f"Invalid {variable} value: {raw!r}") from None
            setattr(getattr(config, section), name, value)
            logger.debug("Config override from %s: %s.%s=%r", variable, section, name, value)
        return config

    def validate(self) -> None:
        """
        Check every setting before anything is built.

        Raises:
            ConfigurationError: Describing the first invalid setting
        """
        for name in ("model", "training", "data", "output"):
            _check_types(name, getattr(self, name))

        model = self.model
        for name in ("embedding_dim", "hidden_dim", "num_heads", "num_blocks", "max_seq_len"):
            if getattr(model, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if model.vocab_size < 0:
            raise ConfigurationError("vocab_size must be >= 0")
        if model.embedding_dim % model.num_heads != 0:
            raise ConfigurationError(
                f"embedding_dim ({model.embedding_dim}) must be divisible by "
                f"num_heads ({model.num_heads})"
            )
        if model.layer_norm_epsilon <= 0:
            raise ConfigurationError("layer_norm_epsilon must be > 0")
        try:
            ActivationKind.parse(model.activation)
            PositionalKind.parse(model.positional_encoding)
        except ValueError as error:
            raise ConfigurationError(str(error)) from None

        training = self.training
        for name in ("pretraining_epochs", "finetuning_epochs"):
            if getattr(training, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        for name in ("pretraining_lr", "finetuning_lr", "gradient_clip", "adam_epsilon"):
            if getattr(training, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        for name in ("beta1", "beta2"):
            if not 0.0 <= getattr(training, name) < 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1)")
        if training.weight_decay < 0:
            raise ConfigurationError("weight_decay must be >= 0")
        for name in ("checkpoint_interval", "keep_checkpoints", "metrics_window"):
            if getattr(training, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")

        if self.data.format not in DATA_FORMATS:
            raise ConfigurationError(
                f"data.format must be one of {DATA_FORMATS}, got {self.data.format!r}"
            )
        if self.output.log_level.lower() not in LOG_LEVELS:
            raise ConfigurationError(f"Unknown log level {self.output.log_level!r}")


def _check_types(section_name: str, section) -> None:
    """
    Check each field of a config section against its declared type.

    Integers are accepted for float fields and converted in place. Booleans
    are not accepted as integers.

    Raises:
        ConfigurationError: Naming the field and the offending value
    """
    for f in fields(section):
        value = getattr(section, f.name)
        if f.type is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
            setattr(section, f.name, value)
        if isinstance(value, bool) and f.type is not bool:
            valid = False
        else:
            valid = isinstance(value, f.type)
        if not valid:
            raise ConfigurationError(
                f"{section_name}.{f.name} must be of type {f.type.__name__}, got {value!r}"
            )
