"""
npu-router :: Configuration

Static per-model configuration plus memory and router settings.
Plain dataclasses with defaults; `from_dict` / `from_json` for the CLI.

Model names (pool keys):
  phi     fast default model         (Simple)
  llama   long-context conversation  (Context)
  qwen    structured actions         (Action)
  vision  screen understanding       (Vision)
  coder   code specialist            (Code)

INL - 2025
"""

import json
import os
from typing import Dict, List, Optional
from dataclasses import dataclass, field, fields, asdict

from npu_router.core.exceptions import ConfigurationError
from npu_router.core.sampling import SamplingParams


PHI = "phi"
LLAMA = "llama"
QWEN = "qwen"
VISION = "vision"
CODER = "coder"
WHISPER = "whisper"

MODEL_NAMES = (PHI, LLAMA, QWEN, VISION, CODER)


@dataclass
class ModelConfig:
    """Everything needed to construct one model session."""
    name: str
    path: str
    tokenizer_path: str = ""
    max_tokens: int = 512
    temperature: float = 0.7
    system_prompt: str = ""
    device: str = "cpu"

    def sampling_params(self) -> SamplingParams:
        return SamplingParams.from_temperature(self.temperature)

    def validate(self) -> Optional[str]:
        """Return an error message or None."""
        if not self.path:
            return f"{self.name}: model path is empty"
        if self.max_tokens < 1:
            return f"{self.name}: max_tokens must be >= 1"
        if self.temperature < 0:
            return f"{self.name}: temperature must be >= 0"
        return None

    def check_files(self) -> List[str]:
        """Missing files on disk, as human-readable problems."""
        problems = []
        if not os.path.exists(self.path):
            problems.append(f"weights not found: {self.path}")
        if self.tokenizer_path and not os.path.exists(self.tokenizer_path):
            problems.append(f"tokenizer not found: {self.tokenizer_path}")
        return problems


@dataclass
class MemoryConfig:
    """Idle-eviction settings."""
    unload_after_s: float = 300.0
    tick_interval_s: float = 30.0
    persistent: List[str] = field(default_factory=lambda: [WHISPER, PHI])


def default_model_configs(model_dir: str = "models") -> Dict[str, ModelConfig]:
    """The five stock models, weights under `model_dir`."""

    def path(filename: str) -> str:
        return os.path.join(model_dir, filename)

    return {
        PHI: ModelConfig(
            name="phi-3.5-mini", path=path("phi-3.5-mini.pt"),
            max_tokens=512, temperature=0.7,
        ),
        LLAMA: ModelConfig(
            name="llama-3.2-3b", path=path("llama-3.2-3b.pt"),
            max_tokens=1024, temperature=0.7,
        ),
        QWEN: ModelConfig(
            name="qwen-2.5-3b", path=path("qwen-2.5-3b.pt"),
            max_tokens=512, temperature=0.3,
        ),
        VISION: ModelConfig(
            name="minicpm-v", path=path("minicpm-v.pt"),
            max_tokens=256, temperature=0.0,
        ),
        CODER: ModelConfig(
            name="qwen-coder-3b", path=path("qwen-coder-3b.pt"),
            max_tokens=1024, temperature=0.2,
        ),
    }


@dataclass
class RouterConfig:
    """Top-level router configuration."""
    models: Dict[str, ModelConfig] = field(default_factory=default_model_configs)
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    # Startup
    load_all: bool = False            # eager: construct every model at start
    default_model: str = PHI          # preloaded in lazy mode

    # Lazy-load backoff after a failed construction
    retry_base_s: float = 5.0
    retry_max_s: float = 300.0

    # Concurrent requests on one session queue; None = wait forever
    busy_timeout_s: Optional[float] = None

    # Seed for sampling generators (None = nondeterministic)
    seed: Optional[int] = None

    @classmethod
    def default(cls, model_dir: str = "models") -> "RouterConfig":
        return cls(models=default_model_configs(model_dir))

    @classmethod
    def from_dict(cls, data: Dict) -> "RouterConfig":
        """
        Build from a plain dict (e.g. parsed JSON).

        Model entries are merged over the defaults, so a file only needs
        the fields it changes. Unknown keys are ignored.
        """
        config = cls.default(data.get("model_dir", "models"))

        for name, overrides in (data.get("models") or {}).items():
            if not isinstance(overrides, dict):
                raise ConfigurationError(f"models.{name} must be an object")
            base = asdict(config.models[name]) if name in config.models else {"name": name, "path": ""}
            base.update({k: v for k, v in overrides.items() if k in _field_names(ModelConfig)})
            config.models[name] = ModelConfig(**base)

        memory = data.get("memory") or {}
        for key, val in memory.items():
            if key in _field_names(MemoryConfig):
                setattr(config.memory, key, list(val) if key == "persistent" else val)

        for key in ("load_all", "default_model", "retry_base_s", "retry_max_s", "busy_timeout_s", "seed"):
            if key in data:
                setattr(config, key, data[key])

        error = config.validate()
        if error:
            raise ConfigurationError(error)
        return config

    @staticmethod
    def from_json(path: str) -> "RouterConfig":
        """Load from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e
        return RouterConfig.from_dict(data)

    def validate(self) -> Optional[str]:
        """Return an error message or None."""
        if self.default_model not in self.models:
            return f"default_model '{self.default_model}' is not configured"
        for config in self.models.values():
            error = config.validate()
            if error:
                return error
        if self.memory.unload_after_s <= 0:
            return "memory.unload_after_s must be > 0"
        if self.memory.tick_interval_s <= 0:
            return "memory.tick_interval_s must be > 0"
        if self.retry_base_s < 0 or self.retry_max_s < self.retry_base_s:
            return "retry_base_s must be >= 0 and <= retry_max_s"
        return None


def _field_names(cls) -> set:
    return {f.name for f in fields(cls)}
