"""Configuration loader for Verdict."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import copy
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "verdict" / "config.yaml"

# Used when config/default.yaml is not shipped alongside the package.
BUILTIN_DEFAULTS: Dict[str, Any] = {
    "server": {"host": "127.0.0.1", "port": 8099},
    "provider": {
        "api_url": "https://api.z.ai/v1/generate",
        "api_key_env": "ZAI_API_KEY",
        "backoff_base_ms": 500,
    },
    "models": {
        "cards": [
            {"id": "GLM-4.5V", "kind": "vision", "model": "GLM-4.5V", "base_weight": 0.4,
             "timeout_seconds": 30, "retries": 3, "max_tokens": 1200},
            {"id": "GLM-4.5-AIR", "kind": "reasoning", "model": "GLM-4.5-AIR", "base_weight": 0.3,
             "timeout_seconds": 60, "retries": 4, "max_tokens": 1500},
            {"id": "GLM-4.5", "kind": "text", "model": "GLM-4.5", "base_weight": 0.3,
             "timeout_seconds": 30, "retries": 2, "max_tokens": 800},
        ],
    },
    "consensus": {
        "min_weight": 0.1,
        "max_weight": 0.8,
        "performance_window": 100,
        "enable_adaptive_learning": True,
        "confidence_threshold": 0.7,
    },
    "policy": {"preset": "standard"},
    "review": {
        "max_age_hours": 24,
        "cleanup_interval_minutes": 60,
        "reviewers": [
            {"id": "rev-1", "name": "Alice", "specialties": ["nudity", "deepfake"], "max_concurrent": 5},
            {"id": "rev-2", "name": "Bob", "specialties": ["violence", "hate"], "max_concurrent": 5},
            {"id": "rev-3", "name": "Carol", "specialties": ["nudity", "violence", "hate"], "max_concurrent": 3},
        ],
    },
    "pipeline": {"max_concurrency": 2},
}

_MODEL_ENV = {
    "vision": "VERDICT_VISION_MODEL",
    "reasoning": "VERDICT_REASONING_MODEL",
    "text": "VERDICT_TEXT_MODEL",
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def load_config() -> Dict[str, Any]:
    data: Dict[str, Any] = copy.deepcopy(BUILTIN_DEFAULTS)
    if DEFAULT_CONFIG_PATH.exists():
        data = _deep_merge(data, yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {})
    if USER_CONFIG_PATH.exists():
        override = yaml.safe_load(USER_CONFIG_PATH.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("VERDICT_HOST")
    port = os.getenv("VERDICT_PORT")
    if host:
        data.setdefault("server", {})["host"] = host
    if port:
        try:
            data.setdefault("server", {})["port"] = int(port)
        except ValueError:
            pass

    data_dir = os.getenv("VERDICT_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Provider
    api_url = os.getenv("VERDICT_API_URL")
    if api_url:
        data.setdefault("provider", {})["api_url"] = api_url
    api_key = os.getenv("VERDICT_API_KEY")
    if api_key:
        data.setdefault("provider", {})["api_key"] = api_key

    max_concurrency = os.getenv("VERDICT_MAX_CONCURRENCY")
    if max_concurrency:
        try:
            data.setdefault("pipeline", {})["max_concurrency"] = int(max_concurrency)
        except ValueError:
            pass

    preset = os.getenv("VERDICT_POLICY")
    if preset:
        data.setdefault("policy", {})["preset"] = preset.strip().lower()

    adaptive = os.getenv("VERDICT_ADAPTIVE")
    if adaptive is not None:
        data.setdefault("consensus", {})["enable_adaptive_learning"] = _env_bool(adaptive)

    # Environment overrides - Model names per adapter kind
    for card in (data.get("models", {}) or {}).get("cards", []) or []:
        env_name = _MODEL_ENV.get(str(card.get("kind", "")))
        override = os.getenv(env_name) if env_name else None
        if override:
            card["model"] = override

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".verdict")
        return Path(self.raw.get("data_dir", default))

    @property
    def provider(self) -> Dict[str, Any]:
        return self.raw.get("provider", {})

    @property
    def api_key(self) -> str:
        provider = self.provider
        if provider.get("api_key"):
            return str(provider["api_key"])
        return os.environ.get(str(provider.get("api_key_env", "ZAI_API_KEY")), "")

    @property
    def models(self) -> Dict[str, Any]:
        return self.raw.get("models", {})

    @property
    def model_cards(self) -> List[Dict[str, Any]]:
        return [card for card in self.models.get("cards", []) if card.get("enabled", True)]

    @property
    def base_weights(self) -> Dict[str, float]:
        return {
            str(card.get("model") or card.get("id")): float(card.get("base_weight", 0.25))
            for card in self.model_cards
        }

    @property
    def consensus(self) -> Dict[str, Any]:
        return self.raw.get("consensus", {})

    @property
    def policy(self) -> Dict[str, Any]:
        return self.raw.get("policy", {})

    @property
    def review(self) -> Dict[str, Any]:
        return self.raw.get("review", {})

    @property
    def pipeline(self) -> Dict[str, Any]:
        return self.raw.get("pipeline", {})

    @property
    def max_concurrency(self) -> int:
        """Simultaneous outbound model calls per image. Default 2."""
        return max(1, int(self.pipeline.get("max_concurrency", 2)))


def get_config() -> Config:
    return Config(load_config())
