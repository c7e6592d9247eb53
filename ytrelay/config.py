import logging
import os
from dataclasses import dataclass, field

import yaml

from ytrelay.ai_service import PROVIDER_DEFAULTS
from ytrelay.models import (
    AIConfig,
    BilibiliConfig,
    PipelineConfig,
    ProviderConfig,
    ProxyConfig,
    SchedulerConfig,
)

log = logging.getLogger(__name__)

# Env vars take precedence over config.yaml for secrets.
PROVIDER_KEY_ENV = {
    "openai_compatible": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
}
PROXY_ENV = "YTRELAY_PROXY_URL"


@dataclass
class AppConfig:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    bilibili: BilibiliConfig = field(default_factory=BilibiliConfig)


def load_raw_config(path: str = "config.yaml") -> dict:
    if not os.path.exists(path):
        log.warning("Config file %s not found, using defaults", path)
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _provider_configs(raw_providers: dict) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for name in sorted(set(PROVIDER_DEFAULTS) | set(raw_providers)):
        values = {**PROVIDER_DEFAULTS.get(name, {}), **(raw_providers.get(name) or {})}
        env_key = os.environ.get(PROVIDER_KEY_ENV.get(name, f"{name.upper()}_API_KEY"))
        if env_key:
            values["api_key"] = env_key
        providers[name] = ProviderConfig(name=name, **values)
    return providers


def build_config(raw: dict, config_path: str = "config.yaml") -> AppConfig:
    """Build validated config dataclasses from the parsed YAML mapping."""
    pipeline_raw = dict(raw.get("pipeline") or {})
    pipeline_raw.setdefault("config_dir", os.path.dirname(os.path.abspath(config_path)))

    proxy_raw = dict(raw.get("proxy") or {})
    if os.environ.get(PROXY_ENV):
        proxy_raw["proxy_host"] = os.environ[PROXY_ENV]
        proxy_raw.setdefault("use_proxy", True)

    ai_raw = dict(raw.get("ai") or {})
    providers = _provider_configs(ai_raw.pop("providers", None) or {})

    return AppConfig(
        pipeline=PipelineConfig(**pipeline_raw),
        proxy=ProxyConfig(**proxy_raw),
        ai=AIConfig(providers=providers, **ai_raw),
        scheduler=SchedulerConfig(**(raw.get("scheduler") or {})),
        bilibili=BilibiliConfig(**(raw.get("bilibili") or {})),
    )


def load_config(path: str = "config.yaml") -> AppConfig:
    return build_config(load_raw_config(path), path)
