"""
Configuration management and loading.

Reads optional YAML settings and takes secrets from environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from enhpix.core.plans import GFPGAN, PLAN_CATALOG, REAL_ESRGAN, REALESRGAN_ANIME, WAIFU2X, Quality
from enhpix.storage.db import DEFAULT_DB_PATH
from enhpix.storage.models import BillingCycle

# Placeholder token shipped with demo builds; treated as "no credentials"
DEMO_REPLICATE_TOKEN = "r8_demo_key"

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
LOG_FORMATS = {"json", "console"}

DEFAULT_MODEL_VERSIONS: Dict[str, str] = {
    REAL_ESRGAN: f"{REAL_ESRGAN}:42fed1c4974146d4d2414e2be2c5277c7fcf05fcc972f1a6c68ad1d9f7a55dc2",
    WAIFU2X: f"{WAIFU2X}:25c54b7f1eed87a1e5e8ae7d4eaae73a49ec0fafebdab0a8a3ecb4f0b97bd78a",
    GFPGAN: f"{GFPGAN}:9283608cc6b7be6b65a8e44983db012355fde4132009bf99d976b2f0896856a3",
    REALESRGAN_ANIME: f"{REALESRGAN_ANIME}:1f94cf24571d33eff56cacaa0e74f12a74e3f0ae03d7af22c7d5f72b6d0f5937",
}

# Model used per quality tier when no image type is given
DEFAULT_MODELS: Dict[Quality, str] = {
    Quality.BASIC: DEFAULT_MODEL_VERSIONS[REAL_ESRGAN],
    Quality.PREMIUM: DEFAULT_MODEL_VERSIONS[WAIFU2X],
    Quality.ULTRA: DEFAULT_MODEL_VERSIONS[GFPGAN],
}

DEFAULT_PRICES: Dict[str, Dict[BillingCycle, str]] = {
    "basic": {
        BillingCycle.MONTHLY: "price_1RveeGHUii3yXltrohFUcH0U",
        BillingCycle.YEARLY: "price_1RveewHUii3yXltr3t1YMzaT",
    },
    "pro": {
        BillingCycle.MONTHLY: "price_1RvefxHUii3yXltrTsTN5iQg",
        BillingCycle.YEARLY: "price_1RvegXHUii3yXltrGWxpvpZi",
    },
    "premium": {
        BillingCycle.MONTHLY: "price_1RvehMHUii3yXltrkzeexWpn",
        BillingCycle.YEARLY: "price_1RvehtHUii3yXltrSSyM6wr3",
    },
}


@dataclass(frozen=True)
class PollSettings:
    """Bounds for polling a prediction until it finishes."""
    max_attempts: int = 300
    interval_seconds: float = 1.0
    backoff: float = 1.0
    max_interval_seconds: Optional[float] = None

    def __post_init__(self):
        """Validate polling bounds."""
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1")
        if self.max_interval_seconds is not None and self.max_interval_seconds < self.interval_seconds:
            raise ValueError("max_interval_seconds must be >= interval_seconds")


@dataclass(frozen=True)
class InferenceSettings:
    """Image enhancement provider settings."""
    api_base: str = "https://api.replicate.com/v1"
    api_token: Optional[str] = None
    poll: PollSettings = field(default_factory=PollSettings)
    models: Dict[Quality, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    model_versions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODEL_VERSIONS))

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_token) and self.api_token != DEMO_REPLICATE_TOKEN


@dataclass(frozen=True)
class BillingSettings:
    """Payment provider settings."""
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    success_url: str = "http://localhost:5173/success?session_id={CHECKOUT_SESSION_ID}"
    cancel_url: str = "http://localhost:5173/pricing"
    prices: Dict[str, Dict[BillingCycle, str]] = field(
        default_factory=lambda: {plan: dict(cycles) for plan, cycles in DEFAULT_PRICES.items()}
    )


@dataclass(frozen=True)
class TelemetrySettings:
    """Usage log retention."""
    retention_days: int = 90

    def __post_init__(self):
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")


@dataclass(frozen=True)
class LoggingSettings:
    """structlog output settings."""
    level: str = "INFO"
    format: str = "console"


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    db_path: str = DEFAULT_DB_PATH
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    billing: BillingSettings = field(default_factory=BillingSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings from an optional YAML file and the environment.

    Strict validation rejects unknown keys so a typo can't silently fall
    back to a default.

    Args:
        path: Path to YAML configuration file (defaults only when None)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    environ = os.environ if environ is None else environ
    raw_config: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")
        if not isinstance(raw_config, dict):
            raise ValueError("Configuration file must contain a mapping")

    _check_keys(raw_config, {'database', 'inference', 'billing', 'telemetry', 'logging'}, "configuration")

    settings = Settings(
        db_path=_parse_database(_section(raw_config, 'database')),
        inference=_parse_inference(_section(raw_config, 'inference')),
        billing=_parse_billing(_section(raw_config, 'billing')),
        telemetry=_parse_telemetry(_section(raw_config, 'telemetry')),
        logging=_parse_logging(_section(raw_config, 'logging')),
    )

    # Secrets only ever come from the environment
    return replace(
        settings,
        db_path=environ.get("ENHPIX_DB_PATH") or settings.db_path,
        inference=replace(settings.inference, api_token=environ.get("REPLICATE_API_TOKEN") or None),
        billing=replace(
            settings.billing,
            secret_key=environ.get("STRIPE_SECRET_KEY") or None,
            webhook_secret=environ.get("STRIPE_WEBHOOK_SECRET") or None,
        ),
    )


def _section(data: Dict, name: str) -> Dict:
    value = data.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return value


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str, default):
    value = data.get(key, default)
    if value is None:
        if default is not None:
            raise ValueError(f"'{key}' in {path} must be a number")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _parse_database(data: Dict) -> str:
    _check_keys(data, {'path'}, "database")
    db_path = data.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'path' in database must be a non-empty string")
    return db_path


def _parse_inference(data: Dict) -> InferenceSettings:
    """Parse and validate the inference section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {'api_base', 'poll', 'models', 'model_versions'}, "inference")

    poll_data = _section(data, 'poll')
    _check_keys(poll_data, {'max_attempts', 'interval_seconds', 'backoff', 'max_interval_seconds'}, "inference.poll")
    max_attempts = _number(poll_data, 'max_attempts', "inference.poll", 300)
    if not isinstance(max_attempts, int):
        raise ValueError("'max_attempts' in inference.poll must be an integer")
    poll = PollSettings(
        max_attempts=max_attempts,
        interval_seconds=float(_number(poll_data, 'interval_seconds', "inference.poll", 1.0)),
        backoff=float(_number(poll_data, 'backoff', "inference.poll", 1.0)),
        max_interval_seconds=_number(poll_data, 'max_interval_seconds', "inference.poll", None),
    )

    models_data = _section(data, 'models')
    _check_keys(models_data, {quality.value for quality in Quality}, "inference.models")
    models = dict(DEFAULT_MODELS)
    for name, model in models_data.items():
        if not isinstance(model, str) or ":" not in model:
            raise ValueError(f"Model for '{name}' must look like 'owner/name:version'")
        models[Quality(name)] = model

    versions_data = _section(data, 'model_versions')
    model_versions = dict(DEFAULT_MODEL_VERSIONS)
    for name, model in versions_data.items():
        if name not in DEFAULT_MODEL_VERSIONS:
            raise ValueError(f"Unknown model in inference.model_versions: {name}")
        if not isinstance(model, str) or not model.startswith(f"{name}:"):
            raise ValueError(f"Version for '{name}' must look like '{name}:version'")
        model_versions[name] = model

    api_base = data.get('api_base', InferenceSettings.api_base)
    if not isinstance(api_base, str) or not api_base.startswith(("http://", "https://")):
        raise ValueError("'api_base' in inference must be an http(s) URL")

    return InferenceSettings(
        api_base=api_base.rstrip("/"), poll=poll, models=models, model_versions=model_versions
    )


def _parse_billing(data: Dict) -> BillingSettings:
    """Parse and validate the billing section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {'success_url', 'cancel_url', 'prices'}, "billing")
    defaults = BillingSettings()

    prices = {plan: dict(cycles) for plan, cycles in DEFAULT_PRICES.items()}
    prices_data = _section(data, 'prices')
    for plan_id, cycles in prices_data.items():
        if plan_id not in PLAN_CATALOG or not PLAN_CATALOG.get(plan_id).is_paid:
            raise ValueError(f"Unknown paid plan in billing.prices: {plan_id}")
        if not isinstance(cycles, dict):
            raise ValueError(f"billing.prices.{plan_id} must be a dictionary")
        _check_keys(cycles, {cycle.value for cycle in BillingCycle}, f"billing.prices.{plan_id}")
        for cycle, price_id in cycles.items():
            if not isinstance(price_id, str) or not price_id.startswith("price_"):
                raise ValueError(f"billing.prices.{plan_id}.{cycle} must be a price id")
            prices[plan_id][BillingCycle(cycle)] = price_id

    return BillingSettings(
        success_url=str(data.get('success_url', defaults.success_url)),
        cancel_url=str(data.get('cancel_url', defaults.cancel_url)),
        prices=prices,
    )


def _parse_telemetry(data: Dict) -> TelemetrySettings:
    _check_keys(data, {'retention_days'}, "telemetry")
    retention_days = _number(data, 'retention_days', "telemetry", 90)
    if not isinstance(retention_days, int):
        raise ValueError("'retention_days' in telemetry must be an integer")
    return TelemetrySettings(retention_days=retention_days)


def _parse_logging(data: Dict) -> LoggingSettings:
    _check_keys(data, {'level', 'format'}, "logging")
    level = str(data.get('level', "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"'level' in logging must be one of: {sorted(LOG_LEVELS)}")
    fmt = str(data.get('format', "console")).lower()
    if fmt not in LOG_FORMATS:
        raise ValueError(f"'format' in logging must be one of: {sorted(LOG_FORMATS)}")
    return LoggingSettings(level=level, format=fmt)
