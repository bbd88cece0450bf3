"""Configuration loading.

Settings come from an optional YAML file; ``MESHLOOM_*`` environment
variables override individual keys. File keys use the field names below,
environment variables the upper-cased field name, e.g.
``MESHLOOM_CLUSTER_NAME``.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from meshloom.core.errors import ValidationError
from meshloom.security.certificate import DEFAULT_KEY_SIZE

logger = logging.getLogger(__name__)

ENV_PREFIX = "MESHLOOM_"


@dataclass
class Settings:
    """Runtime settings shared by the CLI, the hub and the agents."""

    cluster_name: str = ""
    hub_kubeconfig: str | None = None
    spoke_kubeconfig: str | None = None
    log_level: str = "INFO"
    log_file: str | None = None

    # Polling of external readiness signals
    poll_interval: float = 5.0
    rollout_timeout: float = 300.0
    deletion_timeout: float = 60.0
    address_timeout: float = 60.0

    ca_key_size: int = DEFAULT_KEY_SIZE
    workers: int = 2
    providers: list[str] = field(default_factory=lambda: ["Upstream Istio", "Openshift Service Mesh"])

    def apply(self, values: dict[str, Any]) -> None:
        """Overwrite fields from a mapping, converting to each field's type."""
        fields = {f.name: f for f in dataclasses.fields(self)}
        for key, value in values.items():
            if key not in fields:
                logger.warning("Ignoring unknown setting %s", key)
                continue
            setattr(self, key, _convert(key, getattr(self, key), value))


def _convert(key: str, current: Any, value: Any) -> Any:
    if value is None:
        return None
    try:
        if isinstance(current, bool):
            return str(value).lower() in ("1", "true", "yes")
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        if isinstance(current, list):
            if isinstance(value, str):
                return [item.strip() for item in value.split(",") if item.strip()]
            return list(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid value for setting {key}: {value!r}") from e
    return str(value)


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> Settings:
    """
    Load settings from a YAML file and the environment.

    Args:
        path: YAML file to read; skipped when None.
        environ: Environment to read overrides from, defaults to ``os.environ``.

    Returns:
        The merged settings.
    """
    settings = Settings()

    if path is not None:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Config file {path} must contain a mapping")
        settings.apply({key.replace("-", "_"): value for key, value in data.items()})

    environ = os.environ if environ is None else environ
    overrides = {
        key[len(ENV_PREFIX) :].lower(): value
        for key, value in environ.items()
        if key.startswith(ENV_PREFIX)
    }
    settings.apply(overrides)

    return settings
