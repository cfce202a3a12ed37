"""
Project settings, read from converge.yaml next to the declaration.

    state_dir: .converge
    cloud_file: .converge/cloud.json
    lock_lease_seconds: 300
    parallelism: 4
    retry:
      max_attempts: 5
      initial_delay: 1.0
      max_delay: 30.0
    privilege_policy:
      allowed_managed_policies:
        - arn:aws:iam::aws:policy/ReadOnlyAccess
        - arn:aws:iam::*:policy/converge-*
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

from converge.errors import DeclarationError
from converge.retry import RetryPolicy

SETTINGS_FILE = "converge.yaml"


@dataclass
class Settings:
    state_dir: str = ".converge"
    cloud_file: Optional[str] = None
    lock_lease_seconds: float = 300.0
    parallelism: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    allowed_managed_policies: Optional[List[str]] = None

    @property
    def cloud_path(self) -> str:
        return self.cloud_file or os.path.join(self.state_dir, "cloud.json")


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from path, or from ./converge.yaml when it exists."""
    if path is None:
        if not os.path.exists(SETTINGS_FILE):
            return Settings()
        path = SETTINGS_FILE

    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise DeclarationError(f"cannot read settings {path}: {exc}") from exc
    if not isinstance(config, dict):
        raise DeclarationError(f"settings {path} must be a mapping")

    retry_cfg = config.get("retry") or {}
    policy_cfg = config.get("privilege_policy") or {}
    defaults = RetryPolicy()
    try:
        retry = RetryPolicy(
            max_attempts=int(retry_cfg.get("max_attempts", defaults.max_attempts)),
            initial_delay=float(retry_cfg.get("initial_delay", defaults.initial_delay)),
            max_delay=float(retry_cfg.get("max_delay", defaults.max_delay)),
            multiplier=float(retry_cfg.get("multiplier", defaults.multiplier)),
        )
        settings = Settings(
            state_dir=str(config.get("state_dir", ".converge")),
            cloud_file=config.get("cloud_file"),
            lock_lease_seconds=float(config.get("lock_lease_seconds", 300.0)),
            parallelism=int(config.get("parallelism", 4)),
            retry=retry,
            allowed_managed_policies=policy_cfg.get("allowed_managed_policies"),
        )
    except (TypeError, ValueError) as exc:
        raise DeclarationError(f"invalid value in settings {path}: {exc}") from exc

    if retry.max_attempts < 1:
        raise DeclarationError(f"settings {path}: retry.max_attempts must be at least 1")
    if settings.parallelism < 1:
        raise DeclarationError(f"settings {path}: parallelism must be at least 1")
    return settings
