"""Matching parameters — epoch durations, base currency, privileged caller.

Loaded from config/matching_params.json. Deployment-specific overrides
(base token identity, permissioned caller, alternate config directory)
come from the environment, optionally seeded from a .env file.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import find_dotenv, load_dotenv


DAY = 86_400

PARAMS_FILENAME = "matching_params.json"


@dataclass(frozen=True)
class MatchingParams:
    """Durations (seconds) and identities that parameterise a ledger."""

    epoch_period: int = 14 * DAY
    pre_vote_period: int = 7 * DAY
    veto_period: int = 2 * DAY
    notify_period: int = 14 * DAY
    base_token: str = "BASE"
    permissioned_caller: Optional[str] = None

    def validate(self) -> None:
        """Raise ValueError if the parameters cannot describe an epoch."""
        for name in ("epoch_period", "pre_vote_period", "veto_period", "notify_period"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if self.pre_vote_period >= self.epoch_period:
            raise ValueError(
                f"pre_vote_period ({self.pre_vote_period}) must be shorter "
                f"than epoch_period ({self.epoch_period})"
            )
        if self.veto_period >= self.epoch_period:
            raise ValueError(
                f"veto_period ({self.veto_period}) must be shorter "
                f"than epoch_period ({self.epoch_period})"
            )
        if not self.base_token:
            raise ValueError("base_token must not be empty")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MatchingParams:
        epoch = data.get("epoch", {})
        payout = data.get("payout", {})
        defaults = cls()
        params = cls(
            epoch_period=epoch.get("period_seconds", defaults.epoch_period),
            pre_vote_period=epoch.get("pre_vote_seconds", defaults.pre_vote_period),
            veto_period=epoch.get("veto_seconds", defaults.veto_period),
            notify_period=payout.get("notify_period_seconds", defaults.notify_period),
            base_token=data.get("base_token", defaults.base_token),
            permissioned_caller=data.get("permissioned_caller"),
        )
        params.validate()
        return params

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> MatchingParams:
        """Load from ``<config_dir>/matching_params.json``."""
        path = Path(config_dir) / PARAMS_FILENAME
        with path.open("r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))

    @classmethod
    def from_env(cls, root: Optional[Path] = None) -> MatchingParams:
        """Load config, then apply MATCHBOOK_* environment overrides.

        With ``root``, ``<root>/.env`` seeds the environment and the config
        directory defaults to ``<root>/config``. Without it, the nearest
        ``.env`` above the working directory is used and
        MATCHBOOK_CONFIG_DIR must be set. Variables already set take
        precedence over any ``.env`` file.
        """
        if root is not None:
            load_dotenv(Path(root) / ".env")
            default_dir: Optional[str] = str(Path(root) / "config")
        else:
            dotenv_path = find_dotenv(usecwd=True)
            if dotenv_path:
                load_dotenv(dotenv_path)
            default_dir = None

        config_dir = os.getenv("MATCHBOOK_CONFIG_DIR", default_dir)
        if not config_dir:
            raise ValueError(
                "MATCHBOOK_CONFIG_DIR is not set and no root directory was given"
            )
        params = cls.from_config_dir(Path(config_dir))

        base_token = os.getenv("MATCHBOOK_BASE_TOKEN")
        if base_token:
            params = replace(params, base_token=base_token)
        caller = os.getenv("MATCHBOOK_PERMISSIONED_CALLER")
        if caller:
            params = replace(params, permissioned_caller=caller)
        params.validate()
        return params
