"""
Configuration for the contribution consensus engine.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-daily-offers"

DAILY_OFFER_ACTION = "daily_offer"
PRICE_CONTRIBUTION_ACTION = "price_contribution"


@dataclass
class RateLimitRule:
    """Rolling-window rule for one action; exceeding it blocks the user."""

    max_attempts: int = 5
    window_minutes: int = 60
    block_minutes: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitRule":
        return cls(
            max_attempts=data.get("max_attempts", 5),
            window_minutes=data.get("window_minutes", 60),
            block_minutes=data.get("block_minutes", 30),
        )


@dataclass
class RateLimitConfig:
    """Thresholds applied to every action, independent of the per-action rules."""

    burst_limit: int = 5
    burst_window_seconds: int = 60
    hourly_limit: int = 50


@dataclass
class ConflictConfig:
    """Advisory price-conflict check."""

    enabled: bool = True
    threshold_percent: float = 30.0


@dataclass
class ReaperConfig:
    """Background expiry sweep."""

    enabled: bool = True
    interval_seconds: int = 3600  # Hourly
    retention_hours: int = 24
    delete_contributions: bool = True


@dataclass
class NotificationConfig:
    """Optional webhook that receives status changes."""

    webhook_url: str | None = None
    timeout_seconds: float = 5.0


@dataclass
class ConsensusConfig:
    """Complete daily-offers configuration."""

    db_path: Path = field(default_factory=lambda: Path("daily_offers.db"))
    timezone: str | None = None  # None: host local time
    price_ceiling: float = 999_999
    spam_policy: str = "flag"  # flag, reject

    conflict: ConflictConfig = field(default_factory=ConflictConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    rules: dict[str, RateLimitRule] = field(
        default_factory=lambda: {
            DAILY_OFFER_ACTION: RateLimitRule(),
            PRICE_CONTRIBUTION_ACTION: RateLimitRule(),
        }
    )
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConsensusConfig":
        """Create config from a dictionary (e.g., the plugin section of datasette.yaml)."""
        config = cls()

        if "db_path" in data:
            config.db_path = Path(data["db_path"])
        if "timezone" in data:
            config.timezone = data["timezone"]
        if "price_ceiling" in data:
            config.price_ceiling = data["price_ceiling"]
        if "spam_policy" in data:
            if data["spam_policy"] not in ("flag", "reject"):
                raise ValueError(f"Invalid spam_policy: {data['spam_policy']}")
            config.spam_policy = data["spam_policy"]

        if "conflict" in data:
            conflict = data["conflict"]
            config.conflict = ConflictConfig(
                enabled=conflict.get("enabled", True),
                threshold_percent=conflict.get("threshold_percent", 30.0),
            )

        if "rate_limit" in data:
            rl = data["rate_limit"]
            config.rate_limit = RateLimitConfig(
                burst_limit=rl.get("burst_limit", 5),
                burst_window_seconds=rl.get("burst_window_seconds", 60),
                hourly_limit=rl.get("hourly_limit", 50),
            )

        if "rules" in data:
            for action, rule in (data["rules"] or {}).items():
                config.rules[action] = RateLimitRule.from_dict(rule or {})

        if "reaper" in data:
            reaper = data["reaper"]
            config.reaper = ReaperConfig(
                enabled=reaper.get("enabled", True),
                interval_seconds=reaper.get("interval_seconds", 3600),
                retention_hours=reaper.get("retention_hours", 24),
                delete_contributions=reaper.get("delete_contributions", True),
            )

        if "notifications" in data:
            notifications = data["notifications"]
            config.notifications = NotificationConfig(
                webhook_url=notifications.get("webhook_url"),
                timeout_seconds=notifications.get("timeout_seconds", 5.0),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "ConsensusConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        plugin_config = (data.get("plugins") or {}).get(PLUGIN_NAME) or {}
        return cls.from_dict(plugin_config)

    def rule_for(self, action: str) -> RateLimitRule:
        return self.rules.get(action, RateLimitRule())

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization."""
        return {
            "db_path": str(self.db_path),
            "timezone": self.timezone,
            "price_ceiling": self.price_ceiling,
            "spam_policy": self.spam_policy,
            "conflict": {
                "enabled": self.conflict.enabled,
                "threshold_percent": self.conflict.threshold_percent,
            },
            "rate_limit": {
                "burst_limit": self.rate_limit.burst_limit,
                "burst_window_seconds": self.rate_limit.burst_window_seconds,
                "hourly_limit": self.rate_limit.hourly_limit,
            },
            "rules": {
                action: {
                    "max_attempts": rule.max_attempts,
                    "window_minutes": rule.window_minutes,
                    "block_minutes": rule.block_minutes,
                }
                for action, rule in self.rules.items()
            },
            "reaper": {
                "enabled": self.reaper.enabled,
                "interval_seconds": self.reaper.interval_seconds,
                "retention_hours": self.reaper.retention_hours,
                "delete_contributions": self.reaper.delete_contributions,
            },
            "notifications": {
                "webhook_url": self.notifications.webhook_url,
                "timeout_seconds": self.notifications.timeout_seconds,
            },
        }
