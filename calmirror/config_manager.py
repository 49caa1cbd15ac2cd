from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calmirror.models import AppConfig, ConfigError, default_app_config

MASK = "***"
DESTINATION_SECRETS = ("access_token", "password")
TOKEN_SOURCE_KINDS = frozenset({"google", "microsoft"})


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def mask_secrets(config: dict[str, Any]) -> dict[str, Any]:
    masked = copy.deepcopy(config)
    destination = masked.get("destination", {})
    for key in DESTINATION_SECRETS:
        if destination.get(key):
            destination[key] = MASK
    for subscription in masked.get("subscriptions", []):
        source = subscription.get("source", {})
        if source.get("access_token"):
            source["access_token"] = MASK
    return masked


def _is_placeholder(value: Any) -> bool:
    return value is not None and str(value).strip() in {"", MASK}


def restore_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Undo mask_secrets on an edited payload.

    Blank or masked credentials fall back to the stored value. Subscription
    tokens are matched by subscription id, so reordering the list is safe.
    """
    restored = copy.deepcopy(payload)

    destination = restored.get("destination")
    if isinstance(destination, dict):
        stored = current.get("destination", {})
        for key in DESTINATION_SECRETS:
            if key in destination and _is_placeholder(destination[key]):
                destination[key] = str(stored.get(key) or "")

    subscriptions = restored.get("subscriptions")
    if isinstance(subscriptions, list):
        stored_tokens = {
            str(item.get("id", "")): str((item.get("source") or {}).get("access_token") or "")
            for item in current.get("subscriptions", [])
        }
        for item in subscriptions:
            if not isinstance(item, dict) or not isinstance(item.get("source"), dict):
                continue
            source = item["source"]
            if _is_placeholder(source.get("access_token")):
                source["access_token"] = stored_tokens.get(str(item.get("id", "")), "")
    return restored


def check_subscriptions(config: AppConfig) -> None:
    """Every enabled subscription must be fetchable and have somewhere to land."""
    for subscription in config.subscriptions:
        if not subscription.enabled:
            continue
        source = subscription.source
        if source.kind == "ics" and not source.url:
            raise ConfigError(f"Subscription {subscription.id!r} has no feed url")
        if source.kind in TOKEN_SOURCE_KINDS and not source.access_token:
            raise ConfigError(f"Subscription {subscription.id!r} has no access token")
        config.target_calendar_id(subscription)


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _dump(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any], keep_masked_secrets: bool = False) -> AppConfig:
        """Merge ``payload`` over the stored config, validate subscriptions and save.

        Nothing is written when the merged config is invalid. With
        ``keep_masked_secrets`` the payload may carry the output of ``masked()``.
        """
        with self._lock:
            current = self.load().to_dict()
            if keep_masked_secrets:
                payload = restore_secrets(payload, current)
            config = AppConfig.from_dict(_deep_merge(current, payload))
            check_subscriptions(config)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        return mask_secrets(self.load().to_dict())
