"""Hot-swappable configuration snapshots."""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from .config import PRIVACY_CATEGORIES, Config, PrivacyConfig, SearchConfig, Settings
from .errors import ConfigError
from .privacy import PrivacyRules, validate_rule


ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Configuration plus compiled privacy rules, as seen by one operation."""
    config: Config
    rules: PrivacyRules
    version: int


def _coerce(model: Type[ModelT], value: Union[ModelT, Dict[str, Any]]) -> ModelT:
    """Validate ``value`` as ``model``, re-running validators on instances."""
    if isinstance(value, BaseModel):
        value = value.model_dump()
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise ConfigError(f"Invalid {model.__name__}: {e}") from e


class ConfigStore:
    """
    Owns the active configuration.

    Readers call ``snapshot()`` once at the start of an operation and use
    that object throughout. Writers validate, persist and then swap in a new
    snapshot; a rejected update leaves both the active snapshot and the file
    untouched.
    """

    def __init__(self, config: Config, config_path: Optional[Path] = None):
        self._config_path = config_path
        self._lock = threading.RLock()
        self._snapshot = ConfigSnapshot(
            config=config,
            rules=PrivacyRules.compile(config.privacy, strict=False),
            version=1,
        )

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    def get_privacy_config(self) -> PrivacyConfig:
        return self._snapshot.config.privacy.model_copy(deep=True)

    def get_settings(self) -> Settings:
        return self._snapshot.config.settings.model_copy(deep=True)

    def get_search_config(self) -> SearchConfig:
        return self._snapshot.config.search.model_copy(deep=True)

    def save_privacy_config(self, privacy: Union[PrivacyConfig, Dict[str, Any]]) -> ConfigSnapshot:
        privacy = _coerce(PrivacyConfig, privacy)
        rules = PrivacyRules.compile(privacy, strict=True)
        return self._swap({"privacy": privacy}, rules)

    def save_settings(self, settings: Union[Settings, Dict[str, Any]]) -> ConfigSnapshot:
        """Replace with a ``Settings`` instance, or update the fields named in a dict."""
        return self._update_section("settings", Settings, settings)

    def save_search_config(self, search: Union[SearchConfig, Dict[str, Any]]) -> ConfigSnapshot:
        """Replace with a ``SearchConfig`` instance, or update the fields named in a dict."""
        return self._update_section("search", SearchConfig, search)

    def add_privacy_rule(self, category: str, pattern: str) -> ConfigSnapshot:
        validate_rule(category, pattern)
        privacy = self.get_privacy_config()
        patterns = getattr(privacy, category)
        if pattern not in patterns:
            patterns.append(pattern)
        return self.save_privacy_config(privacy)

    def remove_privacy_rule(self, category: str, pattern: str) -> ConfigSnapshot:
        if category not in PRIVACY_CATEGORIES:
            raise ConfigError(f"Unknown privacy rule category: {category}")
        privacy = self.get_privacy_config()
        patterns = getattr(privacy, category)
        if pattern not in patterns:
            raise ConfigError(f"No {category} rule {pattern!r}")
        patterns.remove(pattern)
        return self.save_privacy_config(privacy)

    def _swap(self, update: Dict[str, Any], rules: Optional[PrivacyRules] = None) -> ConfigSnapshot:
        with self._lock:
            current = self._snapshot
            config = current.config.model_copy(update=update, deep=True)
            if self._config_path is not None:
                try:
                    config.save(self._config_path)
                except OSError as e:
                    raise ConfigError(f"Cannot write config {self._config_path}: {e}") from e
            self._snapshot = ConfigSnapshot(
                config=config,
                rules=rules if rules is not None else current.rules,
                version=current.version + 1,
            )
            logger.info(f"Configuration updated ({', '.join(update)}), version {self._snapshot.version}")
            return self._snapshot

    def _update_section(
        self, section: str, model: Type[ModelT], value: Union[ModelT, Dict[str, Any]]
    ) -> ConfigSnapshot:
        with self._lock:
            if not isinstance(value, BaseModel):
                current = getattr(self._snapshot.config, section).model_dump()
                value = {**current, **value}
            return self._swap({section: _coerce(model, value)})
