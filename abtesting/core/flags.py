"""
Feature flag providers.

The experimentation subsystem only asks one question of its flag provider,
``is_enabled("enableAbTesting")``, and asks it on every call so the switch
can be flipped without a restart.
"""

from typing import Iterable, Protocol

from .settings import Settings

AB_TESTING_FLAG = "enableAbTesting"

# flag name -> Settings attribute
_SETTINGS_FLAGS = {
    AB_TESTING_FLAG: "ENABLE_AB_TESTING",
}


class FeatureFlagProvider(Protocol):
    def is_enabled(self, name: str) -> bool: ...


class SettingsFeatureFlags:
    """Reads flags from a freshly loaded Settings instance on each check."""

    def is_enabled(self, name: str) -> bool:
        attribute = _SETTINGS_FLAGS.get(name)
        if attribute is None:
            return False
        return getattr(Settings(), attribute) is True


class StaticFeatureFlags:
    """Fixed set of enabled flags, for embedding callers and tests."""

    def __init__(self, enabled: Iterable[str] = ()):
        self.enabled = set(enabled)

    def is_enabled(self, name: str) -> bool:
        return name in self.enabled


def get_feature_flags() -> FeatureFlagProvider:
    return SettingsFeatureFlags()
