from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

DEFAULT_ANNOTATION_KEY = "dk.coop.integration/log-level"
DEFAULT_ENV_NAME = "LOGGING_CONFIG"
DEFAULT_BASE_URL = "http://configuration-server:9999/default/default/master/logging"

# Log level annotation value -> log4j2 configuration file served by the config server.
PROFILE_FILES: Mapping[str, str] = MappingProxyType(
    {
        "debug": "log4j2-all.xml",
        "info": "log4j2-normal.xml",
        "none": "log4j2-none.xml",
    }
)


@dataclass(frozen=True)
class LogProfiles:
    """Immutable mapping from log-level annotation values to ``LOGGING_CONFIG`` values.

    Attributes:
        annotation_key: Deployment annotation that opts a workload in.
        env_name:       Environment variable injected into every container.
        values:         Read-only ``level -> value`` table.
    """

    annotation_key: str = DEFAULT_ANNOTATION_KEY
    env_name: str = DEFAULT_ENV_NAME
    values: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        # Freeze whatever mapping the caller handed us.
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def resolve(self, log_level: str) -> str | None:
        return self.values.get(log_level)

    @property
    def supported_levels(self) -> list[str]:
        return sorted(self.values)


def build_profiles(
    base_url: str = DEFAULT_BASE_URL,
    annotation_key: str = DEFAULT_ANNOTATION_KEY,
    env_name: str = DEFAULT_ENV_NAME,
) -> LogProfiles:
    """Build the standard debug/info/none profiles rooted at *base_url*."""
    base = base_url.rstrip("/")
    return LogProfiles(
        annotation_key=annotation_key,
        env_name=env_name,
        values={level: f"{base}/{filename}" for level, filename in PROFILE_FILES.items()},
    )
