import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_CONFIG = {
    "max-retries": "3",
    "backoff-base": "2",
    "job-timeout": "30",
}

RECOGNIZED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

BACKENDS = ("sqlite", "json")


def validate_config_value(key: str, value: str) -> str:
    """
    Check a value for one of the recognized keys. Unknown keys pass through
    untouched; the queue stores them verbatim.
    """
    if key not in RECOGNIZED_CONFIG_KEYS:
        return str(value)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    if number < 0:
        raise ValueError(f"{key} must be >= 0")
    if key == "job-timeout" and number == 0:
        raise ValueError("job-timeout must be > 0 seconds")
    return str(number)


def int_setting(config: dict, key: str) -> int:
    """Read an integer policy value, falling back to the default when unset or garbled."""
    try:
        return int(config.get(key, DEFAULT_CONFIG[key]))
    except (TypeError, ValueError):
        return int(DEFAULT_CONFIG[key])


@dataclass
class Settings:
    home: Path
    backend: str = "sqlite"
    queue_name: str = "default"

    @property
    def db_path(self) -> Path:
        if self.backend == "json":
            return self.home / f"{self.queue_name}.json"
        return self.home / "queue.db"

    @property
    def lock_dir(self) -> Path:
        return self.home / "locks" / self.queue_name

    @property
    def workers_dir(self) -> Path:
        return self.home / "workers" / self.queue_name


def load_settings(home=None, backend=None, queue_name=None) -> Settings:
    backend = backend or os.environ.get("QUEUECTL_BACKEND", "sqlite")
    if backend not in BACKENDS:
        raise ValueError(f"Unknown backend {backend!r}; choose from {', '.join(BACKENDS)}")
    return Settings(
        home=Path(home or os.environ.get("QUEUECTL_HOME", "data")),
        backend=backend,
        queue_name=queue_name or os.environ.get("QUEUECTL_QUEUE", "default"),
    )
