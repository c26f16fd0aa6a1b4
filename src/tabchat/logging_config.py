import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


def _package_filter(package: str | None):
    if not package:
        return None
    prefix = package + "."
    return lambda record: record["name"] == package or record["name"].startswith(prefix)


class ConsoleLogConsumer:
    def __init__(self, package: str | None = None):
        self._package = package

    def register(self, level: str) -> int:
        return logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, filter=_package_filter(self._package))

    def describe(self, level: str) -> str:
        scope = f", {self._package} only" if self._package else ""
        return f"console (stderr, {level}{scope})"


class FileLogConsumer:
    """Rotating log file. With ``serialize`` each record is written as one JSON line."""

    def __init__(
        self,
        path: str = "tabchat.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
        package: str | None = None,
    ):
        self._path = Path(path)
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize
        self._package = package

    def register(self, level: str) -> int:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            str(self._path),
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            filter=_package_filter(self._package),
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        kind = "json" if self._serialize else "file"
        return f"{kind} ({self._path}, {level}, rotation {self._rotation})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": "tabchat.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's default sink with the configured consumers.

    Unknown consumer types are skipped with a warning. Returns one
    description per registered consumer.
    """
    logger.remove()
    default_level = str(level).upper()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = str(config.get("level", default_level)).upper()
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
