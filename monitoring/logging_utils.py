import logging
from pathlib import Path
from typing import List, Optional, Union


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_format: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    When ``log_file`` is given, records are mirrored to that file as well.
    """
    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding='utf-8'))
    logging.basicConfig(level=level, format=fmt, handlers=handlers)
