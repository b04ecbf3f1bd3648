import logging

from rich.logging import RichHandler


def init_logging(level: str = "INFO", httpx_level: str = "WARNING") -> None:
    """Configure Rich logging once for the app."""
    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    logging.captureWarnings(True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(_level_to_int(httpx_level))
    logging.getLogger("httpcore").setLevel(_level_to_int(httpx_level))


def _level_to_int(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO
