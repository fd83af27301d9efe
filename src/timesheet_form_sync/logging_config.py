import logging
import os
from pathlib import Path
from typing import Optional


REDACTED = "***"


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # configure_logging() runs twice: once before config load, once after
    )

    # Playwright's driver logs every protocol message at DEBUG.
    for noisy in ("playwright", "asyncio"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))


def redact(value: Optional[str], *, sensitive: bool) -> str:
    """
    Render a value for a log line; sensitive values never appear in cleartext.
    """
    if sensitive:
        return REDACTED
    return value if value is not None else ""
