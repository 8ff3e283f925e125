import logging
import sys

_HANDLER_NAME = "tasksync"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the root logger. Safe to call repeatedly."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    if any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)


def short_key(owner_key: str | None) -> str:
    """Owner keys are only ever logged truncated."""
    if not owner_key:
        return "<none>"
    return f"{owner_key[:8]}..."
