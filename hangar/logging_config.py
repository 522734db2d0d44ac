import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

FORMAT = (
    "%(asctime)s | %(levelname)-7s | %(name)s | "
    "%(filename)s:%(lineno)d | %(funcName)s() | %(message)s"
)
formatter = logging.Formatter(FORMAT)

_log_dir: Path = Path("logs")
_configured = False


def _addon_log_dir() -> Path:
    return _log_dir / "addons"


def _file_handler(path: Path, level=logging.INFO) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _attach(logger: logging.Logger, handler: logging.Handler) -> None:
    for h in logger.handlers:
        if getattr(h, "baseFilename", None) == getattr(handler, "baseFilename", None):
            return
    logger.addHandler(handler)


_ADDON_FILE_HANDLERS: dict[str, RotatingFileHandler] = {}


def get_addon_handler(addon_id: str) -> RotatingFileHandler:
    h = _ADDON_FILE_HANDLERS.get(addon_id)
    if h:
        return h
    h = _file_handler(_addon_log_dir() / f"{addon_id}.log", level=logging.DEBUG)
    _ADDON_FILE_HANDLERS[addon_id] = h
    return h


def bind_addon_logger(addon_id: str) -> logging.Logger:
    """
    Per-addon logger. Lines go to logs/addons/<id>.log and also propagate
    to the engine log.
    """
    addon_logger = logging.getLogger(f"hangar.addons.{addon_id}")
    if _configured:
        _attach(addon_logger, get_addon_handler(addon_id))
    return addon_logger


class AddonLogAdapter(logging.LoggerAdapter):
    """
    Log sink for one addon operation: prefixes every line with [addon_id]
    so interleaved operations stay correlated in the shared logs.
    """

    def __init__(self, addon_id: str, logger: Optional[logging.Logger] = None):
        super().__init__(logger or bind_addon_logger(addon_id), {"addon_id": addon_id})

    def process(self, msg, kwargs):
        return f"[{self.extra['addon_id']}] {msg}", kwargs


def setup_logging(log_dir: Optional[Path] = None) -> None:
    global _log_dir, _configured
    if log_dir is not None:
        _log_dir = Path(log_dir)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # --- Core ---
    core_handler = _file_handler(_log_dir / "core.log")

    core_parent = logging.getLogger("hangar")
    _attach(core_parent, core_handler)
    core_parent.propagate = False

    # --- Store + engine ---
    store_handler = _file_handler(_log_dir / "store.log", level=logging.DEBUG)

    for name in ("hangar.store", "hangar.engine", "hangar.addons"):
        parent = logging.getLogger(name)
        _attach(parent, store_handler)
        _attach(parent, core_handler)
        parent.propagate = False

    # --- Uvicorn ---
    uvicorn_handler = _file_handler(_log_dir / "uvicorn.log")
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        ul = logging.getLogger(name)
        _attach(ul, uvicorn_handler)
        ul.propagate = False

    _configured = True
