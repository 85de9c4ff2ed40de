import logging
import warnings
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Install a stream handler and, if given, a file handler on the root logger.
    Handlers left over from earlier runs (or from Typer) are dropped first.
    """
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)


def silence_library_warnings() -> None:
    """Filter the warnings scanpy/anndata emit on every run of this pipeline."""
    warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
    warnings.filterwarnings("ignore", message=".*not compatible with tight_layout.*", category=UserWarning)
    warnings.filterwarnings("ignore", message=".*already log-transformed.*", category=UserWarning)
    warnings.filterwarnings("ignore", message=".*Observation names are not unique.*", category=UserWarning)
