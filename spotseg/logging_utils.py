import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional


def setup_logger(out_dir: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Configure the `spotseg` logger.

    The stream handler is attached once per process. File handlers follow `out_dir`:
    a call with a new output directory replaces the rotating logs of the previous one.
    """
    logger = logging.getLogger("spotseg")
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(lvl)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")

    if not any(type(h) is logging.StreamHandler for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        ch.setLevel(lvl)
        logger.addHandler(ch)

    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
        log_path = os.path.abspath(os.path.join(out_dir, "spotseg.log"))
        err_path = os.path.abspath(os.path.join(out_dir, "spotseg.error.log"))

        file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        if log_path not in {h.baseFilename for h in file_handlers}:
            for h in file_handlers:
                logger.removeHandler(h)
                h.close()

            fh = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3)
            fh.setFormatter(fmt)
            fh.setLevel(lvl)
            logger.addHandler(fh)

            eh = RotatingFileHandler(err_path, maxBytes=2 * 1024 * 1024, backupCount=2)
            eh.setFormatter(fmt)
            eh.setLevel(logging.ERROR)
            logger.addHandler(eh)
            logger.info("Logger initialized. Logs at %s; errors at %s", log_path, err_path)

    logger.propagate = False
    return logger
