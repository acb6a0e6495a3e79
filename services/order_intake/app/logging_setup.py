import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    # uvicorn --reload and repeated create_app() calls must not stack handlers.
    if not any(getattr(h, "_order_intake", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._order_intake = True
        root.addHandler(handler)
    root.setLevel(level)
    # botocore logs request bodies at DEBUG; keep it at WARNING regardless.
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("pika").setLevel(logging.WARNING)
