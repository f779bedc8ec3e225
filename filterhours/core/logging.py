import logging

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(getattr(handler, "_filterhours", False) for handler in root.handlers):
        root.setLevel(level.upper())
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._filterhours = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())
