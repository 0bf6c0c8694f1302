from __future__ import annotations

import logging

from dealsync.core.config import get_settings


_HANDLER_NAME = "dealsync"


def configure_logging() -> None:
    # Install one stream handler on the root logger; repeated calls only update the level.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(getattr(handler, "name", None) == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    # httpx logs full request URLs at INFO, which can carry query credentials.
    logging.getLogger("httpx").setLevel(logging.WARNING)
