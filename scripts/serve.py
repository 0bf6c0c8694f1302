from __future__ import annotations

import uvicorn

from dealsync.apps.api.main import create_app
from dealsync.core.config import get_settings


def main() -> None:
    # Run the API with env-driven settings; tenant configs and Redis come from the environment.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
