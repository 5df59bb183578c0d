import os

import uvicorn

from ledger_sync.app import app
from ledger_sync.core.settings import get_env_int
from ledger_sync.logger import get_logging_config


def run() -> None:
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=get_env_int("PORT", 8000, min_value=1),
        log_config=get_logging_config(),
    )


if __name__ == "__main__":
    run()
