from __future__ import annotations

import os

from redis import Redis
from rq import Worker

from backend.logging_config import configure_logging
from backend.runtime_config import validate_runtime_environment


def main() -> None:
    configure_logging()
    validate_runtime_environment("worker")
    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    connection = Redis.from_url(redis_url)
    worker = Worker(["studio"], connection=connection)
    worker.work()


if __name__ == "__main__":
    main()
