import os

import logging

import uvicorn
from fastapi.middleware.cors import CORSMiddleware

from dotenv import load_dotenv

from api import create_app
from cache import CacheStore
from cache_repository import CacheSnapshotRepository
from conf import DEFAULT_SYNC_TIMEOUT_SECONDS, ENV
from fetcher import ResilientFetcher
from services import BackendService
from synchronizer import ProgressSynchronizer


def main():
    load_dotenv(dotenv_path=".env")

    env = os.getenv("ENV")

    if env == ENV.DEV and os.path.exists("info.log"):
        os.remove("info.log")

    logging.basicConfig(
        format="[%(asctime)s] %(message)s",
        level=logging.INFO,
        filename="info.log",
        filemode="a",
    )
    logging.info("=" * 80)
    logging.info("Starting new execution")

    if env == ENV.DEV:
        logging.info("Environment set to development")
    else:
        logging.info("Environment set to production")

    timeout_seconds = float(
        os.getenv("SYNC_TIMEOUT_SECONDS", DEFAULT_SYNC_TIMEOUT_SECONDS)
    )

    backend = BackendService()
    cache = CacheStore(CacheSnapshotRepository())
    app = create_app(
        backend,
        cache,
        ResilientFetcher(backend, cache),
        ProgressSynchronizer(backend, cache, timeout_seconds=timeout_seconds),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_headers=["*"],
        allow_methods=["*"],
        allow_origins=["*"],
        allow_credentials=True,
    )
    uvicorn.run(app, port=int(os.getenv("LOCAL_SERVER_PORT", "8001")))


if __name__ == "__main__":
    main()
