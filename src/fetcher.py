import asyncio
import logging
import traceback
from typing import Any, Awaitable, Callable

from pydantic_core import ValidationError

from cache import CacheStore
from cancellation import OperationCancelled
from conf import DEFAULT_TTL_SECONDS, EXPERIMENT_DATA_TTL_SECONDS, PREFETCH_DELAY_SECONDS
from errors import MalformedResponseError
from models import ScenarioStage, Session
from services import BackendService


def session_key(session_id: str) -> str:
    return f"experiment:{session_id}"


def scenario_key(scenario_id: str) -> str:
    return f"scenario:{scenario_id}"


def wallet_key(wallet_id: str) -> str:
    return f"wallet:{wallet_id}"


class ResilientFetcher:
    """Network reads backed by the cache: cache first, write-through on success,
    one more look at the cache on failure before giving up."""

    def __init__(
        self,
        backend: BackendService,
        cache: CacheStore,
        prefetch_delay: float = PREFETCH_DELAY_SECONDS,
    ) -> None:
        self.backend = backend
        self.cache = cache
        self.prefetch_delay = prefetch_delay
        self._prefetch_tasks: dict[str, asyncio.Task] = {}
        self._prefetched_session_ids: set[str] = set()

    async def fetch_with_cache(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: float = DEFAULT_TTL_SECONDS,
        bypass_cache: bool = False,
    ) -> Any:
        if not bypass_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        try:
            value = await loader()
        except OperationCancelled:
            raise
        except Exception:
            # A concurrent fetch may have filled the entry in the meantime
            cached = self.cache.get(key)
            if cached is not None:
                logging.warning(
                    f"[ ResilientFetcher.fetch_with_cache ] Using cached data for {key} due to fetch error"
                )
                return cached
            raise

        self.cache.set(key, value, ttl)
        return value

    # ==============================================================================
    # Documents

    async def get_session(self, session_id: str, bypass_cache: bool = False) -> Session:
        async def loader() -> dict:
            session = await self.backend.get_session(session_id)
            return session.model_dump(mode="json", by_alias=True)

        key = session_key(session_id)
        document = await self.fetch_with_cache(
            key, loader, EXPERIMENT_DATA_TTL_SECONDS, bypass_cache
        )
        try:
            return Session.model_validate(document)
        except ValidationError as e:
            # Only reachable through a snapshot written by an older model
            self.cache.remove(key)
            raise MalformedResponseError(
                f"[ ResilientFetcher.get_session ] Cached session {session_id} is not valid anymore: {e}"
            )

    async def get_scenario(self, scenario_id: str, bypass_cache: bool = False) -> dict:
        return await self.fetch_with_cache(
            scenario_key(scenario_id),
            lambda: self.backend.get_scenario(scenario_id),
            EXPERIMENT_DATA_TTL_SECONDS,
            bypass_cache,
        )

    async def get_wallet_assets(
        self, wallet_id: str, bypass_cache: bool = False
    ) -> list[dict]:
        return await self.fetch_with_cache(
            wallet_key(wallet_id),
            lambda: self.backend.get_wallet_assets(wallet_id),
            EXPERIMENT_DATA_TTL_SECONDS,
            bypass_cache,
        )

    def is_session_cached(self, session_id: str) -> bool:
        return self.cache.has(session_key(session_id))

    # ==============================================================================
    # Prefetch

    def schedule_prefetch(self, session: Session, force: bool = False) -> asyncio.Task | None:
        """Warms the cache for everything the scenario stages of session will ask for.

        Runs in the background after a short delay so it never competes with the
        load that is on the critical path. Failures are logged and dropped."""
        if session.id in self._prefetched_session_ids and not force:
            logging.info(
                f"[ ResilientFetcher.schedule_prefetch ] Session {session.id} already prefetched"
            )
            return None

        running = self._prefetch_tasks.get(session.id)
        if running is not None and not running.done() and not force:
            return running

        stages = session.scenario_stages()
        if len(stages) == 0:
            self._prefetched_session_ids.add(session.id)
            return None

        self.cancel_prefetch(session.id)
        task = asyncio.create_task(self._prefetch(session.id, stages, force))
        self._prefetch_tasks[session.id] = task

        def done(result=None):
            if self._prefetch_tasks.get(session.id) is task:
                del self._prefetch_tasks[session.id]
            # A cancelled prefetch is tried again next time
            if not task.cancelled() and task.exception() is None:
                self._prefetched_session_ids.add(session.id)

        task.add_done_callback(done)
        return task

    def cancel_prefetch(self, session_id: str | None = None) -> None:
        if session_id is None:
            tasks = list(self._prefetch_tasks.values())
            self._prefetch_tasks = {}
        else:
            task = self._prefetch_tasks.pop(session_id, None)
            tasks = [] if task is None else [task]
        for task in tasks:
            if not task.done():
                task.cancel()

    async def _prefetch(
        self, session_id: str, stages: list[ScenarioStage], force: bool
    ) -> None:
        await asyncio.sleep(self.prefetch_delay)
        logging.info(
            f"[ ResilientFetcher._prefetch ] Prefetching {len(stages)} scenarios for session {session_id}"
        )
        await asyncio.gather(*(self._prefetch_scenario(s, force) for s in stages))

    async def _prefetch_scenario(self, stage: ScenarioStage, force: bool) -> None:
        try:
            scenario = await self.get_scenario(stage.scenario_id, bypass_cache=force)
        except Exception:
            logging.warning(
                f"[ ResilientFetcher._prefetch_scenario ] Failed to prefetch scenario {stage.scenario_id}: {traceback.format_exc()}"
            )
            return

        wallet_id = stage.wallet_id
        if wallet_id is None and isinstance(scenario, dict):
            wallet_id = scenario.get("walletId")
        if not wallet_id:
            return

        try:
            await self.get_wallet_assets(str(wallet_id), bypass_cache=force)
        except Exception:
            logging.warning(
                f"[ ResilientFetcher._prefetch_scenario ] Failed to prefetch wallet {wallet_id}: {traceback.format_exc()}"
            )
