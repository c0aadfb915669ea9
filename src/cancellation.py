import asyncio
import logging
from typing import Awaitable, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """A newer operation for the same key superseded this one, or its owner went away.
    Never shown to the participant."""

    def __init__(self, key: str, label: str) -> None:
        super().__init__(f"{label} for {key} was cancelled")
        self.key = key
        self.label = label


class CancellationToken:
    """Cancelling an abortable token stops the call it runs. A token that is not
    abortable lets the call finish and only throws its result away, for calls
    that change state elsewhere and must not be cut halfway."""

    def __init__(self, key: str, label: str, abortable: bool = True) -> None:
        self.key = key
        self.label = label
        self.abortable = abortable
        self.cancelled = False
        self.done = False
        self._task: asyncio.Future | None = None

    def cancel(self) -> None:
        self.cancelled = True
        if self.abortable and self._task is not None and not self._task.done():
            self._task.cancel()

    async def run(
        self, call: Awaitable[T], timeout: float | None = None
    ) -> T:
        """Awaits call under this token.

        Raises OperationCancelled if the token is cancelled before the result is
        handed back, even when the underlying call already resolved. Raises
        TimeoutError once the timeout elapses, after cancelling the call."""
        if self.cancelled:
            if asyncio.isfuture(call):
                call.cancel()
            else:
                call.close()
            raise OperationCancelled(self.key, self.label)

        self._task = asyncio.ensure_future(call)
        try:
            if timeout is None:
                result = await self._task
            else:
                async with asyncio.timeout(timeout):
                    result = await self._task
        except (asyncio.CancelledError, TimeoutError):
            if self.cancelled:
                raise OperationCancelled(self.key, self.label) from None
            raise
        except Exception as e:
            if self.cancelled:
                raise OperationCancelled(self.key, self.label) from e
            raise
        finally:
            self.done = True

        if self.cancelled:
            raise OperationCancelled(self.key, self.label)
        return result


class CancellationScope:
    """Keeps the latest token per key. Beginning a new operation for a key cancels
    the one still in flight for that key and leaves every other key alone."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tokens: dict[str, CancellationToken] = {}

    def begin(
        self, key: str, label: str, abortable: bool = True
    ) -> CancellationToken:
        previous = self._tokens.get(key)
        if previous is not None and not previous.done:
            logging.info(
                f"[ CancellationScope.begin ] {self.name}: {label} for {key} supersedes {previous.label}"
            )
            previous.cancel()
        token = CancellationToken(key, label, abortable)
        self._tokens[key] = token
        return token

    def finish(self, token: CancellationToken) -> None:
        if self._tokens.get(token.key) is token:
            del self._tokens[token.key]

    def cancel(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is not None and not token.done:
            logging.info(
                f"[ CancellationScope.cancel ] {self.name}: cancelling {token.label} for {key}"
            )
            token.cancel()

    def cancel_all(self) -> None:
        for key in list(self._tokens.keys()):
            self.cancel(key)

    def active_keys(self) -> list[str]:
        return [k for k, t in self._tokens.items() if not t.done]
