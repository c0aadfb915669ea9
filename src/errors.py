class SyncError(Exception):
    """Base class for every failure talking to the backend."""


class TransientError(SyncError):
    """Timeouts, connectivity loss and 5xx answers. The next user-triggered
    call is the retry, nothing loops in the background."""


class MalformedResponseError(SyncError):
    """The backend answered with something that is not the expected document."""


class AuthorityRejectedError(SyncError):
    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(
            f"The backend rejected the request (status: {status_code}) {message}".strip()
        )
        self.status_code = status_code
