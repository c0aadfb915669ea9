import os
import requests
import httpx

import logging

from typing import Any

from pydantic_core import ValidationError

from conf import ENV
from errors import AuthorityRejectedError, MalformedResponseError, TransientError
from models import ProgressRecord, ProgressUpdate, Session
from participant import Participant


class HealthCheckError(Exception):
    def __init__(self) -> None:
        super().__init__("Health Check Error. Could not connect to the server")


NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class BackendService:
    TIMEOUT_SECONDS = 15

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        """Handles all requests to the endpoints the session core depends on

        This class performs data validation for the following environment variables
        - BACKEND_HOST
        - BACKEND_PORT
        - PATH_PREFIX
        - ENV
        """
        host = os.getenv("BACKEND_HOST", None)
        port_str: str = os.getenv("BACKEND_PORT", None)
        path_prefix = os.getenv("PATH_PREFIX", None)
        env = os.getenv("ENV", None)

        if host is None:
            raise ValueError("[ BackendService.__init__ ] Host cannot be None")
        if port_str is None:
            raise ValueError("[ BackendService.__init__ ] Port cannot be None")
        if not port_str.isdigit():
            raise ValueError("[ BackendService.__init__ ] Port has to be a number")
        if path_prefix is None:
            raise ValueError("[ BackendService.__init__ ] Path prefix cannot be None")
        if env is None:
            raise ValueError("[ BackendService.__init__ ] Env cannot be None")
        if env not in [e.value for e in ENV]:
            raise ValueError(
                "[ BackendService.__init__ ] Env has to one of DEV, TEST, or PROD"
            )

        port = int(port_str)

        self.env = ENV(env)
        self.base_url = f"http{'s' if port == 443 else ''}://{host}:{port}{path_prefix}"
        self.transport = transport

        if self.env == ENV.PROD:
            try:
                response = requests.get(f"{self.base_url}/health_check")
            except requests.exceptions.ConnectionError:
                raise HealthCheckError()
            if response.status_code != 200 or response.json()["status"] != "ok":
                raise HealthCheckError()
        self.participant: Participant | None = None

    def get_participant(self) -> Participant | None:
        return self.participant

    def set_participant(self, participant: Participant) -> None:
        if participant is None:
            raise ValueError(
                "[ BackendService.set_participant ] Participant cannot be none"
            )
        self.participant = participant

    # ==============================================================================
    # Session documents

    async def get_session(self, session_id: str) -> Session:
        """Get the definition of a session (ordered stages).

        Raises
        ------
            TransientError - Timeout, connectivity loss or a 5xx answer
            AuthorityRejectedError - The backend answered with a 4xx
            MalformedResponseError - The answer is not a session (e.g. no stage list)
        """
        document = await self._get(f"/experiments/{session_id}", {"preview": "true"})
        if not isinstance(document, dict):
            raise MalformedResponseError(
                "[ BackendService.get_session ] The returned value is not a session document"
            )
        try:
            return Session.model_validate(document)
        except ValidationError as e:
            raise MalformedResponseError(
                f"[ BackendService.get_session ] The returned value is not a session object (validation failed): {e}"
            )

    async def get_scenario(self, scenario_id: str) -> dict:
        scenario = await self._get(f"/scenarios/{scenario_id}", {"preview": "true"})
        if not isinstance(scenario, dict):
            raise MalformedResponseError(
                "[ BackendService.get_scenario ] The returned value is not a scenario document"
            )
        return scenario

    async def get_wallet_assets(self, wallet_id: str) -> list[dict]:
        assets = await self._get(f"/wallets/{wallet_id}/assets", {"preview": "true"})
        # Both a bare list and {"assets": [...]} are in use
        if isinstance(assets, dict) and isinstance(assets.get("assets"), list):
            assets = assets["assets"]
        if not isinstance(assets, list):
            raise MalformedResponseError(
                "[ BackendService.get_wallet_assets ] The returned value is not a list of assets"
            )
        return assets

    # ==============================================================================
    # Progress

    async def get_progress(self, session_id: str) -> ProgressRecord:
        progress = await self._get(f"/participant/experiments/{session_id}/progress")
        return self._parse_progress(session_id, progress, "get_progress")

    async def post_progress(
        self, session_id: str, update: ProgressUpdate
    ) -> ProgressRecord:
        response = await self._post(
            f"/participant/experiments/{session_id}/progress", update.to_payload()
        )
        # The backend wraps the record as {"message": ..., "progress": {...}}
        if isinstance(response, dict) and isinstance(response.get("progress"), dict):
            response = response["progress"]
        return self._parse_progress(session_id, response, "post_progress")

    def _parse_progress(self, session_id: str, progress: Any, method: str) -> ProgressRecord:
        if not isinstance(progress, dict):
            raise MalformedResponseError(
                f"[ BackendService.{method} ] The returned value is not a progress document"
            )
        progress = dict(progress)
        if "sessionId" not in progress and "experimentId" not in progress:
            progress["sessionId"] = session_id
        try:
            return ProgressRecord.model_validate(progress)
        except ValidationError as e:
            raise MalformedResponseError(
                f"[ BackendService.{method} ] The returned value is not a progress object (validation failed): {e}"
            )

    async def health_check(self) -> bool:
        try:
            status = await self._get("/health_check")
        except (TransientError, AuthorityRejectedError, MalformedResponseError):
            return False
        return isinstance(status, dict) and status.get("status") == "ok"

    # ==============================================================================
    # Transport

    def _client(self) -> httpx.AsyncClient:
        headers = dict(NO_CACHE_HEADERS)
        if self.participant is not None:
            headers.update(self.participant.auth_headers())
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=BackendService.TIMEOUT_SECONDS,
            transport=self.transport,
        )

    async def _get(self, path: str, params: dict | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: dict) -> Any:
        return await self._request("POST", path, json=payload)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(
                f"[ BackendService._request ] {method} {path} timed out"
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"[ BackendService._request ] {method} {path} could not reach the backend: {e}"
            ) from e

        if response.status_code >= 500:
            raise TransientError(
                f"[ BackendService._request ] {method} {path} failed with status {response.status_code}"
            )
        if response.status_code >= 400:
            logging.warning(
                f"[ BackendService._request ] {method} {path} was rejected with status {response.status_code}"
            )
            raise AuthorityRejectedError(response.status_code, response.text)

        try:
            return response.json()
        except ValueError:
            raise MalformedResponseError(
                f"[ BackendService._request ] JSON cannot parse the response of {method} {path}"
            )
