"""
HTTP polling transport.

For endpoints that only expose request/response routes: audio, commit and stop
are POSTed, while two pollers turn the status and response routes into the
same ServerEvents the WebSocket transport produces. Blocking ``requests``
calls run on the loop's default executor.
"""
from __future__ import annotations

import asyncio
import functools
from typing import Any, Dict, Optional

import requests

from .config import TransportSettings
from .error_handler import ConnectError, TransportError
from .logging_utils import setup_logger
from .transport import Transport, TransportState

logger = setup_logger("parley.polling_transport", "logs/transport.log")


class PollingTransport(Transport):
    """Transport over the start/audio/commit/status/response/stop HTTP routes."""

    def __init__(self, settings: TransportSettings, http: Optional[requests.Session] = None):
        super().__init__(settings)
        self._http = http or requests.Session()
        self._base = settings.api_url.rstrip("/")
        self._has_speech = False

    async def _connect(self, start_message: Dict[str, Any]) -> None:
        body = {"sessionId": self.session_id, **{k: v for k, v in start_message.items() if k != "type"}}
        try:
            data = await self._request("post", "/start", json=body)
        except TransportError as e:
            raise ConnectError(f"could not start session at {self._base}: {e}",
                               transient=e.transient, operation="connect") from e
        loop = asyncio.get_running_loop()
        self._tasks.append(loop.create_task(self._poll_loop(self.settings.status_poll_ms, self._poll_status)))
        self._tasks.append(loop.create_task(self._poll_loop(self.settings.response_poll_ms, self._poll_response)))
        self._dispatch_raw({"type": "session_ready", "sessionId": (data or {}).get("sessionId", self.session_id)})

    async def _deliver(self, message: Dict[str, Any]) -> None:
        mtype = message.get("type")
        if mtype == "audio":
            await self._request("post", "/audio", json={
                "sessionId": self.session_id,
                "audio": message["data"],
                "seq": message["seq"],
                "durationMs": message.get("duration_ms"),
            })
        elif mtype == "turn_commit":
            await self._request("post", "/commit", json={"sessionId": self.session_id})
        elif mtype == "session_stop":
            await self._request("post", "/stop", json={"sessionId": self.session_id})
        else:
            logger.debug(f"No HTTP route for {mtype} message; skipped")

    async def _disconnect(self) -> None:
        self._has_speech = False

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        call = functools.partial(getattr(self._http, method), self._base + path,
                                 timeout=self.settings.connect_timeout, **kwargs)
        try:
            response = await loop.run_in_executor(None, call)
        except requests.RequestException as e:
            raise TransportError(f"{method.upper()} {path} failed: {e}", operation="request") from e
        if response.status_code >= 500:
            raise TransportError(f"{method.upper()} {path} -> HTTP {response.status_code}", operation="request")
        if response.status_code >= 400:
            raise TransportError(f"{method.upper()} {path} -> HTTP {response.status_code}",
                                 transient=False, operation="request")
        try:
            return response.json()
        except ValueError:
            return None

    async def _poll_loop(self, interval_ms: float, poll) -> None:
        interval = interval_ms / 1000.0
        failures = 0
        while self.state not in (TransportState.CLOSING, TransportState.CLOSED):
            await asyncio.sleep(interval)
            try:
                await poll()
                failures = 0
            except TransportError as e:
                failures += 1
                logger.warning(f"Poll failed ({failures}/{self.settings.max_retries}): {e}")
                if not e.transient or failures > self.settings.max_retries:
                    self._fail(TransportError(f"polling gave up: {e}", transient=e.transient, operation="poll"))
                    return

    async def _poll_status(self) -> None:
        data = await self._request("get", f"/status/{self.session_id}") or {}
        has_speech = bool(data.get("hasSpeech"))
        if has_speech != self._has_speech:
            self._has_speech = has_speech
            self._dispatch_raw({"type": "speech_started" if has_speech else "speech_stopped"})

    async def _poll_response(self) -> None:
        data = await self._request("get", f"/response/{self.session_id}") or {}
        if not data.get("hasResponse"):
            return
        if data.get("userTranscript"):
            self._dispatch_raw({"type": "transcript", "role": "user", "text": data["userTranscript"]})
        if data.get("responseText"):
            self._dispatch_raw({"type": "transcript", "role": "assistant", "text": data["responseText"]})
        if data.get("responseAudio"):
            self._dispatch_raw({"type": "audio", "delta": data["responseAudio"]})
        self._dispatch_raw({"type": "response_done"})


__all__ = ["PollingTransport"]
