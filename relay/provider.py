"""
Provider gateway for the Sogni image-generation network.

This module is the only place that knows the provider's wire shapes:
1. Job creation, cancellation and result lookup go over REST (httpx)
2. Lifecycle notifications arrive on one provider websocket
3. Socket messages are parsed into the closed ProviderEvent union here;
   anything unrecognized is logged and dropped at the boundary

Socket message shape:
    {"type": "job", "data": {"type": "progress", "projectId", "jobId", "progress"}}
    {"type": "job", "data": {"type": "completed", "projectId", "jobId", "resultUrl"?, "positivePrompt"?}}
    {"type": "project", "data": {"type": "completed", "projectId"}}
    {"type": "project", "data": {"type": "error", "projectId", "error"}}
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx
import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from relay.errors import ProviderAuthError, ProviderUnavailable, provider_error_text
from relay.http_client import LoggedHTTPClient
from relay.logging_utils import get_logger
from relay.settings import RenderSettings, Settings
from shared.schemas import JobCompleted, JobProgress, ProjectCompleted, ProjectFailed, ProviderEvent

log = logging.getLogger("render-relay.provider")
slog = get_logger()

LOGIN_PATH = "/v1/account/login"
PROJECTS_PATH = "/v1/projects"

RECONNECT_MIN_S = 1.0
RECONNECT_MAX_S = 30.0


@dataclass
class StartedJob:
    """What the provider hands back when a project is accepted."""
    project_id: str
    job_ids: List[str]


class ProviderGateway:
    """Contract the relay core relies on. Subclasses talk to a real provider."""

    async def start_job(self, prompts: List[str], render: RenderSettings, seed: Optional[int] = None) -> StartedJob:
        raise NotImplementedError

    async def cancel_job(self, project_id: str) -> None:
        raise NotImplementedError

    async def fetch_result_url(self, project_id: str, job_id: str) -> Optional[str]:
        raise NotImplementedError

    def events(self) -> AsyncIterator[ProviderEvent]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def build_project_payload(prompts: List[str], render: RenderSettings, seed: Optional[int] = None) -> Dict[str, Any]:
    if not prompts:
        raise ValueError("At least one prompt is required")
    payload: Dict[str, Any] = {
        "modelId": render.model_id,
        "positivePrompt": prompts[0],
        "negativePrompt": render.negative_prompt,
        "numberOfImages": render.number_of_images,
        "steps": render.steps,
        "guidance": render.guidance,
        "scheduler": render.scheduler,
        "timeStepSpacing": render.time_step_spacing,
        "sizePreset": render.size_preset,
        "width": render.width,
        "height": render.height,
        "tokenType": render.token_type,
    }
    # -1 means "random" in the web client
    if seed is not None and seed != -1:
        payload["seed"] = int(seed)
    return payload


def parse_provider_message(message: Any) -> Optional[ProviderEvent]:
    """
    Parse one decoded socket message into a typed provider event.

    Returns None for messages the relay does not act on (queue updates,
    job start notices, malformed payloads).
    """
    if not isinstance(message, dict):
        log.debug("Dropping non-object provider message: %r", message)
        return None

    channel = message.get("type")
    data = message.get("data")
    if not isinstance(data, dict):
        log.debug("Dropping provider message without data: type=%s", channel)
        return None

    event_type = data.get("type")
    try:
        if channel == "job":
            if event_type == "progress":
                return JobProgress(
                    project_id=data["projectId"],
                    job_id=data["jobId"],
                    progress=float(data["progress"]),
                )
            if event_type == "completed":
                return JobCompleted(
                    project_id=data["projectId"],
                    job_id=data["jobId"],
                    result_url=data.get("resultUrl") or None,
                    positive_prompt=data.get("positivePrompt") or None,
                )
        elif channel == "project":
            if event_type == "completed":
                return ProjectCompleted(project_id=data["projectId"])
            if event_type in ("error", "failed"):
                return ProjectFailed(
                    project_id=data["projectId"],
                    error=provider_error_text(data.get("error")) or "Project failed",
                )
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        log.debug("Dropping malformed provider message %s/%s: %s", channel, event_type, exc)
        return None

    log.debug("Ignoring provider message %s/%s", channel, event_type)
    return None


class SogniGateway(ProviderGateway):
    """
    Gateway backed by the Sogni REST API and socket.

    The REST session (and login, when credentials are configured) is set up
    on first use and never recreated. Without credentials the gateway runs in
    demo mode and still asks the provider to create projects. If the provider
    rejects the credentials the gateway stays degraded: every later job start
    raises ProviderUnavailable.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[LoggedHTTPClient] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self._settings = settings
        self._http = http_client
        self._connect = connect
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._initialized = False
        self._auth_failed = False
        self._token: Optional[str] = None
        self._closed = False

    @property
    def mode(self) -> str:
        if not self._initialized:
            return "uninitialized"
        if self._auth_failed:
            return "degraded"
        return "authenticated" if self._token else "demo"

    async def ensure_connected(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            if self._http is None:
                self._http = LoggedHTTPClient(
                    "sogni",
                    base_url=self._settings.endpoints["api"],
                    timeout=httpx.Timeout(30.0, connect=10.0),
                )
            await self._http.open()

            if self._settings.has_credentials:
                try:
                    await self._login()
                    slog.info("provider_connected", app_id=self._settings.app_id, testnet=self._settings.testnet)
                except ProviderAuthError as exc:
                    self._auth_failed = True
                    slog.error("provider_login_failed", error=str(exc))
            else:
                slog.warning("provider_demo_mode", app_id=self._settings.app_id)

            self._initialized = True
            self._ready.set()

    async def _login(self) -> None:
        try:
            resp = await self._http.post(
                LOGIN_PATH,
                json={
                    "username": self._settings.username,
                    "password": self._settings.password,
                    "appId": self._settings.app_id,
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderAuthError(f"Login request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise ProviderAuthError(f"Login rejected (HTTP {resp.status_code})")
        try:
            token = (resp.json() or {}).get("token")
        except ValueError as exc:
            raise ProviderAuthError("Login response was not JSON") from exc
        if not token:
            raise ProviderAuthError("Login response carried no token")

        self._token = token
        self._http.set_header("Authorization", f"Bearer {token}")

    async def _call(self, method: str, path: str, what: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = await self._http.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json() or {}
        except httpx.HTTPStatusError as exc:
            raise ProviderUnavailable(f"{what} failed: HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderUnavailable(f"{what} failed: {exc}") from exc

    async def start_job(self, prompts: List[str], render: RenderSettings, seed: Optional[int] = None) -> StartedJob:
        await self.ensure_connected()
        if self._auth_failed:
            raise ProviderUnavailable("Provider credentials were rejected; relay is running degraded")

        body = await self._call(
            "POST",
            PROJECTS_PATH,
            "Project creation",
            json={"appId": self._settings.app_id, **build_project_payload(prompts, render, seed)},
        )
        project = body.get("project", body)
        project_id = project.get("id")
        if not project_id:
            raise ProviderUnavailable("Provider response carried no project id")

        job_ids = [str(job["id"]) if isinstance(job, dict) else str(job) for job in project.get("jobs") or []]
        return StartedJob(project_id=str(project_id), job_ids=job_ids)

    async def cancel_job(self, project_id: str) -> None:
        await self.ensure_connected()
        await self._call("POST", f"{PROJECTS_PATH}/{quote(project_id, safe='')}/cancel", "Project cancel")

    async def fetch_result_url(self, project_id: str, job_id: str) -> Optional[str]:
        await self.ensure_connected()
        body = await self._call(
            "GET",
            f"{PROJECTS_PATH}/{quote(project_id, safe='')}/jobs/{quote(job_id, safe='')}/result",
            "Result lookup",
        )
        return body.get("url") or body.get("resultUrl")

    def _socket_url(self) -> str:
        params = {"appId": self._settings.app_id, "network": "fast"}
        if self._token:
            params["token"] = self._token
        return f"{self._settings.endpoints['socket']}?{urlencode(params)}"

    async def events(self) -> AsyncIterator[ProviderEvent]:
        """
        Yield typed provider events for every project on this connection.

        Waits until the gateway has been initialized by a first job start,
        then keeps the socket open, reconnecting with capped backoff.
        """
        await self._ready.wait()
        backoff = RECONNECT_MIN_S

        while not self._closed:
            try:
                async with self._connect(self._socket_url(), ping_interval=20, ping_timeout=30) as ws:
                    slog.info("provider_socket_connected", endpoint=self._settings.endpoints["socket"])
                    backoff = RECONNECT_MIN_S
                    async for raw in ws:
                        if isinstance(raw, bytes):
                            continue
                        try:
                            message = json.loads(raw)
                        except json.JSONDecodeError:
                            log.debug("Non-JSON provider message: %s", raw[:100])
                            continue
                        event = parse_provider_message(message)
                        if event is not None:
                            yield event
                slog.warning("provider_socket_closed", reason="closed by provider")
            except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
                slog.warning("provider_socket_closed", error=str(exc) or exc.__class__.__name__)

            if self._closed:
                break
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, RECONNECT_MAX_S)

    async def close(self) -> None:
        self._closed = True
        if self._http is not None:
            await self._http.close()


_gateway: Optional[ProviderGateway] = None


def get_gateway(settings: Settings) -> ProviderGateway:
    """Return the process-wide gateway, constructing it on first call."""
    global _gateway
    if _gateway is None:
        _gateway = SogniGateway(settings)
    return _gateway
