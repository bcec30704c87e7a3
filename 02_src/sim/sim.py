"""SIM implementation - scripted chat scenario driven over the HTTP API."""

import asyncio
import random
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from chatsync.directory import IIdentityDirectory
from chatsync.logging_config import get_logger
from chatsync.models import Identity
from chatsync.tracker import ITracker

logger = get_logger(__name__)

SIM_PASSWORD = "sim-password"

# Directory-only contacts so the identity picker is never empty
SAMPLE_CONTACTS = (
    Identity(key="sim-carol", name="Carol", email="carol@sim.local",
             created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
    Identity(key="sim-dave", name="Dave", email="dave@sim.local",
             created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
)


class ISim(Protocol):
    """Generate traffic against a running API."""

    async def start(self) -> None:
        """Start scripted scenario."""
        ...

    async def stop(self) -> None:
        """Stop scenario."""
        ...


class SimError(Exception):
    """A scenario step got an unexpected response."""


class Sim:
    """Two virtual users taking turns in a direct conversation.

    The API holds one session at a time, so every turn signs the speaker in,
    reads the conversation (which marks it read), replies and signs out.
    """

    def __init__(
        self,
        api_url: str = "http://localhost:8000",
        tracker: ITracker | None = None,
        delay: tuple[float, float] = (1.0, 3.0),
        client: httpx.AsyncClient | None = None,
        directory: IIdentityDirectory | None = None,
    ):
        self._api_url = api_url
        self._tracker = tracker
        self._directory = directory
        self._delay = delay
        self._running = False
        self._task: asyncio.Task | None = None
        self._client = client
        self._owns_client = client is None

    def set_tracker(self, tracker: ITracker) -> None:
        """Inject tracker for SIM trace events."""
        self._tracker = tracker

    def set_directory(self, directory: IIdentityDirectory) -> None:
        """Inject directory for seeding sample contacts."""
        self._directory = directory

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start scripted scenario in the background."""
        if self._running:
            return

        self._running = True
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        self._task = asyncio.create_task(self._run_scenario())

    async def stop(self) -> None:
        """Stop scenario."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def run_once(self) -> None:
        """Run the scenario in the foreground."""
        if self._client is None:
            raise RuntimeError("Sim has no HTTP client")
        self._running = True
        try:
            await self._scenario()
        finally:
            self._running = False

    async def _run_scenario(self) -> None:
        try:
            await self._scenario()
        except asyncio.CancelledError:
            pass
        except (httpx.HTTPError, SimError) as e:
            logger.error("SIM scenario error: %s", e)
        finally:
            self._running = False

    async def _scenario(self) -> None:
        virtual_users = [
            {"name": "Alice", "email": "alice@sim.local"},
            {"name": "Bob", "email": "bob@sim.local"},
        ]
        script = [
            (1, "hi"),
            (0, "Hey Bob! How are you?"),
            (1, "Good, thanks. Lunch tomorrow?"),
            (0, "Sure, see you at noon"),
        ]

        await self._track("sim_started", {"users": len(virtual_users), "messages": len(script)})
        sent = 0
        try:
            if self._directory is not None:
                await self._directory.seed(SAMPLE_CONTACTS)
            keys = []
            for user in virtual_users:
                identity = await self._register(user)
                keys.append(identity["id"])
                await self._post("/api/session/signout")

            await self._sign_in(virtual_users[1])
            conversation = await self._post(
                "/api/conversations", {"participant_ids": [keys[0]]}
            )
            await self._post("/api/session/signout")

            for speaker, text in script:
                if not self._running:
                    break
                await self._sign_in(virtual_users[speaker])
                history = await self._get(f"/api/conversations/{conversation['id']}/messages")
                logger.info(
                    "SIM: %s sees %d message(s)", virtual_users[speaker]["name"], len(history)
                )
                await self._post(
                    f"/api/conversations/{conversation['id']}/messages", {"text": text}
                )
                sent += 1
                logger.info("SIM: %s -> %s", virtual_users[speaker]["name"], text)
                await self._post("/api/session/signout")
                await asyncio.sleep(random.uniform(*self._delay))
        finally:
            await self._track(
                "sim_completed", {"users": len(virtual_users), "messages": sent}
            )

    async def _register(self, user: dict) -> dict:
        response = await self._client.post(
            f"{self._api_url}/api/session/signup",
            json={"email": user["email"], "password": SIM_PASSWORD, "name": user["name"]},
        )
        if response.status_code == 409:
            return await self._sign_in(user)
        return self._json(response)

    async def _sign_in(self, user: dict) -> dict:
        return await self._post(
            "/api/session/signin", {"email": user["email"], "password": SIM_PASSWORD}
        )

    async def _get(self, path: str) -> Any:
        return self._json(await self._client.get(f"{self._api_url}{path}"))

    async def _post(self, path: str, body: dict | None = None) -> Any:
        return self._json(await self._client.post(f"{self._api_url}{path}", json=body))

    def _json(self, response: httpx.Response) -> Any:
        if response.status_code != 200:
            raise SimError(
                f"{response.request.method} {response.request.url.path}: "
                f"{response.status_code} {response.text}"
            )
        return response.json()

    async def _track(self, event_type: str, data: dict) -> None:
        if self._tracker:
            await self._tracker.track(event_type, "sim", data)
