"""Cross-process coordination of interactive logins.

Several bridge processes may target the same remote server at once. Only
one of them, the leader, runs the browser login. It advertises itself with
a lock record holding its pid and callback port. Every other process
follows: it long-polls the leader's ``/wait-for-auth`` route and then reads
the tokens the leader persisted.

Stale locks (too old, dead owner, unresponsive listener) are removed and
acquisition retried once. Every coordination failure resolves toward
"become leader": a duplicated login prompt is better than a stuck one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
from pydantic import BaseModel, ValidationError

from tether.auth.storage import LOCK_FILE, CredentialStore
from tether.coordination.callback_server import (
    LOOPBACK,
    WAIT_FOR_AUTH_PATH,
    CallbackListener,
    find_available_port,
)
from tether.coordination.liveness import ProcessProbe

logger = logging.getLogger(__name__)

MAX_LOCK_AGE_MS = 30 * 60 * 1000
VALIDATION_TIMEOUT = 1.0
POLL_RETRY_INTERVAL = 1.0
MAX_ACQUIRE_ATTEMPTS = 2


class LockRecord(BaseModel):
    pid: int
    port: int
    timestamp: int  # Epoch milliseconds

    def age_ms(self, now_ms: int | None = None) -> int:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        return now_ms - self.timestamp


@dataclass
class Leader:
    listener: CallbackListener


@dataclass
class Follower:
    leader_port: int


Leadership = Leader | Follower


@dataclass
class AuthCoordination:
    """Outcome of coordination as the bridge needs it.

    ``listener`` is set for the leader. ``skip_browser_auth`` is set when
    another process completed the login and its tokens should be reused.
    """

    listener: CallbackListener | None
    skip_browser_auth: bool


ListenerFactory = Callable[[int], CallbackListener]


class LockCoordinator:
    """Decides, per server fingerprint, which process drives the login."""

    def __init__(
        self,
        store: CredentialStore,
        probe: ProcessProbe,
        listener_factory: ListenerFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        enabled: bool = True,
        pid: int | None = None,
    ):
        self.store = store
        self.probe = probe
        self.listener_factory = listener_factory or (lambda port: CallbackListener(port))
        self.enabled = enabled
        self.pid = os.getpid() if pid is None else pid

        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self._owned: set[str] = set()

    # ================================
    # Lock record
    # ================================

    def read_lock(self, fingerprint: str) -> LockRecord | None:
        try:
            data = self.store.read_json(fingerprint, LOCK_FILE)
        except OSError as e:
            logger.warning(f"Could not read lockfile: {e}")
            return None
        if data is None:
            return None

        try:
            return LockRecord.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed lockfile: {e}")
            return None

    def _write_lock(self, fingerprint: str, port: int) -> None:
        record = LockRecord(pid=self.pid, port=port, timestamp=int(time.time() * 1000))
        logger.info(
            f"Creating lockfile for server {fingerprint} with process {self.pid} "
            f"on port {port}"
        )
        try:
            self.store.write_json(fingerprint, LOCK_FILE, record.model_dump())
        except OSError as e:
            logger.warning(f"Could not write lockfile, continuing without it: {e}")
            return
        self._owned.add(fingerprint)

    def _delete_lock(self, fingerprint: str) -> None:
        try:
            self.store.delete(fingerprint, LOCK_FILE)
        except OSError as e:
            logger.warning(f"Could not delete lockfile: {e}")

    async def validate(self, record: LockRecord) -> bool:
        """True iff the record is fresh, its owner runs and its listener answers."""
        if record.age_ms() > MAX_LOCK_AGE_MS:
            logger.info("Lockfile is too old")
            return False

        if not self.probe.is_running(record.pid):
            logger.info("Process from lockfile is not running")
            return False

        url = f"http://{LOOPBACK}:{record.port}{WAIT_FOR_AUTH_PATH}"
        try:
            response = await self._http_client.get(
                url, params={"poll": "false"}, timeout=VALIDATION_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.info(f"Error connecting to auth server: {e}")
            return False

        return response.status_code in (200, 202)

    # ================================
    # Leadership
    # ================================

    async def acquire_or_join(self, fingerprint: str, port: int) -> Leadership:
        """Become leader, or follow a valid existing leader.

        An invalid lock is deleted and acquisition retried once; after that
        this process leads regardless.
        """
        if self.enabled:
            for _ in range(MAX_ACQUIRE_ATTEMPTS):
                record = self.read_lock(fingerprint)
                if record is None:
                    break

                if await self.validate(record):
                    if record.pid == self.pid:
                        # Our own lock from an earlier attempt in this process
                        break
                    logger.info(
                        f"Another instance is handling authentication on port "
                        f"{record.port}"
                    )
                    return Follower(leader_port=record.port)

                logger.info("Found invalid lockfile, deleting it")
                self._delete_lock(fingerprint)

        listener = await self._start_listener(port)
        if self.enabled:
            self._write_lock(fingerprint, listener.port)
        return Leader(listener=listener)

    async def _start_listener(self, port: int) -> CallbackListener:
        listener = self.listener_factory(port)
        try:
            await listener.start()
        except OSError as e:
            fallback = find_available_port(port + 1 if port else None)
            logger.warning(
                f"Could not listen on port {port} ({e}), using port {fallback}"
            )
            listener = self.listener_factory(fallback)
            await listener.start()
        return listener

    async def wait_for_leader(self, port: int) -> bool:
        """Long-poll the leader until its login completes.

        Returns:
            True once the leader reports completion, False if it fails or
            becomes unreachable
        """
        logger.info(f"Waiting for authentication from the server on port {port}...")
        url = f"http://{LOOPBACK}:{port}{WAIT_FOR_AUTH_PATH}"

        while True:
            try:
                # The listener holds the request for up to its long-poll timeout
                response = await self._http_client.get(url, timeout=None)
            except httpx.HTTPError as e:
                logger.info(f"Error waiting for authentication: {e}")
                return False

            if response.status_code == 200:
                logger.info("Authentication completed by other instance")
                return True
            if response.status_code != 202:
                logger.info(f"Unexpected response status: {response.status_code}")
                return False

            logger.debug("Authentication still in progress")
            await asyncio.sleep(POLL_RETRY_INTERVAL)

    async def coordinate(self, fingerprint: str, port: int) -> AuthCoordination:
        """Acquire or join, and as follower wait for the leader to finish.

        A follower whose leader fails takes over: the leader's lock is
        removed and this process becomes leader.
        """
        leadership = await self.acquire_or_join(fingerprint, port)
        if isinstance(leadership, Leader):
            return AuthCoordination(listener=leadership.listener, skip_browser_auth=False)

        if await self.wait_for_leader(leadership.leader_port):
            return AuthCoordination(listener=None, skip_browser_auth=True)

        logger.info("Taking over authentication process...")
        self._delete_lock(fingerprint)
        listener = await self._start_listener(port)
        self._write_lock(fingerprint, listener.port)
        return AuthCoordination(listener=listener, skip_browser_auth=False)

    def release_owned(self, fingerprint: str) -> None:
        """Delete the lock iff this process owns it. Never raises."""
        if fingerprint not in self._owned:
            return
        self._owned.discard(fingerprint)

        record = self.read_lock(fingerprint)
        if record is None or record.pid != self.pid:
            return

        logger.info(f"Cleaning up lockfile for server {fingerprint}")
        self._delete_lock(fingerprint)

    def release_all(self) -> None:
        for fingerprint in list(self._owned):
            self.release_owned(fingerprint)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
