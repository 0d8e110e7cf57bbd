# infrastructure/ingestion/imap_source.py
import asyncio
from typing import Optional

import aioimaplib

from shared.logging import logger


class ImapMailSource:
    """Polls an IMAP folder for unseen messages and hands them to the ingestion service"""

    def __init__(self, ingestion, host: str, user: str, password: str,
                 folder: str = "INBOX", port: int = 993, use_ssl: bool = True,
                 poll_seconds: float = 60.0, organization_id: Optional[str] = None):
        self.ingestion = ingestion
        self.host = host
        self.user = user
        self.password = password
        self.folder = folder
        self.port = port
        self.use_ssl = use_ssl
        self.poll_seconds = poll_seconds
        self.organization_id = organization_id
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    def _client(self):
        if self.use_ssl:
            return aioimaplib.IMAP4_SSL(host=self.host, port=self.port)
        return aioimaplib.IMAP4(host=self.host, port=self.port)

    async def poll_once(self) -> int:
        """Fetch and enqueue every unseen message; returns how many were enqueued"""
        client = self._client()
        await client.wait_hello_from_server()
        login = await client.login(self.user, self.password)
        if login.result != "OK":
            raise ConnectionError(f"IMAP login failed for {self.user}@{self.host}")

        enqueued = 0
        try:
            await client.select(self.folder)
            search = await client.uid_search("UNSEEN")
            if search.result != "OK":
                logger.warning("IMAP search failed", folder=self.folder, result=search.result)
                return 0

            uids = search.lines[0].split() if search.lines else []
            for uid in uids:
                uid = uid.decode() if isinstance(uid, (bytes, bytearray)) else str(uid)
                fetched = await client.uid("fetch", uid, "(RFC822)")
                if fetched.result != "OK" or len(fetched.lines) < 2:
                    logger.warning("IMAP fetch failed", uid=uid, result=fetched.result)
                    continue

                await self.ingestion.enqueue(bytes(fetched.lines[1]), organization_id=self.organization_id)
                await client.uid("store", uid, "+FLAGS", "(\\Seen)")
                enqueued += 1
        finally:
            await client.logout()

        if enqueued:
            logger.info("IMAP poll enqueued messages", folder=self.folder, count=enqueued)
        return enqueued

    async def start(self):
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name="imap-source")

    async def stop(self):
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def _run(self):
        error_count = 0
        while not self._stopping.is_set():
            delay = self.poll_seconds
            try:
                await self.poll_once()
                error_count = 0
            except Exception as e:
                error_count += 1
                delay = min(self.poll_seconds * error_count, 15 * 60)
                logger.error("IMAP poll failed", host=self.host, error=str(e), error_count=error_count)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
