"""
Plain network retrieval of arbitrary bytes: cover art, tool binaries and
cookie material. Downloads are streamed to a temporary ``.part`` file and
moved into place only once complete.
"""

import asyncio
import logging
import os

import aiofiles
import aiohttp

log = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


class Downloader:
    """A small HTTP fetcher with retry logic sharing one connection pool."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.5, max_connections: int = 16):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_connections = max_connections
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def get_session(self) -> aiohttp.ClientSession:
        """
        Gets or creates the shared ClientSession.

        Only one pool is created for the lifetime of the downloader.
        """
        async with self._session_lock:
            if self._session and not self._session.closed:
                return self._session

            connector = aiohttp.TCPConnector(
                limit=self.max_connections,
                ttl_dns_cache=600,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=90),
                headers={"User-Agent": USER_AGENT},
            )
            log.debug(f"Created download pool with limit={self.max_connections}")
        return self._session

    async def close(self) -> None:
        """Closes the shared connection pool."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
                log.debug("Downloader connection pool closed.")
            self._session = None

    async def download_file(
        self,
        url: str,
        destination_path: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> int:
        """
        Downloads ``url`` to ``destination_path``, retrying transient failures
        with exponential backoff. Returns the number of bytes written.

        ``max_attempts`` overrides the downloader-wide retry count for this call.
        """
        attempts = max_attempts or self.max_attempts
        part_path = f"{destination_path}.part"
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        last_exception: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                session = await self.get_session()
                async with session.get(
                    url, headers=headers, allow_redirects=True, timeout=request_timeout
                ) as response:
                    response.raise_for_status()
                    written = 0
                    async with aiofiles.open(part_path, "wb") as f:
                        async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                            await f.write(chunk)
                            written += len(chunk)
                await asyncio.to_thread(os.replace, part_path, destination_path)
                return written
            except aiohttp.ClientResponseError as e:
                last_exception = e
                # 4xx will not get better by retrying
                if 400 <= e.status < 500 and e.status != 429:
                    break
                await self._backoff(attempt, attempts, destination_path, e)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                await self._backoff(attempt, attempts, destination_path, e)
            finally:
                if os.path.exists(part_path):
                    try:
                        os.remove(part_path)
                    except OSError:
                        pass

        assert last_exception is not None
        raise last_exception

    async def fetch_text(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Fetches a small text document in a single attempt."""
        session = await self.get_session()
        request_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None
        async with session.get(url, headers=headers, timeout=request_timeout) as response:
            response.raise_for_status()
            return await response.text()

    async def _backoff(
        self, attempt: int, attempts: int, destination_path: str, error: Exception
    ) -> None:
        log.debug(
            f"Download attempt {attempt}/{attempts} for "
            f"'{os.path.basename(destination_path)}' failed: {error}."
        )
        if attempt < attempts:
            await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
