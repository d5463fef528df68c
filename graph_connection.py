"""
Async Neo4j driver wrapper used by the Neo4j graph store.

The driver is created lazily on the first query. Transient driver errors are
retried with exponential backoff before they reach the graph store, which
turns whatever remains into ``GraphStoreError``.
"""

import logging
from typing import Any, Dict, List, Optional

from neo4j import AsyncDriver, AsyncGraphDatabase
from neo4j.exceptions import ServiceUnavailable, SessionExpired, TransientError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mastery_config import RuntimeConfig, get_config


logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (ServiceUnavailable, SessionExpired, TransientError)

_neo4j_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception_type(RETRYABLE_ERRORS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class Neo4jConnectionManager:
    """Owns one async driver and runs read queries against it."""

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or get_config()
        self._driver: Optional[AsyncDriver] = None

    @property
    def is_connected(self) -> bool:
        return self._driver is not None

    async def _open(self) -> AsyncDriver:
        """Create the driver once and verify connectivity.

        Raises:
            ValueError: If the Neo4j settings are incomplete
        """
        if self._driver is not None:
            return self._driver
        if not self.config.validate_neo4j_connection():
            raise ValueError("Invalid Neo4j configuration: uri, user and password are required")

        driver = AsyncGraphDatabase.driver(**self.config.get_neo4j_config())
        try:
            await driver.verify_connectivity()
        except Exception:
            await driver.close()
            raise

        self._driver = driver
        logger.info(f"Connected to Neo4j at {self.config.neo4j.uri}")
        return driver

    @_neo4j_retry
    async def connect(self) -> AsyncDriver:
        """Connect, retrying transient failures."""
        return await self._open()

    @_neo4j_retry
    async def execute_query(self,
                            query: str,
                            parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run ``query`` on the configured database and return rows as dicts."""
        driver = await self._open()
        session = driver.session(database=self.config.neo4j.database)
        try:
            result = await session.run(query, parameters or {})
            return [dict(record) async for record in result]
        finally:
            await session.close()

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            logger.info("Neo4j connection closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
