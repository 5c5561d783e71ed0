"""QuestDB client for historical tick and session-event reads.

Queries go through the QuestDB REST API (``/exec``, port 9000) and come back
as JSON ``{"columns": [...], "dataset": [[...], ...]}``. The simulator only
ever reads, so one client can be shared by any number of markets.

Used by:
- QuestDBPriceStore for at-or-before price lookups
- QuestDBEventFeed for the next trading-session boundary
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
import orjson
from opentelemetry import trace

from marketsim.backtest.errors import CollaboratorError
from marketsim.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def quote_literal(value: str) -> str:
    """Render ``value`` as a single-quoted SQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


class QuestDBClient:
    """Async client for the QuestDB REST endpoint.

    An ``aiohttp.ClientSession`` may be injected to share connection pooling
    with the host application; otherwise a short-lived session is opened for
    each query. Transport failures and QuestDB error bodies are raised as
    :class:`CollaboratorError` with the SQL attached.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.settings = settings or default_settings
        self.http_url = self.settings.QUESTDB_URL
        self.timeout = aiohttp.ClientTimeout(total=self.settings.QUESTDB_QUERY_TIMEOUT_S)
        self._session = session

    async def query(self, sql: str, **context) -> Dict[str, Any]:
        """
        Execute SQL query via REST API.

        Args:
            sql: Statement to run.
            **context: ``symbol``/``time`` attached to any raised error.
        """
        url = f"{self.http_url}/exec"
        params = {"query": sql, "fmt": "json"}

        with tracer.start_as_current_span("questdb_query") as span:
            span.set_attribute("db.system", "questdb")
            span.set_attribute("db.statement", sql)

            try:
                if self._session is not None:
                    return await self._execute(self._session, url, params, sql, context)

                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    return await self._execute(session, url, params, sql, context)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"QUESTDB TRANSPORT ERROR: {e}")
                raise CollaboratorError(
                    f"QuestDB request failed: {e}", query=sql, **context
                ) from e

    async def _execute(self, session, url, params, sql, context) -> Dict[str, Any]:
        async with session.get(url, params=params, timeout=self.timeout) as resp:
            if resp.status != 200:
                text = await resp.text()
                logger.error(f"QUESTDB QUERY ERROR: {resp.status} - {text}")
                raise CollaboratorError(
                    f"QuestDB answered {resp.status}: {text}", query=sql, **context
                )

            try:
                data = await resp.json(loads=orjson.loads, content_type=None)
            except orjson.JSONDecodeError as e:
                logger.error(f"QUESTDB DECODE ERROR: {e}")
                raise CollaboratorError(
                    f"QuestDB answered with an unreadable body: {e}", query=sql, **context
                ) from e

        if not isinstance(data, dict) or "error" in data:
            detail = data.get("error") if isinstance(data, dict) else data
            logger.error(f"QUESTDB QUERY ERROR: {detail}")
            raise CollaboratorError(
                f"QuestDB rejected the query: {detail}", query=sql, **context
            )

        return data

    async def fetch_rows(self, sql: str, **context) -> List[Dict[str, Any]]:
        """Run ``sql`` and return its rows as dicts keyed by column name."""
        result = await self.query(sql, **context)

        columns = [c["name"] for c in result.get("columns", [])]
        rows = result.get("dataset", [])
        return [dict(zip(columns, row)) for row in rows]
