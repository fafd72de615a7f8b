import os

import pytest
import pytest_asyncio
from psycopg.rows import namedtuple_row
from psycopg_pool import AsyncConnectionPool

from mcp_agensgraph_linkage.linkage_graph import LinkageGraph
from mcp_agensgraph_linkage.store import AgensGraphStore, get_pool_connection


@pytest.fixture(scope="module")
def graphname():
    """Graph name for database testing."""
    return os.getenv("AGENSGRAPH_GRAPH_NAME", "test_linkage")


@pytest_asyncio.fixture(scope="function")
async def db_setup(graphname):
    """Setup AgensGraph connection pool for database tests."""
    db_name = os.getenv("AGENSGRAPH_DB")
    db_user = os.getenv("AGENSGRAPH_USERNAME")
    db_password = os.getenv("AGENSGRAPH_PASSWORD")
    db_host = os.getenv("AGENSGRAPH_HOST", "localhost")
    db_port = os.getenv("AGENSGRAPH_PORT", "5432")

    if not db_name or not db_user or not db_password:
        pytest.skip(
            "Database integration tests skipped: AGENSGRAPH_DB, AGENSGRAPH_USERNAME, "
            "and AGENSGRAPH_PASSWORD environment variables must be set."
        )

    db_url = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
    agensgraph_pool = AsyncConnectionPool(db_url, open=False)
    await agensgraph_pool.open()

    yield agensgraph_pool

    await agensgraph_pool.close()


@pytest_asyncio.fixture(scope="function")
async def store(db_setup, graphname):
    """Provide an AgensGraphStore over an empty graph."""
    store = AgensGraphStore(db_setup, graphname)
    await store.ensure_schema()

    async with get_pool_connection(db_setup) as conn:
        async with conn.cursor(row_factory=namedtuple_row) as cursor:
            await cursor.execute(f"SET graph_path = {graphname}")
            await cursor.execute("MATCH (n) DETACH DELETE n")
            await conn.commit()

    yield store


@pytest_asyncio.fixture(scope="function")
async def graph(store):
    """Provide a LinkageGraph backed by AgensGraph."""
    yield LinkageGraph(store)
