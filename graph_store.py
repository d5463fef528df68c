"""
Read-through access to learner knowledge graphs.

The engine depends only on ``GraphStore.get_graph(user_id)``; graph
construction happens elsewhere. Three backends are provided: an in-memory
store, a store that keeps each graph as one JSON document in a
``RecordStore``, and a Neo4j store.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from neo4j.exceptions import DriverError, Neo4jError
from pydantic import ValidationError

from graph_connection import Neo4jConnectionManager
from mastery_config import GraphBackend, RecordBackend, RuntimeConfig, get_config
from mastery_entities import GraphNode, KnowledgeGraph, KnowledgeGraphEdge
from mastery_errors import GraphStoreError, RecordStoreError
from record_store import InMemoryRecordStore, RecordStore, RedisRecordStore


logger = logging.getLogger(__name__)


def graph_key(user_id: str) -> str:
    """Record key holding a user's knowledge graph."""
    return f"user:{user_id}:graph"


class GraphStore(ABC):
    """Read-only graph access keyed by user."""

    @abstractmethod
    async def get_graph(self, user_id: str) -> KnowledgeGraph:
        """Return the user's graph; an unknown user has an empty graph."""

    async def close(self) -> None:
        """Release any held resources."""


class InMemoryGraphStore(GraphStore):
    """Graphs held in process memory."""

    def __init__(self, graphs: Optional[Dict[str, KnowledgeGraph]] = None):
        self._graphs: Dict[str, KnowledgeGraph] = dict(graphs or {})
        self._lock = asyncio.Lock()

    async def set_graph(self, user_id: str, graph: KnowledgeGraph) -> None:
        async with self._lock:
            self._graphs[user_id] = graph.model_copy(deep=True)

    async def get_graph(self, user_id: str) -> KnowledgeGraph:
        async with self._lock:
            graph = self._graphs.get(user_id)
        if graph is None:
            return KnowledgeGraph()
        return graph.model_copy(deep=True)


class RecordGraphStore(GraphStore):
    """Graphs stored as JSON documents under ``user:{id}:graph``."""

    def __init__(self, records: RecordStore):
        self.records = records

    async def save_graph(self, user_id: str, graph: KnowledgeGraph) -> None:
        try:
            await self.records.set(graph_key(user_id), graph.model_dump(mode="json"))
        except RecordStoreError as e:
            raise GraphStoreError(f"Failed to save knowledge graph for {user_id}", e) from e
        logger.info(f"Saved knowledge graph for user: {user_id}")

    async def get_graph(self, user_id: str) -> KnowledgeGraph:
        try:
            data = await self.records.get(graph_key(user_id))
        except RecordStoreError as e:
            logger.error(f"Failed to get knowledge graph for {user_id}: {e}")
            raise GraphStoreError(f"Failed to get knowledge graph for {user_id}", e) from e

        if not data:
            return KnowledgeGraph()
        try:
            return KnowledgeGraph.model_validate(data)
        except ValidationError as e:
            raise GraphStoreError(f"Stored knowledge graph for {user_id} is malformed", e) from e


class Neo4jGraphStore(GraphStore):
    """Graphs read from Neo4j ``(:Concept)-[:RELATES]->(:Concept)`` patterns.

    Concept nodes carry a ``user_id`` property; edges carry ``relation`` and
    optionally ``learning_relation`` and ``propagation_weight``.
    """

    NODES_QUERY = """
    MATCH (c:Concept {user_id: $user_id})
    RETURN c.id AS id,
           coalesce(c.label, c.id) AS label,
           coalesce(c.type, 'concept') AS type,
           c.description AS description,
           c.importance AS importance
    """

    EDGES_QUERY = """
    MATCH (s:Concept {user_id: $user_id})-[r:RELATES]->(t:Concept {user_id: $user_id})
    RETURN s.id AS source,
           t.id AS target,
           coalesce(r.relation, '') AS relation,
           r.learning_relation AS learning_relation,
           r.propagation_weight AS propagation_weight
    """

    def __init__(self, connection: Optional[Neo4jConnectionManager] = None):
        self.connection = connection or Neo4jConnectionManager()

    async def get_graph(self, user_id: str) -> KnowledgeGraph:
        params = {"user_id": user_id}
        try:
            node_rows = await self.connection.execute_query(self.NODES_QUERY, params)
            edge_rows = await self.connection.execute_query(self.EDGES_QUERY, params)
        except (Neo4jError, DriverError, ValueError) as e:
            logger.error(f"Failed to load knowledge graph for {user_id}: {e}")
            raise GraphStoreError(f"Failed to load knowledge graph for {user_id}", e) from e

        try:
            nodes = [GraphNode.model_validate(row) for row in node_rows]
            edges = [KnowledgeGraphEdge.model_validate(row) for row in edge_rows]
        except ValidationError as e:
            logger.error(f"Malformed knowledge graph rows for {user_id}: {e}")
            raise GraphStoreError(f"Malformed knowledge graph rows for {user_id}", e) from e
        logger.debug(f"Loaded graph for {user_id}: {len(nodes)} nodes, {len(edges)} edges")
        return KnowledgeGraph(nodes=nodes, edges=edges)

    async def close(self) -> None:
        await self.connection.close()


def create_record_store(config: Optional[RuntimeConfig] = None) -> RecordStore:
    """Build the record store selected by ``APP_RECORD_BACKEND``."""
    config = config or get_config()
    if config.app.record_backend == RecordBackend.REDIS:
        return RedisRecordStore(config.redis)
    return InMemoryRecordStore()


def create_graph_store(records: RecordStore,
                       config: Optional[RuntimeConfig] = None) -> GraphStore:
    """Build the graph store selected by ``APP_GRAPH_BACKEND``."""
    config = config or get_config()
    backend = config.app.graph_backend
    if backend == GraphBackend.NEO4J:
        return Neo4jGraphStore(Neo4jConnectionManager(config))
    if backend == GraphBackend.MEMORY:
        return InMemoryGraphStore()
    return RecordGraphStore(records)
