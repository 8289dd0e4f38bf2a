"""
Relationship Graph Builder: turns persisted entity records into a time-cached relationship graph.
"""

import threading
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (ENTITY_CATEGORIES, EntityRecord, GraphEdge, GraphNode, RelationshipGraph, clamp_confidence,
                           entity_label, node_id)
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.stores import KeyValueStore
from ..utils.timestamp_utils import Clock
from .matching import MATCH_PRECEDENCE, NameMatcher

logger = get_logger(__name__)


class RelationshipGraphBuilder:
    """Builds and caches one relationship graph per domain.

    Edges come only from explicit relationship fields, either on an entity or on the record
    itself. An edge whose endpoint is not a node of the same build pass is dropped.
    """

    def __init__(self,
                 store: KeyValueStore,
                 clock: Optional[Clock] = None,
                 cache_ttl_seconds: Optional[float] = None):
        """
        Args:
            store: Entity record store
            clock: Time source (optional, wall clock if None)
            cache_ttl_seconds: Graph cache lifetime (optional, from config if None)
        """
        self.store = store
        self.clock = clock if clock is not None else Clock()
        self.cache_ttl_seconds = cache_ttl_seconds if cache_ttl_seconds is not None else config.graph.cache_ttl_seconds
        self._cache: Dict[str, RelationshipGraph] = {}
        self._lock = threading.RLock()

    def get_graph(self, domain: str) -> RelationshipGraph:
        """Return the cached graph for a domain, rebuilding it once the TTL has elapsed."""
        with self._lock:
            cached = self._cache.get(domain)
            if cached is not None and self.clock.now() - cached.built_at < self.cache_ttl_seconds:
                return cached

            graph = self.build(domain)
            self._cache[domain] = graph
            return graph

    def invalidate(self, domain: Optional[str] = None) -> None:
        """Drop the cached graph for one domain, or for every domain."""
        with self._lock:
            if domain is None:
                self._cache.clear()
            else:
                self._cache.pop(domain, None)

    def append_record(self, record: EntityRecord) -> bool:
        """Persist a new entity record and invalidate the domain graph.

        Records are append-only; an id already present is never overwritten.

        Returns:
            True if the record was written
        """
        with self.store.lock:
            if record.id in self.store:
                logger.warning(f'Entity record {record.id} already exists, not overwriting')
                return False
            self.store.set(record.id, record.to_dict())

        self.invalidate(record.domain)
        logger.debug(f'Appended entity record {record.id} to domain {record.domain}')
        return True

    def load_records(self, domain: str) -> List[EntityRecord]:
        records = []
        for key, value in self.store.items():
            try:
                record = EntityRecord.from_dict(value)
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f'Skipping malformed entity record {key}: {e}')
                continue
            if not record.id:
                record.id = key
            if record.domain and record.domain != domain:
                continue
            records.append(record)
        return records

    def build(self, domain: str) -> RelationshipGraph:
        """Build a fresh graph from every entity record of a domain.

        Args:
            domain: Knowledge domain

        Returns:
            RelationshipGraph stamped with the build time
        """
        graph = RelationshipGraph(built_at=self.clock.now())
        pending_edges: List[Tuple[Dict[str, Any], Optional[str], EntityRecord]] = []

        for record in self.load_records(domain):
            graph.records[record.id] = record
            for category, entity_type in ENTITY_CATEGORIES.items():
                for entity in record.entities.get(category, []):
                    name = entity_label(entity)
                    if not name:
                        continue
                    source_id = self._add_node(graph, entity_type, name, entity, record)
                    for relation in entity.get('relationships') or []:
                        if isinstance(relation, dict):
                            pending_edges.append((relation, source_id, record))

            for relation in record.relationships:
                pending_edges.append((relation, None, record))

        dropped = 0
        for relation, source_id, record in pending_edges:
            edge = self._make_edge(graph, relation, source_id, record)
            if edge is None:
                dropped += 1
            else:
                graph.edges.append(edge)

        if dropped:
            logger.debug(f'Dropped {dropped} relationships with unknown endpoints in domain {domain}')
        logger.info(f'Built relationship graph for {domain}: {len(graph.nodes)} nodes, {len(graph.edges)} edges')
        return graph

    def _add_node(self, graph: RelationshipGraph, entity_type: str, name: str, entity: Dict[str, Any],
                  record: EntityRecord) -> str:
        nid = node_id(entity_type, name)
        confidence = clamp_confidence(entity.get('confidence'), default=record.confidence)
        node = graph.nodes.get(nid)
        if node is None:
            attributes = {k: v for k, v in entity.items() if k not in ('name', 'relationships', 'confidence')}
            graph.nodes[nid] = GraphNode(id=nid,
                                         name=name,
                                         type=entity_type,
                                         confidence=confidence,
                                         record_ids=[record.id],
                                         attributes=attributes)
        else:
            node.confidence = max(node.confidence, confidence)
            if record.id not in node.record_ids:
                node.record_ids.append(record.id)
        return nid

    def _endpoint(self, graph: RelationshipGraph, name: Any, entity_type: Optional[str]) -> Optional[str]:
        if not isinstance(name, str) or not name.strip():
            return None
        if entity_type:
            nid = node_id(entity_type, name)
            return nid if nid in graph.nodes else None

        wanted = name.strip().lower()
        for node in graph.nodes.values():
            if node.name.lower() == wanted:
                return node.id
        return None

    def _make_edge(self, graph: RelationshipGraph, relation: Dict[str, Any], source_id: Optional[str],
                   record: EntityRecord) -> Optional[GraphEdge]:
        relation_type = relation.get('type')
        if not relation_type:
            return None
        if source_id is None:
            source_id = self._endpoint(graph, relation.get('source'), relation.get('source_type'))
        target_id = self._endpoint(graph, relation.get('target'), relation.get('target_type'))
        if source_id is None or target_id is None:
            return None

        return GraphEdge(source=source_id,
                         target=target_id,
                         type=str(relation_type),
                         confidence=clamp_confidence(relation.get('confidence'), default=record.confidence),
                         record_id=record.id)

    def find_nodes_by_name(self, domain: str, name: str, matcher: Optional[NameMatcher] = None) -> List[Tuple[GraphNode, str]]:
        """Find nodes whose name matches, ordered by match precedence.

        Args:
            domain: Knowledge domain
            name: Name to search for
            matcher: Name matching strategy (optional, default NameMatcher)

        Returns:
            List of (node, match_kind), exact matches first, then first-token, then substring
        """
        matcher = matcher if matcher is not None else NameMatcher()
        graph = self.get_graph(domain)
        matches = []
        for node in graph.nodes.values():
            kind = matcher.match(node.name, name)
            if kind is not None:
                matches.append((node, kind))
        matches.sort(key=lambda pair: MATCH_PRECEDENCE.index(pair[1]))
        return matches

    def neighbors(self, domain: str, source_id: str, relation_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        return self.get_graph(domain).neighbors(source_id, relation_types)

    def find_paths(self, domain: str, source_id: str, target_id: str, max_depth: int = 3) -> List[List[GraphEdge]]:
        return self.get_graph(domain).find_paths(source_id, target_id, max_depth)
