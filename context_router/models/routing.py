"""
Stage results of the smart source router.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


@dataclass
class LocalKnowledge:
    """Stage 1: what the local relationship graph already knows."""
    entities: List[Dict[str, Any]] = field(default_factory=list)
    relationships: List[Dict[str, Any]] = field(default_factory=list)
    knowledge_gaps: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.0

    @property
    def contributes(self) -> bool:
        return bool(self.entities)


@dataclass
class ExternalDiscovery:
    """Stage 2: projects in the external system that the query mentions."""
    projects: List[Dict[str, Any]] = field(default_factory=list)
    method: str = 'none'  # none | mention_match | content_search
    confidence: float = 0.0

    @property
    def contributes(self) -> bool:
        return bool(self.projects)


@dataclass
class DrillDown:
    """Stage 3: one further level of detail per discovered item."""
    results: List[Dict[str, Any]] = field(default_factory=list)
    fetches: int = 0
    confidence: float = 0.0

    @property
    def contributes(self) -> bool:
        return bool(self.results)


@dataclass
class Connections:
    """Stage 4: links synthesized between local entities and external detail."""
    entity_connections: List[Dict[str, Any]] = field(default_factory=list)
    temporal_connections: List[Dict[str, Any]] = field(default_factory=list)
    spatial_connections: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.0

    @property
    def contributes(self) -> bool:
        return bool(self.entity_connections or self.temporal_connections or self.spatial_connections)


@dataclass
class RoutingResult:
    query: str
    local: LocalKnowledge = field(default_factory=LocalKnowledge)
    external: ExternalDiscovery = field(default_factory=ExternalDiscovery)
    drill_down: DrillDown = field(default_factory=DrillDown)
    connections: Connections = field(default_factory=Connections)
    overall_confidence: float = 0.0
    learned: bool = False
    from_cache: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)  # external_unavailable, routing_timed_out, local_only

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RoutingResult':
        return cls(query=data.get('query', ''),
                   local=LocalKnowledge(**data.get('local', {})),
                   external=ExternalDiscovery(**data.get('external', {})),
                   drill_down=DrillDown(**data.get('drill_down', {})),
                   connections=Connections(**data.get('connections', {})),
                   overall_confidence=data.get('overall_confidence', 0.0),
                   learned=data.get('learned', False),
                   from_cache=data.get('from_cache', False),
                   metadata=dict(data.get('metadata') or {}))

    @classmethod
    def empty(cls, query: str, **metadata) -> 'RoutingResult':
        return cls(query=query, metadata=dict(metadata))
