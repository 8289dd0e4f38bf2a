"""
Core data models for entity records, the relationship graph and parsed queries.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# Plural category key used in entity records -> singular entity type used in the graph
ENTITY_CATEGORIES = {
    'people': 'person',
    'projects': 'project',
    'locations': 'location',
    'amounts': 'amount',
    'items': 'item',
    'materials': 'material',
    'tasks': 'task',
    'dates': 'date',
}
CATEGORY_FOR_TYPE = {entity_type: category for category, entity_type in ENTITY_CATEGORIES.items()}


def category_for(entity_type: str) -> str:
    """Plural category key for a singular entity type ('person' -> 'people')."""
    return CATEGORY_FOR_TYPE.get(entity_type, f'{entity_type}s')


def entity_label(entity: Dict[str, Any]) -> str:
    """Best human-readable name of an extracted entity dict."""
    for key in ('name', 'description'):
        value = entity.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    value = entity.get('value')
    if value is None:
        return ''
    if isinstance(value, (int, float)):
        return f'${value:g}'
    return str(value).strip()


def node_id(entity_type: str, name: str) -> str:
    return f'{entity_type}:{name.strip().lower()}'


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if confidence != confidence:  # NaN
        return default
    return min(max(confidence, 0.0), 1.0)


@dataclass
class EntityRecord:
    """Entities extracted from one conversational turn. Append-only once persisted."""
    id: str
    conversation_id: str
    domain: str
    timestamp: str
    entities: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)  # Category -> entity dicts
    relationships: List[Dict[str, Any]] = field(default_factory=list)  # Explicit record-level relations
    metadata: Dict[str, Any] = field(default_factory=dict)  # confidence, source, extractor, ...

    @property
    def confidence(self) -> float:
        return clamp_confidence(self.metadata.get('confidence', 0.5))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EntityRecord':
        entities = data.get('entities') or {}
        return cls(id=str(data.get('id', '')),
                   conversation_id=str(data.get('conversation_id') or data.get('conversationId') or ''),
                   domain=str(data.get('domain', '')),
                   timestamp=str(data.get('timestamp', '')),
                   entities={k: [e for e in v if isinstance(e, dict)] for k, v in entities.items() if isinstance(v, list)},
                   relationships=[r for r in data.get('relationships') or [] if isinstance(r, dict)],
                   metadata=dict(data.get('metadata') or {}))


@dataclass
class GraphNode:
    """An entity in the relationship graph."""
    id: str
    name: str
    type: str
    confidence: float
    record_ids: List[str] = field(default_factory=list)  # Records that mention this entity
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphEdge:
    """A typed, confidence-scored relation between two nodes."""
    source: str
    target: str
    type: str
    confidence: float
    record_id: Optional[str] = None


@dataclass
class RelationshipGraph:
    """Directed graph of entities built from entity records."""
    nodes: Dict[str, GraphNode] = field(default_factory=dict)
    edges: List[GraphEdge] = field(default_factory=list)
    records: Dict[str, EntityRecord] = field(default_factory=dict)
    built_at: float = 0.0

    def neighbors(self, source_id: str, relation_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """One-hop outgoing neighbours, optionally restricted to relation types."""
        related = []
        for edge in self.edges:
            if edge.source != source_id:
                continue
            if relation_types is not None and edge.type not in relation_types:
                continue
            target = self.nodes.get(edge.target)
            if target is not None:
                related.append({'relationship': edge.type, 'entity': target, 'confidence': edge.confidence})
        return related

    def find_paths(self, source_id: str, target_id: str, max_depth: int = 3) -> List[List[GraphEdge]]:
        """All simple edge paths from source to target no longer than max_depth."""
        paths: List[List[GraphEdge]] = []
        visited = set()

        def dfs(current: str, path: List[GraphEdge]) -> None:
            if len(path) > max_depth:
                return
            if current == target_id and path:
                paths.append(list(path))
                return
            visited.add(current)
            for edge in self.edges:
                if edge.source == current and edge.target not in visited:
                    path.append(edge)
                    dfs(edge.target, path)
                    path.pop()
            visited.discard(current)

        dfs(source_id, [])
        return paths

    def nodes_of_type(self, entity_type: str) -> List[GraphNode]:
        return [node for node in self.nodes.values() if node.type == entity_type]


@dataclass
class Extraction:
    """Output of the NLU collaborator."""
    entities: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    intent_indicators: List[str] = field(default_factory=list)
    context_clues: List[str] = field(default_factory=list)
    confidence: float = 0.3

    @classmethod
    def empty(cls) -> 'Extraction':
        return cls()


@dataclass
class Intent:
    type: str
    confidence: float
    patterns_matched: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContextRequirement:
    """A reference in the query that needs resolving against context."""
    type: str
    value: str
    reason: str  # ambiguous_reference | implicit_reference | possessive_reference


@dataclass
class ParsedQuery:
    original_query: str
    intent: Intent
    entities: Dict[str, List[Dict[str, Any]]]
    context_requirements: List[ContextRequirement]
    missing_entities: List[str]  # Required entity types the query did not mention
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return clamp_confidence(self.metadata.get('confidence', 0.5))


@dataclass
class ResolutionContext:
    """What the resolver knows about the caller beyond the query text."""
    user_id: Optional[str] = None
    current_location: Optional[str] = None
    current_project: Optional[str] = None
    domain: Optional[str] = None


@dataclass
class Resolution:
    """Result of resolving a single reference."""
    type: str
    original_value: str
    resolved_entity: Optional[Dict[str, Any]]
    confidence: float
    method: str
    related_entities: List[Dict[str, Any]] = field(default_factory=list)
    note: Optional[str] = None


@dataclass
class ResolvedContext:
    """A parsed query with references resolved and context gathered."""
    entities: Dict[str, List[Dict[str, Any]]]
    resolved_references: List[Resolution] = field(default_factory=list)
    contextual_information: List[Dict[str, Any]] = field(default_factory=list)
    ambiguities: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.5


@dataclass
class MissingInfo:
    """Datum an intent handler needs before a request can go downstream."""
    type: str  # amount | project_context
    required_entity: str
    question: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QueryResult:
    """Outcome of parsing, resolving and handling one query."""
    original_query: str
    intent: Intent
    resolved_context: ResolvedContext
    actions: List[Dict[str, Any]] = field(default_factory=list)
    response: str = ''
    confidence: float = 0.5
    missing_info: Optional[MissingInfo] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def entities(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.resolved_context.entities
