"""
Models produced by the assembly orchestrator.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .conversation import PendingRequest
from .core import QueryResult
from .routing import RoutingResult

INTELLIGENCE_LEVELS = ['basic', 'relational', 'contextual', 'advanced']


@dataclass
class ContextualIntelligence:
    """Cross-referenced context gathered around one query."""
    intelligence_level: str = 'basic'
    context_entities: List[Dict[str, Any]] = field(default_factory=list)
    relationship_network: Dict[str, List[Dict[str, Any]]] = field(default_factory=lambda: {'nodes': [], 'edges': []})
    spatial_context: Dict[str, Any] = field(default_factory=dict)
    temporal_context: Dict[str, Any] = field(default_factory=dict)
    financial_context: Dict[str, Any] = field(default_factory=dict)
    project_context: Dict[str, Any] = field(default_factory=dict)
    insights: List[Dict[str, Any]] = field(default_factory=list)
    confidence: float = 0.5

    @property
    def edges(self) -> List[Dict[str, Any]]:
        return self.relationship_network.get('edges', [])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AssemblyResult:
    """Everything produced while answering one query in a session."""
    session_id: str
    user_id: str
    query: str
    query_result: QueryResult
    routing: RoutingResult
    intelligence: ContextualIntelligence
    response: Dict[str, Any]  # primary_response, contextual_insights, recommendations, confidence, intelligence_level
    pending_request: Optional[PendingRequest] = None  # Created by this query
    completed_request: Optional[PendingRequest] = None  # Completed by this query
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        query_result = self.query_result
        return {
            'session_id': self.session_id,
            'user_id': self.user_id,
            'query': self.query,
            'intent': query_result.intent.to_dict(),
            'entities': query_result.entities,
            'actions': query_result.actions,
            'missing_info': query_result.missing_info.to_dict() if query_result.missing_info else None,
            'routing': self.routing.to_dict(),
            'intelligence': self.intelligence.to_dict(),
            'response': self.response,
            'pending_request': self.pending_request.to_dict() if self.pending_request else None,
            'completed_request': self.completed_request.to_dict() if self.completed_request else None,
            'metadata': self.metadata,
        }
