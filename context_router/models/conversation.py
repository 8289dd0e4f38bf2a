"""
Conversation session and pending request models.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

PENDING = 'pending'
COMPLETED = 'completed'


@dataclass
class ConversationContext:
    """Per-session state. Discarded wholesale once the session times out."""
    session_id: str
    user_id: str
    start_time: float
    last_activity: float
    current_location: Optional[str] = None
    current_project: Optional[str] = None
    entities: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # 'type:name' -> entity
    recent_locations: List[str] = field(default_factory=list)  # Most recent first
    recent_projects: List[str] = field(default_factory=list)
    recent_people: List[Dict[str, Any]] = field(default_factory=list)
    recent_actions: List[Dict[str, Any]] = field(default_factory=list)
    query_history: List[Dict[str, Any]] = field(default_factory=list)
    pending_request_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConversationContext':
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})


@dataclass
class PersistentConversation:
    """Long-lived conversation owning the open pending request list."""
    id: str
    user_id: str
    created_at: float
    last_accessed: float
    pending_request_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PersistentConversation':
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})


@dataclass
class Completion:
    """How a later query satisfied a pending request."""
    is_complete: bool = False
    provided_info: Dict[str, Any] = field(default_factory=dict)
    combined_data: Dict[str, Any] = field(default_factory=dict)
    ready_for_downstream: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PendingRequest:
    """A query whose intent is known but which lacks a required datum.

    Status only ever moves from pending to completed.
    """
    id: str
    conversation_id: str
    original_query: str
    intent: Dict[str, Any]
    extracted_entities: Dict[str, List[Dict[str, Any]]]
    missing_info: Dict[str, Any]  # type, required_entity, question
    status: str
    created_at: float
    last_updated: float
    attempts: int = 1
    question_asked: str = ''
    project_context: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[float] = None
    completion: Optional[Dict[str, Any]] = None

    @property
    def is_pending(self) -> bool:
        return self.status == PENDING

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingRequest':
        return cls(**{key: data[key] for key in cls.__dataclass_fields__ if key in data})
