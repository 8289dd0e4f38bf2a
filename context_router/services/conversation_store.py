"""
Per-session conversation state with bounded memory and inactivity expiry.
"""

from typing import Any, Dict, List, Optional

from ..models.conversation import ConversationContext
from ..models.core import ENTITY_CATEGORIES, QueryResult, entity_label, node_id
from ..utils.config import ConversationConfig, config
from ..utils.logging_config import get_logger
from ..utils.stores import KeyValueStore
from ..utils.timestamp_utils import Clock, to_iso

logger = get_logger(__name__)


def _push_recent(items: List[Any], item: Any, cap: int, key=None) -> List[Any]:
    """Move item to the front of a most-recent-first list, dropping duplicates and anything past cap."""
    identity = key if key is not None else (lambda value: value)
    kept = [existing for existing in items if identity(existing) != identity(item)]
    return ([item] + kept)[:cap]


def _person_key(person: Dict[str, Any]) -> str:
    return str(person.get('name', '')).lower()


class ConversationStateStore:
    """Session contexts keyed by session id.

    A context whose last activity is older than the session timeout is treated as gone: reads
    discard it and hand back a fresh one.
    """

    def __init__(self,
                 store: KeyValueStore,
                 clock: Optional[Clock] = None,
                 conversation_config: Optional[ConversationConfig] = None):
        """
        Args:
            store: Backing store for serialized contexts
            clock: Time source (optional, wall clock if None)
            conversation_config: Timeout and memory caps (optional, from config if None)
        """
        self.store = store
        self.clock = clock if clock is not None else Clock()
        self.config = conversation_config if conversation_config is not None else config.conversation

    @property
    def timeout_seconds(self) -> float:
        return self.config.session_timeout_minutes * 60

    def _expired(self, context: ConversationContext, now: float) -> bool:
        return now - context.last_activity >= self.timeout_seconds

    def _load(self, session_id: str) -> Optional[ConversationContext]:
        data = self.store.get(session_id)
        if data is None:
            return None
        try:
            return ConversationContext.from_dict(data)
        except TypeError as e:
            logger.warning(f'Discarding unreadable context for session {session_id}: {e}')
            return None

    def get(self, session_id: str) -> Optional[ConversationContext]:
        """Live context for a session, or None when absent or expired."""
        context = self._load(session_id)
        if context is None or self._expired(context, self.clock.now()):
            return None
        return context

    def get_or_create(self, session_id: str, user_id: str) -> ConversationContext:
        """Return the session's context, replacing it with a fresh one once it has timed out.

        Args:
            session_id: Session identifier
            user_id: Owning user

        Returns:
            ConversationContext

        Raises:
            ValueError: If session_id or user_id is empty
        """
        if not session_id:
            raise ValueError('session_id is required')
        if not user_id:
            raise ValueError('user_id is required')

        with self.store.lock:
            now = self.clock.now()
            context = self._load(session_id)
            if context is not None and not self._expired(context, now):
                return context

            if context is not None:
                logger.info(f'Session {session_id} expired after {now - context.last_activity:.0f}s, starting fresh')
            context = ConversationContext(session_id=session_id, user_id=user_id, start_time=now, last_activity=now)
            self.save(context)
            logger.debug(f'Created conversation context for session {session_id}')
            return context

    def save(self, context: ConversationContext) -> None:
        try:
            self.store.set(context.session_id, context.to_dict())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f'Failed to persist context for session {context.session_id}: {e}')

    def update(self, context: ConversationContext, query_result: QueryResult) -> ConversationContext:
        """Fold one processed query into the session context and persist it.

        Args:
            context: Context returned by get_or_create
            query_result: Outcome of processing the query

        Returns:
            The updated context
        """
        now = self.clock.now()
        timestamp = to_iso(now)
        history_cap = self.config.history_cap
        memory_cap = self.config.memory_cap

        context.query_history.append({
            'query': query_result.original_query,
            'timestamp': timestamp,
            'intent': query_result.intent.type,
            'confidence': query_result.confidence,
        })
        context.query_history = context.query_history[-history_cap:]

        for category, entities in query_result.entities.items():
            entity_type = ENTITY_CATEGORIES.get(category, category.rstrip('s'))
            for entity in entities:
                label = entity_label(entity)
                if not label:
                    continue
                key = node_id(entity_type, label)
                merged = dict(context.entities.get(key, {}))
                merged.update(entity)
                merged.update({'type': entity_type, 'name': label, 'source': 'query', 'last_mentioned': timestamp})
                merged.setdefault('first_mentioned', timestamp)
                merged['mentions'] = context.entities.get(key, {}).get('mentions', 0) + 1
                context.entities[key] = merged

                if entity_type == 'location':
                    context.recent_locations = _push_recent(context.recent_locations, label, memory_cap)
                elif entity_type == 'project':
                    context.recent_projects = _push_recent(context.recent_projects, label, memory_cap)
                elif entity_type == 'person':
                    context.recent_people = _push_recent(context.recent_people, {'name': label, 'last_mentioned': timestamp},
                                                         memory_cap, key=_person_key)

        for action in query_result.actions:
            if action.get('type') == 'unknown_intent':
                continue
            context.recent_actions.insert(0, {'type': action.get('type'), 'timestamp': timestamp})
        context.recent_actions = context.recent_actions[:memory_cap]

        context.last_activity = now
        self.save(context)
        return context

    def cleanup_expired(self) -> int:
        """Remove every timed-out context.

        Returns:
            Number of contexts removed
        """
        now = self.clock.now()

        def expired(_key: str, data: Dict[str, Any]) -> bool:
            return now - float(data.get('last_activity', 0)) >= self.timeout_seconds

        removed = self.store.sweep(expired)
        if removed:
            logger.info(f'Cleaned up {removed} expired sessions')
        return removed

    def session_stats(self, session_id: str) -> Optional[Dict[str, Any]]:
        context = self.get(session_id)
        if context is None:
            return None
        now = self.clock.now()
        return {
            'session_id': context.session_id,
            'user_id': context.user_id,
            'start_time': to_iso(context.start_time),
            'last_activity': to_iso(context.last_activity),
            'duration_seconds': now - context.start_time,
            'query_count': len(context.query_history),
            'entities_tracked': len(context.entities),
            'current_location': context.current_location,
            'current_project': context.current_project,
            'recent_locations': len(context.recent_locations),
            'recent_projects': len(context.recent_projects),
            'recent_people': len(context.recent_people),
            'pending_requests': len(context.pending_request_ids),
        }
