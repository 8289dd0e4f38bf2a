"""
Pending request manager.

A pending request is a query whose intent is known but which lacks a required datum (an amount
or the project it belongs to). It stays pending until a later query in the same conversation
supplies that datum, then moves to completed. Pending requests never expire on their own;
only completed requests and idle conversations are purged by cleanup().
"""

import random
import string
from typing import Any, Dict, List, Optional

from ..models.conversation import COMPLETED, PENDING, Completion, PendingRequest, PersistentConversation
from ..models.core import MissingInfo, QueryResult, entity_label
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.stores import KeyValueStore
from ..utils.timestamp_utils import Clock, to_iso, to_millis

logger = get_logger(__name__)

# missing_info.type -> (entity category that satisfies it, provided_info key)
COMPLETION_SOURCES = {
    'amount': ('amounts', 'amount'),
    'project_context': ('projects', 'project'),
}

AGE_BUCKETS = [('recent', 3600), ('today', 24 * 3600), ('week', 7 * 24 * 3600)]


def _request_id(now: float) -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f'req-{to_millis(now)}-{suffix}'


def project_context(entities: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Best guess at which project a request belongs to.

    Prefers an explicit project, then a location, then '<person>'s project'.
    """
    projects = entities.get('projects') or []
    locations = entities.get('locations') or []
    people = entities.get('people') or []

    project_name = None
    if projects:
        project_name = entity_label(projects[0]) or None
    elif locations:
        project_name = entity_label(locations[0]) or None
    elif people:
        project_name = f"{entity_label(people[0])}'s project"

    return {
        'project_name': project_name,
        'inferred_from_location': bool(locations),
        'inferred_from_person': bool(people),
        'explicit_project': bool(projects),
    }


def is_ready_for_downstream(combined: Dict[str, List[Dict[str, Any]]]) -> bool:
    """True when combined data has an amount, an item and a project or location."""
    has_target = bool(combined.get('projects')) or bool(combined.get('locations'))
    return bool(combined.get('amounts')) and bool(combined.get('items')) and has_target


class PendingRequestManager:
    """Create, complete, list and purge pending requests for persistent conversations."""

    def __init__(self, conversations: KeyValueStore, requests: KeyValueStore, clock: Optional[Clock] = None):
        """
        Args:
            conversations: Store of persistent conversations keyed by conversation id
            requests: Store of pending requests keyed by request id
            clock: Time source (optional, wall clock if None)
        """
        self.conversations = conversations
        self.requests = requests
        self.clock = clock if clock is not None else Clock()

    # Conversations

    def _load_conversation(self, conversation_id: str) -> Optional[PersistentConversation]:
        data = self.conversations.get(conversation_id)
        return PersistentConversation.from_dict(data) if data is not None else None

    def _save_conversation(self, conversation: PersistentConversation) -> None:
        try:
            self.conversations.set(conversation.id, conversation.to_dict())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f'Failed to persist conversation {conversation.id}: {e}')

    def _save_request(self, request: PendingRequest) -> None:
        try:
            self.requests.set(request.id, request.to_dict())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f'Failed to persist pending request {request.id}: {e}')

    def get_conversation(self, user_id: str, session_id: Optional[str] = None) -> PersistentConversation:
        """Fetch or create the persistent conversation for a session.

        Args:
            user_id: Owning user
            session_id: Session identifier (optional, '<user_id>-default' if None)

        Returns:
            PersistentConversation with last_accessed refreshed

        Raises:
            ValueError: If user_id is empty
        """
        if not user_id:
            raise ValueError('user_id is required')

        conversation_id = session_id or f'{user_id}-default'
        with self.conversations.lock:
            now = self.clock.now()
            conversation = self._load_conversation(conversation_id)
            if conversation is None:
                conversation = PersistentConversation(id=conversation_id, user_id=user_id, created_at=now, last_accessed=now)
                logger.info(f'Created persistent conversation {conversation_id}')
            conversation.last_accessed = now
            self._save_conversation(conversation)
            return conversation

    # State machine

    def create(self, conversation_id: str, query_result: QueryResult, missing_info: MissingInfo) -> PendingRequest:
        """Record a query that is waiting for missing information.

        Args:
            conversation_id: Owning persistent conversation
            query_result: Result of processing the incomplete query
            missing_info: What the intent handler still needs

        Returns:
            The new PendingRequest

        Raises:
            ValueError: If the conversation does not exist
        """
        with self.conversations.lock, self.requests.lock:
            conversation = self._load_conversation(conversation_id)
            if conversation is None:
                raise ValueError(f'Unknown conversation: {conversation_id}')

            now = self.clock.now()
            request = PendingRequest(id=_request_id(now),
                                     conversation_id=conversation_id,
                                     original_query=query_result.original_query,
                                     intent=query_result.intent.to_dict(),
                                     extracted_entities={k: list(v) for k, v in query_result.entities.items()},
                                     missing_info=missing_info.to_dict(),
                                     status=PENDING,
                                     created_at=now,
                                     last_updated=now,
                                     question_asked=missing_info.question or 'Additional information needed',
                                     project_context=project_context(query_result.entities))
            self._save_request(request)

            conversation.pending_request_ids.append(request.id)
            conversation.last_accessed = now
            self._save_conversation(conversation)

        logger.info(f'Created pending request {request.id} waiting on {missing_info.type}')
        return request

    def check_completion(self, request: PendingRequest, query_result: QueryResult) -> Completion:
        """Whether a new query supplies the datum a pending request is missing."""
        completion = Completion()
        source = COMPLETION_SOURCES.get(request.missing_info.get('type'))
        if source is None:
            return completion

        category, provided_key = source
        supplied = query_result.entities.get(category) or []
        if not supplied:
            return completion

        combined = dict(request.extracted_entities)
        combined[category] = [supplied[0]]
        completion.is_complete = True
        completion.provided_info[provided_key] = supplied[0]
        completion.combined_data = combined
        completion.ready_for_downstream = is_ready_for_downstream(combined)
        return completion

    def on_new_query(self, conversation_id: str, new_query: str, new_query_result: QueryResult) -> Optional[PendingRequest]:
        """Try to complete one of the conversation's open requests with a new query.

        Requests are checked oldest first and at most one is completed per query. Requests
        checked but not satisfied have their attempt counter bumped.

        Args:
            conversation_id: Owning persistent conversation
            new_query: The follow-up query text
            new_query_result: Result of processing the follow-up

        Returns:
            The completed PendingRequest, or None
        """
        with self.conversations.lock, self.requests.lock:
            conversation = self._load_conversation(conversation_id)
            if conversation is None or not conversation.pending_request_ids:
                return None

            now = self.clock.now()
            for request_id in list(conversation.pending_request_ids):
                request = self.get(request_id)
                if request is None or not request.is_pending:
                    continue

                completion = self.check_completion(request, new_query_result)
                if not completion.is_complete:
                    request.attempts += 1
                    request.last_updated = now
                    self._save_request(request)
                    continue

                request.status = COMPLETED
                request.completed_at = now
                request.last_updated = now
                request.completion = completion.to_dict()
                request.completion['completing_query'] = new_query
                self._save_request(request)

                conversation.pending_request_ids = [i for i in conversation.pending_request_ids if i != request_id]
                conversation.last_accessed = now
                self._save_conversation(conversation)
                logger.info(f'Completed pending request {request_id} '
                            f'(ready for downstream: {completion.ready_for_downstream})')
                return request

        return None

    def is_ready_for_downstream(self, combined: Dict[str, List[Dict[str, Any]]]) -> bool:
        return is_ready_for_downstream(combined)

    def cleanup(self, max_age_seconds: Optional[float] = None) -> int:
        """Purge idle conversations and completed requests older than max_age_seconds.

        Conversations that still own pending requests are kept. Pending requests are never purged.

        Args:
            max_age_seconds: Age cutoff (optional, PENDING_MAX_AGE_DAYS from config if None)

        Returns:
            Number of conversations and requests removed
        """
        if max_age_seconds is None:
            max_age_seconds = config.conversation.pending_max_age_days * 24 * 3600
        cutoff = self.clock.now() - max_age_seconds

        with self.conversations.lock, self.requests.lock:
            removed = self.conversations.sweep(
                lambda _key, data: float(data.get('last_accessed', 0)) < cutoff and not data.get('pending_request_ids'))
            removed += self.requests.sweep(
                lambda _key, data: data.get('status') == COMPLETED and float(data.get('completed_at') or 0) < cutoff)

        if removed:
            logger.info(f'Cleanup removed {removed} conversations and completed requests')
        return removed

    # Queries

    def get(self, request_id: str) -> Optional[PendingRequest]:
        data = self.requests.get(request_id)
        return PendingRequest.from_dict(data) if data is not None else None

    def list_requests(self,
                      status: Optional[str] = PENDING,
                      project_name: Optional[str] = None,
                      user_id: Optional[str] = None,
                      sort_by: str = 'created_at',
                      descending: bool = True) -> List[PendingRequest]:
        """List requests, filtered and sorted.

        Args:
            status: Keep only this status (None for all)
            project_name: Case-insensitive substring of the inferred project name
            user_id: Keep only requests from this user's conversations
            sort_by: Timestamp field to sort on
            descending: Newest first when True

        Returns:
            Matching PendingRequests
        """
        requests = [PendingRequest.from_dict(data) for data in self.requests.values()]

        if status:
            requests = [r for r in requests if r.status == status]

        if project_name:
            needle = project_name.lower()
            requests = [r for r in requests if needle in (r.project_context.get('project_name') or '').lower()]

        if user_id:
            owned = {key for key, data in self.conversations.items() if data.get('user_id') == user_id}
            requests = [r for r in requests if r.conversation_id in owned]

        requests.sort(key=lambda r: getattr(r, sort_by, None) or 0, reverse=descending)
        return requests

    def pending_for_project(self, project_name: str) -> List[PendingRequest]:
        return self.list_requests(status=PENDING, project_name=project_name)

    def summary(self) -> Dict[str, Any]:
        requests = [PendingRequest.from_dict(data) for data in self.requests.values()]
        pending = [r for r in requests if r.is_pending]
        now = self.clock.now()

        by_project: Dict[str, List[str]] = {}
        by_age: Dict[str, List[str]] = {'recent': [], 'today': [], 'week': [], 'old': []}
        for request in pending:
            project = request.project_context.get('project_name') or 'Unknown Project'
            by_project.setdefault(project, []).append(request.id)

            age = now - request.created_at
            bucket = next((name for name, limit in AGE_BUCKETS if age < limit), 'old')
            by_age[bucket].append(request.id)

        oldest = min(pending, key=lambda r: r.created_at) if pending else None
        return {
            'total': len(requests),
            'pending': len(pending),
            'completed': sum(1 for r in requests if r.status == COMPLETED),
            'by_project': by_project,
            'by_age': by_age,
            'oldest_pending': {'id': oldest.id, 'created_at': to_iso(oldest.created_at),
                               'original_query': oldest.original_query} if oldest else None,
        }
