"""
Assembly orchestrator: runs one query through parsing, pending-request tracking and smart routing,
then assembles contextual intelligence and the final response for the session.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional

from ..models.assembly import AssemblyResult, ContextualIntelligence
from ..models.conversation import ConversationContext, PendingRequest
from ..models.core import ENTITY_CATEGORIES, QueryResult, ResolutionContext, entity_label, node_id
from ..models.routing import RoutingResult
from ..utils.config import AppConfig, config
from ..utils.logging_config import get_logger
from ..utils.project_system_client import ProjectSystemClient
from ..utils.stores import get_entity_store, get_store
from ..utils.timestamp_utils import Clock
from .conversation_store import ConversationStateStore
from .entity_extraction import BedrockEntityExtractor
from .graph_builder import RelationshipGraphBuilder
from .hash_sync import HashStatusSync
from .pending_requests import PendingRequestManager
from .query_parser import QueryParser
from .query_processor import QueryProcessor
from .reference_resolver import ReferenceResolver
from .smart_router import SmartRouter

logger = get_logger(__name__)

LOCATION_DISCREPANCY_CONFIDENCE = 0.6
PERSON_AT_LOCATION_CONFIDENCE = 0.7
PROJECT_AT_LOCATION_CONFIDENCE = 0.8
CONFIDENT_ITEM = 0.7


class ContextAssemblyError(Exception):
    """Custom exception for context assembly errors."""
    pass


class RelationshipInferenceStrategy:
    """Heuristic relation between two context entities, keyed by their types."""

    RULES = {
        ('person', 'project'): ('works_on', 0.7),
        ('person', 'location'): ('located_at', 0.6),
        ('project', 'location'): ('located_at', 0.8),
        ('amount', 'item'): ('costs', 0.9),
    }

    def infer(self, first: Dict[str, Any], second: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rule = self.RULES.get((first.get('type'), second.get('type')))
        if rule is None:
            # Rules are directional; try the pair the other way round
            rule = self.RULES.get((second.get('type'), first.get('type')))
            if rule is None:
                return None
            first, second = second, first

        relation, confidence = rule
        return {'source': first['key'], 'target': second['key'], 'type': relation, 'confidence': confidence,
                'context': 'inferred'}


def _amount_value(entity: Dict[str, Any]) -> float:
    try:
        return float(entity.get('value') or 0)
    except (TypeError, ValueError):
        return 0.0


def _of_type(entities: List[Dict[str, Any]], entity_type: str) -> List[Dict[str, Any]]:
    return [e for e in entities if e.get('type') == entity_type]


class ContextAssemblyEngine:
    """Per-query orchestration over a session's conversation context."""

    def __init__(self,
                 processor: Optional[QueryProcessor] = None,
                 conversation_store: Optional[ConversationStateStore] = None,
                 pending_requests: Optional[PendingRequestManager] = None,
                 router: Optional[SmartRouter] = None,
                 clock: Optional[Clock] = None,
                 app_config: Optional[AppConfig] = None,
                 inference: Optional[RelationshipInferenceStrategy] = None):
        """
        Components left as None are built from the application config.

        Args:
            processor: Parse, resolve and intent-handling pipeline
            conversation_store: Session context store
            pending_requests: Pending request manager
            router: Smart source router
            clock: Time source shared by every component built here
            app_config: Application config (optional, global config if None)
            inference: Relation inference strategy between context entities
        """
        self.config = app_config if app_config is not None else config
        self.clock = clock if clock is not None else Clock()
        self.inference = inference if inference is not None else RelationshipInferenceStrategy()

        storage = self.config.storage
        graph_builder = None
        if processor is None or router is None:
            graph_builder = RelationshipGraphBuilder(get_entity_store(storage, self.config.graph.domain),
                                                     clock=self.clock,
                                                     cache_ttl_seconds=self.config.graph.cache_ttl_seconds)

        if processor is None:
            parser = QueryParser(BedrockEntityExtractor(), domain=self.config.graph.domain, clock=self.clock)
            processor = QueryProcessor(parser, ReferenceResolver(graph_builder, domain=self.config.graph.domain))
        if conversation_store is None:
            conversation_store = ConversationStateStore(get_store(storage, 'sessions'),
                                                        clock=self.clock,
                                                        conversation_config=self.config.conversation)
        if pending_requests is None:
            pending_requests = PendingRequestManager(get_store(storage, 'conversations'),
                                                     get_store(storage, 'pending-requests'),
                                                     clock=self.clock)
        if router is None:
            client = ProjectSystemClient(self.config.project_system) if self.config.project_system.enabled else None
            hash_sync = HashStatusSync(client, get_store(storage, 'hash-cache'), clock=self.clock) if client else None
            router = SmartRouter(graph_builder,
                                 get_store(storage, 'query-cache'),
                                 client=client,
                                 hash_sync=hash_sync,
                                 clock=self.clock,
                                 router_config=self.config.router,
                                 domain=self.config.graph.domain)

        self.processor = processor
        self.conversation_store = conversation_store
        self.pending_requests = pending_requests
        self.router = router

        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='router')
        self._session_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        logger.info('Initialized ContextAssemblyEngine')

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._session_locks.setdefault(session_id, threading.Lock())

    def process_query(self,
                      query: str,
                      user_id: str,
                      session_id: Optional[str] = None,
                      current_location: Optional[str] = None,
                      current_project: Optional[str] = None) -> AssemblyResult:
        """Answer one query within a session.

        Args:
            query: Free-text query
            user_id: Owning user
            session_id: Session identifier (optional, '<user_id>-default' if None)
            current_location: Where the user is now; sticks to the session once given
            current_project: Project the user is working on; sticks to the session once given

        Returns:
            AssemblyResult

        Raises:
            ValueError: If query or user_id is empty
            ContextAssemblyError: If any step fails unexpectedly
        """
        if not query or not query.strip():
            raise ValueError('query is required')
        if not user_id:
            raise ValueError('user_id is required')
        session_id = session_id or f'{user_id}-default'

        with self._session_lock(session_id):
            try:
                return self._process(query.strip(), user_id, session_id, current_location, current_project)
            except Exception as e:
                logger.error(f'Context assembly failed for session {session_id}: {e}')
                raise ContextAssemblyError(f'Context assembly failed: {e}')

    def _process(self, query: str, user_id: str, session_id: str,
                 current_location: Optional[str], current_project: Optional[str]) -> AssemblyResult:
        context = self.conversation_store.get_or_create(session_id, user_id)
        if current_location:
            context.current_location = current_location
        if current_project:
            context.current_project = current_project

        resolution_context = ResolutionContext(user_id=user_id,
                                               current_location=context.current_location,
                                               current_project=context.current_project,
                                               domain=self.config.graph.domain)
        query_result = self.processor.process(query, resolution_context)

        conversation = self.pending_requests.get_conversation(user_id, session_id)
        completed = self.pending_requests.on_new_query(conversation.id, query, query_result)
        created = None
        if query_result.missing_info is not None and completed is None:
            created = self.pending_requests.create(conversation.id, query_result, query_result.missing_info)
        context.pending_request_ids = self.pending_requests.get_conversation(user_id, session_id).pending_request_ids

        routing = self.route(query)
        intelligence = self.assemble_intelligence(query_result, context, routing)
        response = self.generate_response(query_result, intelligence, completed=completed, created=created)

        self.conversation_store.update(context, query_result)
        logger.info(f'Assembled {intelligence.intelligence_level} intelligence for session {session_id} '
                    f'({intelligence.confidence:.2f})')
        return AssemblyResult(session_id=session_id,
                              user_id=user_id,
                              query=query,
                              query_result=query_result,
                              routing=routing,
                              intelligence=intelligence,
                              response=response,
                              pending_request=created,
                              completed_request=completed,
                              metadata={
                                  'complexity': query_result.metadata.get('complexity'),
                                  'routing_timed_out': bool(routing.metadata.get('routing_timed_out')),
                                  'external_unavailable': bool(routing.metadata.get('external_unavailable')),
                              })

    def route(self, query: str) -> RoutingResult:
        """Run the smart router under the configured timeout.

        Returns:
            RoutingResult; an empty local-only result flagged routing_timed_out when the router overruns
        """
        if self.router is None:
            return RoutingResult.empty(query, local_only=True)

        timeout = self.config.router.routing_timeout_seconds
        future = self._executor.submit(self.router.route, query)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning(f'Routing exceeded {timeout}s, continuing without it')
            return RoutingResult.empty(query, routing_timed_out=True, local_only=True)

    # Intelligence assembly

    def query_entities(self, query_result: QueryResult) -> Dict[str, Dict[str, Any]]:
        entities = {}
        for category, entity_list in query_result.entities.items():
            entity_type = ENTITY_CATEGORIES.get(category, category.rstrip('s'))
            for entity in entity_list:
                label = entity_label(entity)
                if not label:
                    continue
                key = node_id(entity_type, label)
                entities[key] = dict(entity, key=key, name=label, type=entity_type, source='query')
        return entities

    def combine_entities(self, query_entities: Dict[str, Dict[str, Any]],
                         context_entities: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """Session entities overlaid with this query's entities; the query wins on conflicts."""
        combined = {key: dict(entity, key=key, source='context') for key, entity in context_entities.items()}
        for key, entity in query_entities.items():
            existing = combined.get(key)
            if existing is None:
                combined[key] = entity
                continue
            merged = dict(existing)
            merged.update(entity)
            merged['confidence'] = max(existing.get('confidence') or 0, entity.get('confidence') or 0)
            merged['sources'] = [existing['source'], entity['source']]
            combined[key] = merged
        return combined

    def build_relationship_network(self, entities: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        nodes = [{'id': e['key'], 'name': e.get('name'), 'type': e.get('type'), 'confidence': e.get('confidence')}
                 for e in entities]
        edges = []
        for i, first in enumerate(entities):
            for second in entities[i + 1:]:
                edge = self.inference.infer(first, second)
                if edge is not None:
                    edges.append(edge)
        return {'nodes': nodes, 'edges': edges}

    def assemble_intelligence(self, query_result: QueryResult, context: ConversationContext,
                              routing: Optional[RoutingResult] = None) -> ContextualIntelligence:
        """Cross-reference the query with the session and the routing result.

        Args:
            query_result: Processed query
            context: Session context (before this query is folded in)
            routing: Smart routing result (optional)

        Returns:
            ContextualIntelligence with level and confidence set
        """
        intelligence = ContextualIntelligence()
        combined = self.combine_entities(self.query_entities(query_result), context.entities)
        intelligence.context_entities = list(combined.values())

        if len(intelligence.context_entities) > 1:
            intelligence.relationship_network = self.build_relationship_network(intelligence.context_entities)

        intelligence.spatial_context = self.assemble_spatial_context(intelligence.context_entities, context)
        intelligence.temporal_context = self.assemble_temporal_context(query_result, context, routing)
        intelligence.financial_context = self.assemble_financial_context(intelligence.context_entities)
        intelligence.project_context = self.assemble_project_context(intelligence.context_entities, context, routing)
        intelligence.insights = self.generate_insights(intelligence)
        intelligence.intelligence_level = self.determine_intelligence_level(intelligence)
        intelligence.confidence = self.intelligence_confidence(intelligence)
        return intelligence

    def assemble_spatial_context(self, entities: List[Dict[str, Any]], context: ConversationContext) -> Dict[str, Any]:
        locations = _of_type(entities, 'location')
        people = _of_type(entities, 'person')
        projects = _of_type(entities, 'project')

        relationships = []
        for location in locations:
            for person in people:
                relationships.append({'type': 'person_at_location', 'person': person['name'],
                                      'location': location['name'], 'confidence': PERSON_AT_LOCATION_CONFIDENCE})
            for project in projects:
                relationships.append({'type': 'project_at_location', 'project': project['name'],
                                      'location': location['name'], 'confidence': PROJECT_AT_LOCATION_CONFIDENCE})

        inferences = []
        if context.current_location and locations:
            mentioned = locations[0]['name']
            if mentioned.lower() != context.current_location.lower():
                inferences.append({
                    'type': 'location_discrepancy',
                    'description': f'User mentioned {mentioned} but current location is {context.current_location}',
                    'confidence': LOCATION_DISCREPANCY_CONFIDENCE,
                })

        return {
            'current_location': context.current_location,
            'mentioned_locations': [location['name'] for location in locations],
            'location_based_relationships': relationships,
            'spatial_inferences': inferences,
        }

    def assemble_temporal_context(self, query_result: QueryResult, context: ConversationContext,
                                  routing: Optional[RoutingResult] = None) -> Dict[str, Any]:
        timeline = []
        if routing is not None:
            timeline = [{'project': c.get('project'), 'timeline': c.get('timeline')}
                        for c in routing.connections.temporal_connections]
        return {
            'query_timestamp': query_result.metadata.get('timestamp'),
            'session_duration_seconds': self.clock.now() - context.start_time,
            'mentioned_dates': list(query_result.entities.get('dates', [])),
            'timeline': timeline,
        }

    def assemble_financial_context(self, entities: List[Dict[str, Any]]) -> Dict[str, Any]:
        amounts = _of_type(entities, 'amount')
        items = _of_type(entities, 'item')
        item = next((i['name'] for i in items if (i.get('confidence') or 0) > CONFIDENT_ITEM), 'unspecified')
        return {
            'transactions': [{'amount': _amount_value(a), 'currency': a.get('currency') or 'USD', 'item': item,
                              'confidence': a.get('confidence')} for a in amounts],
            'total_value': sum(_amount_value(a) for a in amounts),
        }

    def assemble_project_context(self, entities: List[Dict[str, Any]], context: ConversationContext,
                                 routing: Optional[RoutingResult] = None) -> Dict[str, Any]:
        external = []
        if routing is not None:
            external = [p.get('name') for p in routing.external.projects if p.get('name')]
        return {
            'current_project': context.current_project,
            'mentioned_projects': [p['name'] for p in _of_type(entities, 'project')],
            'external_projects': external,
            'active_tasks': _of_type(entities, 'task'),
        }

    def generate_insights(self, intelligence: ContextualIntelligence) -> List[Dict[str, Any]]:
        insights = []
        current_location = intelligence.spatial_context.get('current_location')
        projects = intelligence.project_context.get('mentioned_projects') or []
        if current_location and projects:
            insights.append({'type': 'spatial',
                             'description': f'User is at {current_location} discussing {projects[0]}',
                             'confidence': 0.8})

        total = intelligence.financial_context.get('total_value') or 0
        if total > 0:
            insights.append({'type': 'financial',
                             'description': f'Financial transaction of ${total:g} identified',
                             'confidence': 0.9})

        if intelligence.edges:
            insights.append({'type': 'relational',
                             'description': f'{len(intelligence.edges)} relationships identified between entities',
                             'confidence': 0.7})
        return insights

    def determine_intelligence_level(self, intelligence: ContextualIntelligence) -> str:
        score = 0
        if intelligence.context_entities:
            score += 1
        if intelligence.edges:
            score += 2
        if intelligence.spatial_context.get('current_location'):
            score += 1
        if (intelligence.financial_context.get('total_value') or 0) > 0:
            score += 1
        if intelligence.project_context.get('current_project'):
            score += 1
        if len(intelligence.insights) > 2:
            score += 1

        if score >= 6:
            return 'advanced'
        if score >= 4:
            return 'contextual'
        if score >= 2:
            return 'relational'
        return 'basic'

    def intelligence_confidence(self, intelligence: ContextualIntelligence) -> float:
        """Mean of entity and insight confidences, 0.5 when there are none."""
        values = [e['confidence'] for e in intelligence.context_entities if e.get('confidence')]
        values.extend(insight['confidence'] for insight in intelligence.insights)
        return sum(values) / len(values) if values else 0.5

    def generate_response(self, query_result: QueryResult, intelligence: ContextualIntelligence,
                          completed: Optional[PendingRequest] = None,
                          created: Optional[PendingRequest] = None) -> Dict[str, Any]:
        primary = query_result.response or 'I processed your request.'
        if completed is not None:
            primary = f'Completed your earlier request "{completed.original_query}". {primary}'

        recommendations = []
        current_location = intelligence.spatial_context.get('current_location')
        projects = intelligence.project_context.get('mentioned_projects') or []
        if current_location and projects:
            recommendations.append(f"Since you're at {current_location}, I can help track location-specific "
                                   f'activities for {projects[0]}.')
        total = intelligence.financial_context.get('total_value') or 0
        if total > 0:
            recommendations.append(f'I can help track this ${total:g} expense in your project budget.')

        return {
            'primary_response': primary,
            'contextual_insights': [insight['description'] for insight in intelligence.insights],
            'recommendations': recommendations,
            'confidence': intelligence.confidence,
            'intelligence_level': intelligence.intelligence_level,
            'pending_request_id': created.id if created is not None else None,
            'completed_request_id': completed.id if completed is not None else None,
        }

    # Session management

    def session_stats(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.conversation_store.session_stats(session_id)

    def cleanup_expired_sessions(self) -> int:
        removed = self.conversation_store.cleanup_expired()
        live = set(self.conversation_store.store.keys())
        with self._locks_guard:
            idle = [s for s, lock in self._session_locks.items() if s not in live and not lock.locked()]
            for session_id in idle:
                del self._session_locks[session_id]
        return removed

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
