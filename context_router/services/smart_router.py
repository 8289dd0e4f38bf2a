"""
Smart Source Router: decides per query what the local graph can answer and what must come from
the external project system.

Five stages run in order and are merged into one RoutingResult:

1. Local-knowledge check against the relationship graph
2. External discovery of projects the query mentions
3. Progressive drill-down, one level of detail per discovered item
4. Connection synthesis between local entities and external detail
5. Learning: confident results are cached and new connections written back as entity records
"""

import re
import time
import uuid
from typing import Any, Dict, List, Optional

from ..models.core import EntityRecord, GraphNode, node_id
from ..models.routing import Connections, DrillDown, ExternalDiscovery, LocalKnowledge, RoutingResult
from ..utils.config import RouterConfig, config
from ..utils.logging_config import get_logger
from ..utils.project_system_client import ProjectSystemClient, ProjectSystemError
from ..utils.stores import KeyValueStore
from ..utils.timestamp_utils import Clock, to_iso
from .graph_builder import RelationshipGraphBuilder
from .hash_sync import HashStatusSync
from .matching import MATCH_EXACT, MATCH_FIRST_TOKEN, NameMatcher, TokenOverlapSimilarity, tokenize

logger = get_logger(__name__)

PERSON_PATTERN = re.compile(r"\b[A-Z][a-z]+(?:['’]s)?\b")
AMOUNT_PATTERN = re.compile(r'\$\d+(?:\.\d{2})?')
POSSESSIVE_PHRASE = re.compile(r"\b([A-Z][a-z]+)['’]s\s+(\w+)")
MATERIAL_KEYWORDS = ['screws', 'lumber', 'nails', 'paint', 'deck', 'door', 'window']
PROJECT_KEYWORDS = ['deck', 'kitchen', 'bathroom', 'project', 'house', 'office']
EXCLUDED_NAMES = {'The', 'And', 'But', 'For'}
COMMON_FIRST_NAMES = ['john', 'richard', 'mike', 'dave', 'bob', 'tom', 'jim', 'bill', 'steve', 'paul']
SEARCH_STOPWORDS = {'where', 'what', 'who', 'when', 'why', 'how', 'did', 'do', 'the', 'a', 'in', 'on', 'for', 'at', 'i'}
DETAIL_FIELDS = ('timeline', 'location', 'address', 'materials', 'status', 'costs', 'tasks', 'projectType')

STAGE_CONFIDENCE = {'local': 0.9, 'external': 0.9, 'drill_down': 0.8, 'connections': 0.75}
EMPTY_LOCAL_CONFIDENCE = 0.1
LEARNED_RELATION_CONFIDENCE = 0.95


def normalize_query(query: str) -> str:
    return ' '.join(query.lower().split())


def _node_dict(node: GraphNode) -> Dict[str, Any]:
    return {'id': node.id, 'name': node.name, 'type': node.type, 'confidence': node.confidence}


def _is_useful(payload: Any) -> bool:
    if isinstance(payload, dict):
        return any(payload.get(key) for key in DETAIL_FIELDS) or bool(payload.get('content'))
    return bool(payload)


class ConnectionStrategy:
    """Pairwise connection rules between local entities, projects and drill detail."""

    def entity_project(self, entity: Dict[str, Any], project: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        entity_tokens = set(tokenize(entity.get('name', '')))
        if not entity_tokens:
            return None

        client_name = project.get('clientName') or ''
        if entity_tokens & set(tokenize(client_name)):
            connection = 'client_of'
        elif entity_tokens & set(tokenize(project.get('name') or '')):
            connection = 'named_in'
        else:
            return None

        return {
            'type': f"{entity.get('type', 'entity')}_project",
            'entity': entity.get('name'),
            'entity_type': entity.get('type'),
            'project': project.get('name') or project.get('id'),
            'project_id': project.get('id'),
            'client_name': client_name or None,
            'connection': connection,
            'confidence': 0.9
        }

    def temporal(self, drill: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        timeline = (drill.get('details') or {}).get('timeline')
        if not timeline:
            return None
        return {'type': 'temporal', 'timeline': timeline, 'project': drill.get('project', {}).get('name'), 'confidence': 0.8}

    def spatial(self, drill: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        details = drill.get('details') or {}
        location = details.get('location') or details.get('address')
        if not location:
            return None
        return {'type': 'spatial', 'location': location, 'project': drill.get('project', {}).get('name'), 'confidence': 0.85}


class SmartRouter:
    """Five-stage local vs. external routing for a single query."""

    def __init__(self,
                 graph_builder: RelationshipGraphBuilder,
                 query_cache: KeyValueStore,
                 client: Optional[ProjectSystemClient] = None,
                 hash_sync: Optional[HashStatusSync] = None,
                 clock: Optional[Clock] = None,
                 router_config: Optional[RouterConfig] = None,
                 domain: Optional[str] = None,
                 similarity: Optional[TokenOverlapSimilarity] = None,
                 connections: Optional[ConnectionStrategy] = None,
                 matcher: Optional[NameMatcher] = None):
        """
        Args:
            graph_builder: Relationship graph builder over the local entity store
            query_cache: Store for confident routing results, keyed by normalized query
            client: External project system client (optional, local-only mode if None)
            hash_sync: Hash-status cache over the same client (optional)
            clock: Time source (optional, wall clock if None)
            router_config: Thresholds and TTLs (optional, from config if None)
            domain: Knowledge domain (optional, from config if None)
            similarity: Mention-to-project similarity strategy
            connections: Connection synthesis strategy
            matcher: Local name matching strategy
        """
        self.graph_builder = graph_builder
        self.query_cache = query_cache
        self.client = client
        self.hash_sync = hash_sync
        self.clock = clock if clock is not None else Clock()
        self.config = router_config if router_config is not None else config.router
        self.domain = domain or config.graph.domain
        self.similarity = similarity if similarity is not None else TokenOverlapSimilarity()
        self.connections = connections if connections is not None else ConnectionStrategy()
        self.matcher = matcher if matcher is not None else NameMatcher()

    @property
    def local_only(self) -> bool:
        return self.client is None

    def route(self, query: str) -> RoutingResult:
        """Run all five stages for a query.

        Args:
            query: Free-text query

        Returns:
            RoutingResult; a cached result is returned when the same query was answered
            confidently within the query cache TTL
        """
        cached = self._cached_result(query)
        if cached is not None:
            return cached

        started = time.monotonic()
        result = RoutingResult(query=query, metadata={'local_only': self.local_only})

        result.local = self.check_local_knowledge(query)
        if not self.local_only:
            try:
                result.external = self.discover_external(query, result.local)
                result.drill_down = self.drill_down(query, result.local, result.external)
            except ProjectSystemError as e:
                logger.warning(f'External system unavailable, continuing with local knowledge only: {e}')
                result.metadata['external_unavailable'] = True
                result.external = ExternalDiscovery()
                result.drill_down = self.drill_down(query, result.local, result.external, local_only=True)
        else:
            result.drill_down = self.drill_down(query, result.local, result.external, local_only=True)

        result.connections = self.synthesize_connections(result.local, result.external, result.drill_down)
        result.overall_confidence = self.overall_confidence(result)
        result.metadata['processing_time_ms'] = int((time.monotonic() - started) * 1000)

        self.learn(query, result)
        logger.info(f'Routed query with confidence {result.overall_confidence:.2f} '
                    f'({len(result.local.entities)} local, {len(result.external.projects)} external)')
        return result

    def _cached_result(self, query: str) -> Optional[RoutingResult]:
        entry = self.query_cache.get(normalize_query(query))
        if entry is None:
            return None
        if self.clock.now() - entry.get('cached_at', 0) >= self.config.query_cache_ttl_seconds:
            self.query_cache.delete(normalize_query(query))
            return None

        try:
            result = RoutingResult.from_dict(entry['result'])
        except (KeyError, TypeError) as e:
            logger.warning(f'Discarding unreadable query cache entry: {e}')
            self.query_cache.delete(normalize_query(query))
            return None
        result.from_cache = True
        logger.debug(f'Query cache hit for "{normalize_query(query)}"')
        return result

    def extract_query_entities(self, query: str) -> List[Dict[str, Any]]:
        """Cheap regex extraction: capitalized names, dollar amounts and material keywords."""
        entities = []
        seen = set()
        for match in PERSON_PATTERN.findall(query):
            name = re.sub(r"['’]s$", '', match)
            if name in EXCLUDED_NAMES or ('person', name) in seen:
                continue
            seen.add(('person', name))
            entities.append({'name': name, 'type': 'person', 'confidence': 0.7})
        for match in AMOUNT_PATTERN.findall(query):
            entities.append({'name': match, 'type': 'amount', 'confidence': 0.9})
        lowered = query.lower()
        for keyword in MATERIAL_KEYWORDS:
            if keyword in lowered:
                entities.append({'name': keyword, 'type': 'material', 'confidence': 0.8})
        return entities

    def check_local_knowledge(self, query: str) -> LocalKnowledge:
        """Stage 1: look each cheaply extracted mention up in the local graph."""
        knowledge = LocalKnowledge()
        graph = self.graph_builder.get_graph(self.domain)
        seen = set()

        for mention in self.extract_query_entities(query):
            matches = [node for node, kind in self.graph_builder.find_nodes_by_name(self.domain, mention['name'], self.matcher)
                       if kind in (MATCH_EXACT, MATCH_FIRST_TOKEN)]
            if not matches:
                knowledge.knowledge_gaps.append({'type': mention['type'], 'name': mention['name'],
                                                 'description': f"No local knowledge of {mention['name']}"})
                continue

            for node in matches:
                if node.id in seen:
                    continue
                seen.add(node.id)
                knowledge.entities.append(_node_dict(node))
                for related in graph.neighbors(node.id):
                    target = related['entity']
                    knowledge.relationships.append({'source': node.name, 'type': related['relationship'],
                                                    'target': target.name, 'target_type': target.type,
                                                    'confidence': related['confidence']})
                    if target.id not in seen:
                        seen.add(target.id)
                        knowledge.entities.append(_node_dict(target))

        knowledge.confidence = STAGE_CONFIDENCE['local'] if knowledge.entities else EMPTY_LOCAL_CONFIDENCE
        logger.debug(f'Local check: {len(knowledge.entities)} entities, {len(knowledge.relationships)} relationships, '
                     f'{len(knowledge.knowledge_gaps)} gaps')
        return knowledge

    def extract_mentions(self, query: str) -> List[str]:
        """Candidate project and person mentions, in discovery order."""
        mentions = [match.group(0) for match in POSSESSIVE_PHRASE.finditer(query)]
        lowered = query.lower()
        mentions.extend(keyword for keyword in PROJECT_KEYWORDS if keyword in lowered)

        for name in re.findall(r'\b[A-Z][a-z]+\b', query):
            if len(name) > 2 and name not in EXCLUDED_NAMES and name not in mentions:
                mentions.append(name)
        for word in lowered.split():
            word = re.sub(r"['’]s$", '', re.sub(r'[^\w\'’]', '', word))
            if word in COMMON_FIRST_NAMES and word.capitalize() not in mentions:
                mentions.append(word.capitalize())
        return mentions

    def list_projects(self) -> List[Dict[str, Any]]:
        """External projects, through the hash-sync cache when available."""
        if self.hash_sync is not None:
            self.hash_sync.sync()
            projects = self.hash_sync.cached_projects()
            if projects:
                return projects
        return self.client.list_projects()

    def match_projects(self, mentions: List[str], projects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Score mentions against project and client names, keeping the best score per project."""
        best: Dict[str, Dict[str, Any]] = {}
        for project in projects:
            key = str(project.get('id') or project.get('name'))
            for mention in mentions:
                score = max(self.similarity.score(mention, project.get('name') or ''),
                            self.similarity.score(mention, project.get('clientName') or ''))
                if score < self.config.similarity_threshold:
                    continue
                if key not in best or score > best[key]['match_confidence']:
                    best[key] = dict(project, match_confidence=score, matched_mention=mention, matched_by='mention_match')
        return sorted(best.values(), key=lambda p: p['match_confidence'], reverse=True)

    def extract_search_term(self, query: str) -> str:
        cleaned = re.sub(r"[.,/#!$%^&*;:{}=\-_`~()?]", '', query.lower())
        return ' '.join(t for t in cleaned.split() if t not in SEARCH_STOPWORDS and len(t) > 2)

    def discover_external(self, query: str, local: LocalKnowledge) -> ExternalDiscovery:
        """Stage 2: match query mentions against external projects, falling back to content search.

        Raises:
            ProjectSystemError: If the external system cannot be reached
        """
        discovery = ExternalDiscovery()
        mentions = self.extract_mentions(query)
        if mentions:
            discovery.projects = self.match_projects(mentions, self.list_projects())
            if discovery.projects:
                discovery.method = 'mention_match'

        if not discovery.projects and local.knowledge_gaps:
            term = self.extract_search_term(query)
            if term:
                found = self.client.search_projects(term)
                discovery.projects = [dict(p, match_confidence=self.config.similarity_threshold, matched_by='content_search')
                                      for p in found]
                if discovery.projects:
                    discovery.method = 'content_search'

        discovery.confidence = STAGE_CONFIDENCE['external'] if discovery.projects else 0.0
        logger.debug(f'External discovery: {len(discovery.projects)} projects via {discovery.method}')
        return discovery

    def _project_detail(self, project_id: str) -> Dict[str, Any]:
        if self.hash_sync is not None:
            return self.hash_sync.get_project(project_id)
        return self.client.get_project(project_id)

    def drill_down(self, query: str, local: LocalKnowledge, external: ExternalDiscovery,
                   local_only: bool = False) -> DrillDown:
        """Stage 3: fetch exactly one further level of detail per item.

        Projects escalate from their listing to structured detail and only then to granular
        content. Without external matches, local entities drill into their graph relations.

        Raises:
            ProjectSystemError: If the external system cannot be reached
        """
        drill = DrillDown()
        lowered = query.lower()

        if not local_only:
            for project in external.projects:
                project_id = project.get('id')
                if not project_id:
                    logger.warning('Skipping discovered project without an id')
                    continue

                level, details = 'detail', self._project_detail(str(project_id))
                drill.fetches += 1
                if not _is_useful(details):
                    level, details = 'content', self.client.get_resource(f'data/{project_id}/content')
                    drill.fetches += 1

                details = details if isinstance(details, dict) else {'content': details}
                relevant = [str(v).lower() for v in (details.get('name'), details.get('projectType')) if v]
                relevant.extend(str(m).lower() for m in details.get('materials') or [])
                drill.results.append({
                    'type': 'project_drill',
                    'project': {'id': project_id, 'name': project.get('name'), 'clientName': project.get('clientName')},
                    'details': details,
                    'level': level,
                    'relevant_to_query': any(field in lowered for field in relevant),
                    'confidence': 0.85
                })

        if not drill.results:
            graph = self.graph_builder.get_graph(self.domain)
            for entity in local.entities:
                related = graph.neighbors(entity['id'])
                if not related:
                    continue
                drill.results.append({
                    'type': 'entity_drill',
                    'entity': entity,
                    'relationships': [{'type': r['relationship'], 'target': r['entity'].name,
                                       'target_type': r['entity'].type, 'confidence': r['confidence']} for r in related],
                    'level': 'relations',
                    'confidence': 0.75
                })

        drill.confidence = STAGE_CONFIDENCE['drill_down'] if drill.results else 0.0
        return drill

    def synthesize_connections(self, local: LocalKnowledge, external: ExternalDiscovery, drill: DrillDown) -> Connections:
        """Stage 4: connect local entities to projects and read timeline and location off drill detail."""
        connections = Connections()
        for entity in local.entities:
            for project in external.projects:
                connection = self.connections.entity_project(entity, project)
                if connection is not None:
                    connections.entity_connections.append(connection)

        for result in drill.results:
            if result['type'] != 'project_drill':
                continue
            temporal = self.connections.temporal(result)
            if temporal is not None:
                connections.temporal_connections.append(temporal)
            spatial = self.connections.spatial(result)
            if spatial is not None:
                connections.spatial_connections.append(spatial)

        connections.confidence = STAGE_CONFIDENCE['connections'] if connections.contributes else 0.0
        return connections

    def overall_confidence(self, result: RoutingResult) -> float:
        """Mean of contributing stage confidences plus 0.1 per additional contributing stage, capped at 1."""
        stages = [result.local, result.external, result.drill_down, result.connections]
        contributing = [stage.confidence for stage in stages if stage.contributes and stage.confidence > 0]
        if not contributing:
            return 0.0
        mean = sum(contributing) / len(contributing)
        return min(mean + 0.1 * (len(contributing) - 1), 1.0)

    def learn(self, query: str, result: RoutingResult) -> None:
        """Stage 5: cache confident results and write newly discovered connections back locally."""
        if result.overall_confidence <= self.config.learning_threshold:
            return

        record = self.learned_record(result)
        if record is not None and self.graph_builder.append_record(record):
            logger.info(f'Learned {len(record.relationships)} relationships from query')
        result.learned = True
        self.query_cache.set(normalize_query(query), {'result': result.to_dict(), 'cached_at': self.clock.now(),
                                                      'confidence': result.overall_confidence})

    def learned_record(self, result: RoutingResult) -> Optional[EntityRecord]:
        """Entity record holding owner and location relations not yet in the graph, or None."""
        graph = self.graph_builder.get_graph(self.domain)
        existing = {(e.source, e.type, e.target) for e in graph.edges}
        locations = {c['project']: c['location'] for c in result.connections.spatial_connections if c.get('project')}

        people, projects, places, relationships = {}, {}, {}, []
        for connection in result.connections.entity_connections:
            if connection.get('entity_type') != 'person':
                continue
            if connection['connection'] == 'client_of' and connection.get('client_name'):
                person = connection['client_name']
            else:
                person = connection['entity']
            project = connection['project']
            candidates = [('person', person, 'owns', 'project', project)]
            location = locations.get(project)
            if isinstance(location, str) and location:
                candidates.append(('project', project, 'located_at', 'location', location))

            for source_type, source, relation, target_type, target in candidates:
                key = (node_id(source_type, source), relation, node_id(target_type, target))
                if key in existing:
                    continue
                existing.add(key)
                relationships.append({'source': source, 'source_type': source_type, 'target': target,
                                      'target_type': target_type, 'type': relation,
                                      'confidence': LEARNED_RELATION_CONFIDENCE})
                people[person.lower()] = {'name': person, 'confidence': LEARNED_RELATION_CONFIDENCE}
                projects[project.lower()] = {'name': project, 'id': connection.get('project_id'),
                                             'confidence': LEARNED_RELATION_CONFIDENCE}
                if relation == 'located_at':
                    places[target.lower()] = {'name': target, 'confidence': LEARNED_RELATION_CONFIDENCE}

        if not relationships:
            return None
        return EntityRecord(id=f'learned-{uuid.uuid4().hex[:12]}',
                            conversation_id='router-learning',
                            domain=self.domain,
                            timestamp=to_iso(self.clock.now()),
                            entities={'people': list(people.values()), 'projects': list(projects.values()),
                                      'locations': list(places.values())},
                            relationships=relationships,
                            metadata={'confidence': LEARNED_RELATION_CONFIDENCE, 'source': 'smart_router',
                                      'query': result.query})

    def check_sync_status(self) -> Dict[str, Any]:
        """Whether the external dataset changed since the last sync, without fetching it.

        Raises:
            ProjectSystemError: If no hash-status cache is configured or the system is unreachable
        """
        if self.hash_sync is None:
            raise ProjectSystemError('No external project system configured')
        changes = self.hash_sync.check_sync_status()
        return {'needs_sync': changes['has_changes'], 'changes': changes, 'stats': self.hash_sync.stats()}

    def sync(self) -> Dict[str, Any]:
        """Sync the hash cache and record owner and location relations of every fetched project.

        Raises:
            ProjectSystemError: If no hash-status cache is configured or the system is unreachable
        """
        if self.hash_sync is None:
            raise ProjectSystemError('No external project system configured')
        result = self.hash_sync.sync()

        learned = 0
        for key in result.get('fetched_keys', []):
            if not key.startswith('data/'):
                continue
            project = self.hash_sync.cached(key)
            record = self._project_record(project) if isinstance(project, dict) else None
            if record is not None and self.graph_builder.append_record(record):
                learned += 1
        result['learned_records'] = learned
        return result

    def _project_record(self, project: Dict[str, Any]) -> Optional[EntityRecord]:
        client_name = project.get('clientName')
        if not client_name:
            logger.warning(f'Skipping project {project.get("id")} with no client name')
            return None
        name = project.get('name') or project.get('id')
        location = project.get('location') or project.get('address')

        relationships = [{'source': client_name, 'source_type': 'person', 'target': name, 'target_type': 'project',
                          'type': 'owns', 'confidence': LEARNED_RELATION_CONFIDENCE}]
        entities = {'people': [{'name': client_name}], 'projects': [{'name': name, 'id': project.get('id')}]}
        if isinstance(location, str) and location:
            entities['locations'] = [{'name': location}]
            relationships.append({'source': name, 'source_type': 'project', 'target': location,
                                  'target_type': 'location', 'type': 'located_at',
                                  'confidence': LEARNED_RELATION_CONFIDENCE})

        return EntityRecord(id=f'sync-{uuid.uuid4().hex[:12]}',
                            conversation_id='hash-sync',
                            domain=self.domain,
                            timestamp=to_iso(self.clock.now()),
                            entities=entities,
                            relationships=relationships,
                            metadata={'confidence': LEARNED_RELATION_CONFIDENCE, 'source': 'hash_sync',
                                      'project_id': project.get('id')})
