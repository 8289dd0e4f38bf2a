"""
Reference Resolver: disambiguates possessive, implicit and pronoun references against the relationship graph.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (ContextRequirement, GraphNode, ParsedQuery, Resolution, ResolutionContext, ResolvedContext,
                           category_for)
from ..utils.config import config
from ..utils.logging_config import get_logger
from .graph_builder import RelationshipGraphBuilder
from .matching import MATCH_CONFIDENCE, NameMatcher, is_possessive, strip_possessive

logger = get_logger(__name__)

PRONOUNS = {'he', 'she', 'they', 'it', 'this', 'that', 'here', 'there'}
RELATED_WHITELIST = ['owns', 'manages', 'located_at', 'works_on']
RESOLVABLE_TYPES = {'person', 'project', 'location'}
TIE_BREAK_PENALTY = 0.1
IMPLICIT_CONFIDENCE = 0.9
PRONOUN_CONFIDENCE = 0.3


def _node_summary(node: GraphNode) -> Dict[str, Any]:
    return {'id': node.id, 'name': node.name, 'type': node.type, 'confidence': node.confidence}


class ReferenceResolver:
    """Resolve references in a parsed query to canonical graph entities."""

    def __init__(self, graph_builder: RelationshipGraphBuilder, matcher: Optional[NameMatcher] = None,
                 domain: Optional[str] = None):
        self.graph_builder = graph_builder
        self.matcher = matcher if matcher is not None else NameMatcher()
        self.domain = domain or config.graph.domain

    def resolve(self, requirement: ContextRequirement, context: ResolutionContext) -> Optional[Resolution]:
        """Resolve a single context requirement.

        Args:
            requirement: Reference to resolve
            context: Caller context (current location/project, domain)

        Returns:
            Resolution, or None when the reference cannot be resolved or the reason is unknown
        """
        logger.debug(f'Resolving {requirement.type}: "{requirement.value}" ({requirement.reason})')
        value = requirement.value.strip()

        if requirement.reason == 'possessive_reference':
            return self._resolve_possessive(strip_possessive(value), context)
        elif requirement.reason == 'ambiguous_reference':
            if is_possessive(value):
                return self._resolve_possessive(strip_possessive(value), context)
            if value.lower() in PRONOUNS:
                return Resolution(type=requirement.type,
                                  original_value=value,
                                  resolved_entity=None,
                                  confidence=PRONOUN_CONFIDENCE,
                                  method='pronoun_resolution',
                                  note='Pronoun resolution requires conversation history')
            return None
        elif requirement.reason == 'implicit_reference':
            return self._resolve_implicit(value, context)
        else:
            logger.warning(f'Unknown resolution reason: {requirement.reason}')
            return None

    def _resolve_implicit(self, value: str, context: ResolutionContext) -> Optional[Resolution]:
        if value == 'current_location' and context.current_location:
            name, entity_type, resolved_type = context.current_location, 'location', 'current_location'
        elif value == 'current_project' and context.current_project:
            name, entity_type, resolved_type = context.current_project, 'project', 'active_project'
        else:
            return None

        return Resolution(type=entity_type,
                          original_value=value,
                          resolved_entity={'name': name, 'type': resolved_type, 'confidence': IMPLICIT_CONFIDENCE},
                          confidence=IMPLICIT_CONFIDENCE,
                          method='implicit_context')

    def _resolve_possessive(self, base_name: str, context: ResolutionContext) -> Optional[Resolution]:
        domain = context.domain or self.domain
        matches = [(node, kind)
                   for node, kind in self.graph_builder.find_nodes_by_name(domain, base_name, self.matcher)
                   if node.type in RESOLVABLE_TYPES]
        if not matches:
            logger.debug(f'No entity matches "{base_name}"')
            return None

        node, kind, note = self._pick_match(domain, matches, context)
        confidence = MATCH_CONFIDENCE[kind]
        if note == 'uncorroborated_tie_break':
            confidence -= TIE_BREAK_PENALTY

        related = []
        for neighbor in self.graph_builder.neighbors(domain, node.id, RELATED_WHITELIST):
            related.append({
                'relationship': neighbor['relationship'],
                'entity': _node_summary(neighbor['entity']),
                'confidence': neighbor['confidence']
            })

        resolved = _node_summary(node)
        resolved['confidence'] = confidence
        return Resolution(type=node.type,
                          original_value=f"{base_name}'s",
                          resolved_entity=resolved,
                          confidence=confidence,
                          method='possessive_resolution',
                          related_entities=related,
                          note=note)

    def _pick_match(self, domain: str, matches: List[Tuple[GraphNode, str]],
                    context: ResolutionContext) -> Tuple[GraphNode, str, Optional[str]]:
        """Choose among candidate nodes.

        Match precedence decides first. Among candidates sharing the best match kind, the one
        co-referenced with the current project wins; otherwise the first is taken and flagged.
        """
        best_kind = matches[0][1]
        tied = [(node, kind) for node, kind in matches if kind == best_kind]
        if len(tied) == 1:
            return tied[0][0], best_kind, None

        if context.current_project:
            for node, kind in tied:
                if self._co_referenced(domain, node, context.current_project):
                    return node, kind, 'current_project_context'

        logger.warning(f'{len(tied)} entities tie for "{tied[0][0].name}", taking the first')
        return tied[0][0], best_kind, 'uncorroborated_tie_break'

    def _co_referenced(self, domain: str, node: GraphNode, project_name: str) -> bool:
        graph = self.graph_builder.get_graph(domain)
        wanted = project_name.strip().lower()

        for record_id in node.record_ids:
            record = graph.records.get(record_id)
            if record is None:
                continue
            for project in record.entities.get('projects', []):
                if str(project.get('name', '')).strip().lower() == wanted:
                    return True

        for edge in graph.edges:
            other = edge.target if edge.source == node.id else edge.source if edge.target == node.id else None
            if other is None:
                continue
            other_node = graph.nodes.get(other)
            if other_node is not None and other_node.type == 'project' and other_node.name.lower() == wanted:
                return True
        return False

    def resolve_context(self, parsed_query: ParsedQuery, context: ResolutionContext) -> ResolvedContext:
        """Resolve every requirement of a parsed query and gather surrounding context.

        Unresolved references become explicit ambiguities; nothing here raises on a miss.

        Args:
            parsed_query: Output of the query parser
            context: Caller context

        Returns:
            ResolvedContext
        """
        resolved = ResolvedContext(entities=copy.deepcopy(parsed_query.entities))

        for requirement in parsed_query.context_requirements:
            resolution = self.resolve(requirement, context)
            if resolution is not None:
                resolved.resolved_references.append(resolution)
            if resolution is None or resolution.resolved_entity is None:
                resolved.ambiguities.append({
                    'type': requirement.type,
                    'value': requirement.value,
                    'reason': 'unresolved_reference',
                    'note': resolution.note if resolution is not None else None
                })
                continue
            resolved.entities.setdefault(category_for(resolution.type), []).append(resolution.resolved_entity)

        for entity_type in parsed_query.missing_entities:
            if not resolved.entities.get(category_for(entity_type)):
                resolved.ambiguities.append({'type': entity_type, 'reason': 'missing_required_entity'})

        resolved.contextual_information = self._gather_contextual_information(resolved, context)
        resolved.confidence = self._resolution_confidence(resolved, parsed_query)

        logger.info(f'Context resolved: {len(resolved.resolved_references)} references, '
                    f'{len(resolved.contextual_information)} contextual items, {len(resolved.ambiguities)} ambiguities')
        return resolved

    def _gather_contextual_information(self, resolved: ResolvedContext, context: ResolutionContext) -> List[Dict[str, Any]]:
        info = []
        for resolution in resolved.resolved_references:
            for related in resolution.related_entities:
                info.append({
                    'type': 'relationship',
                    'description': f"{resolution.resolved_entity['name']} {related['relationship']} {related['entity']['name']}",
                    'confidence': related['confidence'],
                    'entities': [resolution.resolved_entity, related['entity']]
                })

        if (context.domain or self.domain) == 'construction':
            for project in resolved.entities.get('projects', []):
                for location in resolved.entities.get('locations', []):
                    info.append({
                        'type': 'domain_context',
                        'description': f'Project "{project.get("name")}" may be located at "{location.get("name")}"',
                        'confidence': 0.6,
                        'entities': [project, location]
                    })

        amounts = resolved.entities.get('amounts', [])
        if amounts:
            info.append({
                'type': 'financial_context',
                'description': 'Financial transaction involving ' + ', '.join(f"${a.get('value')}" for a in amounts),
                'confidence': 0.8,
                'entities': amounts
            })
        return info

    def _resolution_confidence(self, resolved: ResolvedContext, parsed_query: ParsedQuery) -> float:
        total = parsed_query.confidence
        count = 1
        for resolution in resolved.resolved_references:
            total += resolution.confidence
            count += 1
        for item in resolved.contextual_information:
            total += item['confidence'] * 0.5
            count += 1
        return total / count
