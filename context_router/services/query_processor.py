"""
Query processing: parse, resolve references and run the intent handler.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.core import MissingInfo, ParsedQuery, QueryResult, ResolutionContext, ResolvedContext
from ..utils.logging_config import get_logger
from .query_parser import QueryParser
from .reference_resolver import ReferenceResolver

logger = get_logger(__name__)

HandlerResult = Tuple[List[Dict[str, Any]], str, float, Optional[MissingInfo]]


def _first_name(entities: List[Dict[str, Any]], default: str) -> str:
    if not entities:
        return default
    return str(entities[0].get('name') or entities[0].get('description') or entities[0].get('value') or default)


class QueryProcessor:
    """Parse a query, resolve its references and run the matching intent handler."""

    def __init__(self, parser: QueryParser, resolver: ReferenceResolver):
        self.parser = parser
        self.resolver = resolver
        self.handlers: Dict[str, Callable[[ParsedQuery, ResolvedContext], HandlerResult]] = {
            'add_charge': self.handle_add_charge,
            'assign_task': self.handle_assign_task,
            'check_status': self.handle_check_status,
            'location_query': self.handle_location_query,
            'material_request': self.handle_material_request,
            'schedule_query': self.handle_schedule_query,
            'unknown': self.handle_unknown,
        }

    def process(self, query: str, context: Optional[ResolutionContext] = None) -> QueryResult:
        """Run the parse, resolve and handle steps for one query.

        Args:
            query: Free-text query
            context: Caller context (optional)

        Returns:
            QueryResult, carrying missing_info when the handler needs more from the user
        """
        context = context if context is not None else ResolutionContext()
        parsed = self.parser.parse(query, context)
        resolved = self.resolver.resolve_context(parsed, context)

        handler = self.handlers.get(parsed.intent.type, self.handle_unknown)
        actions, response, confidence, missing_info = handler(parsed, resolved)

        logger.info(f'Processed query - intent: {parsed.intent.type} ({parsed.intent.confidence:.2f}), '
                    f'actions: {len(actions)}, missing: {missing_info.type if missing_info else None}')
        return QueryResult(original_query=query,
                           intent=parsed.intent,
                           resolved_context=resolved,
                           actions=actions,
                           response=response,
                           confidence=confidence,
                           missing_info=missing_info,
                           metadata={
                               'parsed': parsed,
                               'complexity': self.parser.complexity(parsed),
                               'timestamp': parsed.metadata.get('timestamp'),
                           })

    def _action(self, action_type: str, parsed: ParsedQuery, **fields) -> Dict[str, Any]:
        action = {'type': action_type}
        action.update(fields)
        action['metadata'] = {'original_query': parsed.original_query, 'timestamp': parsed.metadata.get('timestamp')}
        return action

    def handle_add_charge(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        entities = resolved.entities
        amounts = entities.get('amounts', [])
        projects = entities.get('projects', [])
        locations = entities.get('locations', [])

        if not amounts:
            question = 'I need to know the amount to charge. Could you specify the cost?'
            return [], question, 0.3, MissingInfo(type='amount', required_entity='amount', question=question)

        if not projects and not locations:
            question = 'Which project or location should this charge go to?'
            return [], question, 0.3, MissingInfo(type='project_context', required_entity='project', question=question)

        amount = amounts[0]
        item = _first_name(entities.get('items', []), 'unspecified item')
        location = _first_name(locations, _first_name(projects, 'unknown location'))
        action = self._action('add_charge', parsed,
                              amount=amount.get('value'),
                              currency=amount.get('currency') or 'USD',
                              item=item,
                              person=_first_name(entities.get('people', []), 'unknown person'),
                              project=_first_name(projects, '') or None,
                              location=location,
                              confidence=amount.get('confidence', resolved.confidence))
        response = f"I would add a ${amount.get('value')} charge for {item} at {location}. Confirm to execute."
        return [action], response, resolved.confidence, None

    def handle_assign_task(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        tasks = resolved.entities.get('tasks', [])
        people = resolved.entities.get('people', [])
        if not tasks:
            return [], 'I need to know what task to assign. Could you specify the task?', 0.3, None
        if not people:
            return [], 'I need to know who to assign the task to. Could you specify the person?', 0.3, None

        task = _first_name(tasks, 'task')
        person = _first_name(people, 'unknown person')
        project = _first_name(resolved.entities.get('projects', []), 'current project')
        action = self._action('assign_task', parsed,
                              task=task,
                              assignee=person,
                              project=project,
                              confidence=min(tasks[0].get('confidence', 0.8), people[0].get('confidence', 0.8)))
        return [action], f'I would assign "{task}" to {person} for {project}. Confirm to execute.', resolved.confidence, None

    def handle_check_status(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        projects = resolved.entities.get('projects', [])
        people = resolved.entities.get('people', [])
        if not projects and not people:
            return [], 'I need to know what status to check. Could you specify a project or person?', 0.3, None

        target = _first_name(projects or people, 'unknown')
        action = self._action('check_status', parsed,
                              target=target,
                              target_type='project' if projects else 'person',
                              confidence=0.8)

        relevant = [info for info in resolved.contextual_information if target.lower() in info['description'].lower()]
        if relevant:
            response = f'Status for {target}:\n' + '\n'.join(f"- {info['description']}" for info in relevant[:3])
        else:
            response = f'I found limited status information for {target}.'
        return [action], response, resolved.confidence, None

    def handle_location_query(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        people = [str(p.get('name')) for p in resolved.entities.get('people', [])]
        projects = [str(p.get('name')) for p in resolved.entities.get('projects', [])]
        location = _first_name(resolved.entities.get('locations', []), 'current location')
        action = self._action('location_context', parsed, location=location, people=people, projects=projects, confidence=0.8)

        response = f'Location context established: {location}'
        if people:
            response += f'\nPeople: {", ".join(people)}'
        if projects:
            response += f'\nProjects: {", ".join(projects)}'
        return [action], response, resolved.confidence, None

    def handle_material_request(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        materials = resolved.entities.get('items') or resolved.entities.get('materials') or []
        projects = resolved.entities.get('projects', [])
        if not materials:
            return [], 'I need to know what materials you need. Could you specify the materials?', 0.3, None
        if not projects:
            question = 'Which project are these materials for?'
            return [], question, 0.3, MissingInfo(type='project_context', required_entity='project', question=question)

        amounts = resolved.entities.get('amounts', [])
        material = _first_name(materials, 'materials')
        project = _first_name(projects, 'current project')
        quantity = amounts[0].get('value') if amounts else 'unspecified quantity'
        action = self._action('material_request', parsed,
                              material=material,
                              quantity=quantity,
                              project=project,
                              confidence=materials[0].get('confidence', 0.8))
        return [action], f'I would request {quantity} {material} for {project}. Confirm to execute.', resolved.confidence, None

    def handle_schedule_query(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        projects = resolved.entities.get('projects', [])
        dates = resolved.entities.get('dates', [])
        target = _first_name(projects or resolved.entities.get('people', []), 'unknown')
        timeframe = str(dates[0].get('value')) if dates else 'unspecified'
        action = self._action('schedule_query', parsed,
                              target=target,
                              target_type='project' if projects else 'person',
                              timeframe=timeframe,
                              confidence=0.7)

        response = f'Schedule query for {target}'
        if timeframe != 'unspecified':
            response += f' ({timeframe})'
        return [action], response + '. Checking project timeline...', resolved.confidence, None

    def handle_unknown(self, parsed: ParsedQuery, resolved: ResolvedContext) -> HandlerResult:
        action = self._action('unknown_intent', parsed, confidence=0.1)
        response = f'I\'m not sure what you want me to do with "{parsed.original_query}". Could you rephrase?'
        return [action], response, 0.1, None

