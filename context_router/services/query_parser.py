"""
Query parsing: extraction, pattern-based intent recognition and context requirement detection.
"""

import re
from typing import Any, Dict, List, Optional

from ..models.core import ENTITY_CATEGORIES, ContextRequirement, Extraction, Intent, ParsedQuery, ResolutionContext, category_for
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Clock, to_iso
from .entity_extraction import EntityExtractor
from .matching import is_possessive

logger = get_logger(__name__)

INTENT_PATTERNS: Dict[str, Dict[str, List[str]]] = {
    'add_charge': {
        'patterns': [r'add.*charge', r'charge.*for', r'bill.*for', r'add.*cost', r'expense.*for'],
        'context_required': ['location', 'project', 'person'],
    },
    'assign_task': {
        'patterns': [r'assign.*to', r'give.*task', r'need.*to.*do', r'schedule.*for'],
        'context_required': ['person', 'project'],
    },
    'check_status': {
        'patterns': [r'what.*status', r'how.*going', r'progress.*on', r'update.*on'],
        'context_required': ['project'],
    },
    'location_query': {
        'patterns': [r'at.*location', r"I'm at", r'here at', r'on site'],
        'context_required': ['location'],
    },
    'material_request': {
        'patterns': [r'need.*materials', r'order.*supplies', r'get.*more', r'buy.*for'],
        'context_required': ['project', 'material'],
    },
    'schedule_query': {
        'patterns': [r'when.*will', r'schedule.*for', r'timeline.*for', r'deadline.*for'],
        'context_required': ['project'],
    },
}

AMBIGUOUS_PATTERNS = [
    re.compile(r'^(he|she|they|it)$', re.IGNORECASE),
    re.compile(r'^(here|there)$', re.IGNORECASE),
    re.compile(r'^(this|that)$', re.IGNORECASE),
    re.compile(r'^the\s+\w+$', re.IGNORECASE),
    re.compile(r"^\w+['’]s$", re.IGNORECASE),
]
LOCATION_CLUE = re.compile(r"\b(i'm at|i am at|here)\b", re.IGNORECASE)


def is_ambiguous_reference(reference: str) -> bool:
    return any(pattern.match(reference.strip()) for pattern in AMBIGUOUS_PATTERNS)


class QueryParser:
    """Turn a free-text query into intent, entities and context requirements."""

    def __init__(self, extractor: EntityExtractor, domain: Optional[str] = None, clock: Optional[Clock] = None):
        self.extractor = extractor
        self.domain = domain or config.graph.domain
        self.clock = clock if clock is not None else Clock()

    def parse(self, query: str, context: Optional[ResolutionContext] = None) -> ParsedQuery:
        """Parse a query.

        Args:
            query: Free-text query
            context: Caller context (optional)

        Returns:
            ParsedQuery
        """
        context = context if context is not None else ResolutionContext()
        domain = context.domain or self.domain

        extraction = self.extractor.extract(query, domain)
        intent = self.identify_intent(query, extraction)
        requirements = self.detect_context_requirements(query, extraction)
        missing = self.missing_entities(intent, extraction)

        parsed = ParsedQuery(original_query=query,
                             intent=intent,
                             entities=extraction.entities,
                             context_requirements=requirements,
                             missing_entities=missing,
                             metadata={
                                 'user_id': context.user_id,
                                 'current_location': context.current_location,
                                 'current_project': context.current_project,
                                 'domain': domain,
                                 'confidence': extraction.confidence,
                                 'context_clues': extraction.context_clues,
                                 'timestamp': to_iso(self.clock.now()),
                             })
        logger.info(f'Query parsed - intent: {intent.type}, entity categories: {len(extraction.entities)}')
        return parsed

    def identify_intent(self, query: str, extraction: Extraction) -> Intent:
        """Score each intent: +2 per pattern hit in the query, +1 per matching intent indicator.

        Returns:
            Best scoring Intent with confidence min(score / 3, 1), or 'unknown' at 0.1
        """
        best: Optional[Intent] = None
        best_score = 0

        for intent_type, definition in INTENT_PATTERNS.items():
            matched = [p for p in definition['patterns'] if re.search(p, query, re.IGNORECASE)]
            score = 2 * len(matched)
            for indicator in extraction.intent_indicators:
                if any(re.search(p, indicator, re.IGNORECASE) for p in definition['patterns']):
                    score += 1

            if score > best_score:
                best_score = score
                best = Intent(type=intent_type, confidence=min(score / 3, 1.0), patterns_matched=matched)

        return best if best is not None else Intent(type='unknown', confidence=0.1)

    def detect_context_requirements(self, query: str, extraction: Extraction) -> List[ContextRequirement]:
        requirements = []
        for category, entities in extraction.entities.items():
            entity_type = ENTITY_CATEGORIES.get(category, category.rstrip('s'))
            for entity in entities:
                name = entity.get('name')
                if not isinstance(name, str) or not is_ambiguous_reference(name):
                    continue
                reason = 'possessive_reference' if is_possessive(name) else 'ambiguous_reference'
                requirements.append(ContextRequirement(type=entity_type, value=name.strip(), reason=reason))

        mentions_location = any(LOCATION_CLUE.search(clue) for clue in extraction.context_clues) or \
            bool(LOCATION_CLUE.search(query))
        if mentions_location and not extraction.entities.get('locations'):
            requirements.append(ContextRequirement(type='location', value='current_location', reason='implicit_reference'))

        return requirements

    def missing_entities(self, intent: Intent, extraction: Extraction) -> List[str]:
        definition = INTENT_PATTERNS.get(intent.type)
        if definition is None:
            return []
        return [t for t in definition['context_required'] if not extraction.entities.get(category_for(t))]

    def complexity(self, parsed: ParsedQuery) -> Dict[str, Any]:
        """Rough complexity score of a parsed query: simple below 3, moderate below 8, else complex."""
        score = sum(len(entities) for entities in parsed.entities.values())
        score += 2 * len(parsed.context_requirements)
        score += 3 * len(parsed.missing_entities)
        if parsed.intent.type == 'unknown':
            score += 5
        level = 'simple' if score < 3 else 'moderate' if score < 8 else 'complex'
        return {'score': score, 'level': level}
