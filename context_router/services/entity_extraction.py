"""
Natural-language extraction of entities, intent indicators and context clues from a query.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models.core import Extraction, clamp_confidence
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.json_utils import extract_json_object
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.3


class EntityExtractionError(Exception):
    """Raised when the language model output cannot be turned into an extraction."""
    pass


class EntityExtractor(ABC):
    """Anything that turns a query into an Extraction."""

    @abstractmethod
    def extract(self, query: str, domain: str) -> Extraction:
        """Extract entities and intent hints from a query. Must not raise on bad model output."""


class BedrockEntityExtractor(EntityExtractor):
    """Extract query components with an Amazon Bedrock model."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        """
        Args:
            llm: Bedrock client (optional, built from the global config if None)
        """
        self.llm = llm if llm is not None else BedrockLLM(config.bedrock_llm)
        logger.info('Initialized BedrockEntityExtractor')

    def extract(self, query: str, domain: str) -> Extraction:
        """Extract entities, intent indicators and context clues.

        Any model failure or unusable output degrades to an empty extraction with
        confidence 0.3 instead of raising.

        Args:
            query: Free-text query
            domain: Knowledge domain, e.g. 'construction'

        Returns:
            Extraction
        """
        try:
            response = self.llm.complete(self._build_prompt(query, domain),
                                         self._system_prompt(domain),
                                         max_tokens=1000,
                                         temperature=0.1)
            return parse_extraction(response)
        except (BedrockLLMError, EntityExtractionError) as e:
            logger.warning(f'Extraction failed, continuing with empty entities: {e}')
            return Extraction(confidence=FALLBACK_CONFIDENCE)

    def _system_prompt(self, domain: str) -> str:
        return f"""You are an expert natural language query analyzer for {domain} project management.

Conversational queries about projects often contain:
- Implicit context (current location, current project)
- Informal references ("John's place", "more screws")
- Action intents (billing, scheduling, task assignment)
- Relationship implications (who works where, what belongs to which project)

Be precise in entity extraction and confident in your assessments."""

    def _build_prompt(self, query: str, domain: str) -> str:
        return f"""Analyze this query and extract its key components.

QUERY: "{query}"
DOMAIN: {domain}

Return JSON with this structure:
{{
  "entities": {{
    "people": [{{"name": "string", "role": "string", "confidence": 0.9}}],
    "locations": [{{"name": "string", "type": "string", "confidence": 0.9}}],
    "amounts": [{{"value": 30, "currency": "USD", "confidence": 0.9}}],
    "items": [{{"name": "string", "category": "string", "confidence": 0.9}}],
    "projects": [{{"name": "string", "type": "string", "confidence": 0.9}}],
    "tasks": [{{"description": "string", "type": "string", "confidence": 0.9}}],
    "dates": [{{"value": "string", "type": "string", "confidence": 0.9}}]
  }},
  "intent_indicators": ["add charge", "at location"],
  "context_clues": ["I'm at", "add charge"],
  "confidence": 0.85
}}

Keep possessive names exactly as written (e.g. "John's").
Return only valid JSON."""


def _string_list(value: Any) -> List[str]:
    """Strings of a list field; anything that is not a list yields nothing."""
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, (str, int, float))]


def parse_extraction(response: str) -> Extraction:
    """Turn a raw model response into an Extraction.

    Args:
        response: Raw model text containing a JSON object

    Returns:
        Extraction with only well-formed entity lists kept

    Raises:
        EntityExtractionError: If the response holds no usable JSON object
    """
    try:
        data = extract_json_object(response)
    except ValueError as e:
        raise EntityExtractionError(str(e))

    entities: Dict[str, List[Dict[str, Any]]] = {}
    raw_entities = data.get('entities')
    if isinstance(raw_entities, dict):
        for category, items in raw_entities.items():
            if isinstance(items, list):
                entities[category] = [item for item in items if isinstance(item, dict)]

    return Extraction(entities=entities,
                      intent_indicators=_string_list(data.get('intent_indicators')),
                      context_clues=_string_list(data.get('context_clues')),
                      confidence=clamp_confidence(data.get('confidence'), default=0.5))
