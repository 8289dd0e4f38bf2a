"""
Amazon Bedrock Converse client used by the natural-language extractor.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Raised when the Bedrock runtime cannot produce a completion."""
    pass


class BedrockLLM:
    """Streams Converse completions with bounded retries and exponential backoff."""

    def __init__(self, config: BedrockLLMConfig, client: Any = None):
        """
        Args:
            config: Bedrock section of the application config
            client: Pre-built bedrock-runtime client (optional, built from config if None)
        """
        self.config = config
        self.model_id = config.model_id

        if client is None:
            client = boto3.client('bedrock-runtime',
                                  region_name=config.region,
                                  config=BotoConfig(connect_timeout=config.connect_timeout,
                                                    read_timeout=config.read_timeout,
                                                    retries={'max_attempts': 0}))
        self.bedrock_runtime = client

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a completion, retrying transient AWS failures.

        Args:
            messages: Conversation in Bedrock Converse format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Sampling temperature (uses config default if None)

        Returns:
            Tuple of (response_text, usage_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inference_config = {
            'maxTokens': max_tokens if max_tokens is not None else self.config.max_tokens,
            'temperature': temperature if temperature is not None else self.config.temperature,
        }
        attempts = max(self.config.retry_attempts, 1)

        for attempt in range(attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{attempts}')
                response = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                                messages=messages,
                                                                system=[{'text': system_prompt}],
                                                                inferenceConfig=inference_config)

                text = ''
                usage = None
                for event in response.get('stream') or []:
                    if 'contentBlockDelta' in event:
                        text += event['contentBlockDelta']['delta'].get('text', '')
                    if 'metadata' in event:
                        usage = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

                logger.debug(f'Bedrock LLM response received (length: {len(text)})')
                return text, usage

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {e}')
                if attempt < attempts - 1:
                    time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts')

    def complete(self, prompt: str, system_prompt: str, **kwargs) -> str:
        """Single-turn convenience wrapper returning only the text."""
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        text, _ = self.generate_response(messages, system_prompt, **kwargs)
        return text

    def health_check(self) -> bool:
        try:
            reply = self.complete('Hi', "Respond with just 'OK'.", max_tokens=10, temperature=0.0)
            return bool(reply.strip())
        except BedrockLLMError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
