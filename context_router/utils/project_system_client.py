"""
HTTP client for the authoritative external project system.
"""

import random
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import ProjectSystemConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class ProjectSystemError(Exception):
    """Raised on any transport, HTTP or payload failure talking to the project system."""
    pass


class ProjectSystemClient:
    """JSON-over-HTTP client with timeouts and bounded retries on connection failures."""

    def __init__(self, config: ProjectSystemConfig, session: Optional[requests.Session] = None):
        """
        Initialize the project system client.

        Args:
            config: Project system section of the application config
            session: Pre-built requests session (optional)

        Raises:
            ProjectSystemError: If no base URL is configured
        """
        if not config.enabled:
            raise ProjectSystemError('Project system base URL is not configured')

        self.config = config
        self.base_url = config.base_url.rstrip('/')
        self.session = session if session is not None else requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if config.api_key:
            self.session.headers.update({'Authorization': f'Bearer {config.api_key}'})

        logger.info(f'Initialized project system client for {self.base_url}')

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        url = f'{self.base_url}{path}'
        attempts = max(self.config.retry_attempts, 1)

        for attempt in range(attempts):
            try:
                logger.debug(f'GET {url} attempt {attempt + 1}/{attempts}')
                response = self.session.get(url, params=params, timeout=self.config.timeout)
                response.raise_for_status()
                return response.json()

            except (requests.ConnectionError, requests.Timeout) as e:
                logger.warning(f'Project system request {url} failed (attempt {attempt + 1}/{attempts}): {e}')
                if attempt < attempts - 1:
                    time.sleep(0.5 * (2**attempt) + random.uniform(0, 0.5))
                else:
                    raise ProjectSystemError(f'Project system unreachable after {attempts} attempts: {e}')
            except requests.HTTPError as e:
                raise ProjectSystemError(f'Project system returned an error for {url}: {e}')
            except ValueError as e:
                raise ProjectSystemError(f'Project system returned invalid JSON for {url}: {e}')
            except requests.RequestException as e:
                raise ProjectSystemError(f'Project system request {url} failed: {e}')

        raise ProjectSystemError(f'Project system unreachable after {attempts} attempts')

    def list_projects(self) -> List[Dict[str, Any]]:
        """List all projects.

        Returns:
            Project summaries with at least 'id', 'name' and 'clientName'
        """
        payload = self._get('/projects')
        if isinstance(payload, dict):
            payload = payload.get('projects', [])
        if not isinstance(payload, list):
            raise ProjectSystemError('Expected a list of projects')
        return [project for project in payload if isinstance(project, dict)]

    def get_project(self, project_id: str) -> Dict[str, Any]:
        """Fetch structured detail for one project."""
        payload = self._get(f'/projects/{quote(project_id, safe="")}')
        if not isinstance(payload, dict):
            raise ProjectSystemError(f'Expected a project object for {project_id}')
        return payload

    def search_projects(self, term: str) -> List[Dict[str, Any]]:
        """Full-text search over project content."""
        payload = self._get('/projects/search', params={'q': term})
        if isinstance(payload, dict):
            payload = payload.get('results', [])
        if not isinstance(payload, list):
            raise ProjectSystemError('Expected a list of search results')
        return [result for result in payload if isinstance(result, dict)]

    def hash_status(self, query: Optional[str] = None) -> Dict[str, Any]:
        """Fetch the hierarchical hash status.

        Args:
            query: Section to drill into (optional, root status if None)

        Returns:
            Root status {'hash', '<section>': {'hash'}} or a section drill-down {'<child>': {'hash'}}
        """
        params = {'drill_down': query} if query else None
        payload = self._get('/hash-status', params=params)
        if not isinstance(payload, dict):
            raise ProjectSystemError('Expected a hash status object')
        return payload

    def get_resource(self, path: str) -> Any:
        """Fetch an arbitrary resource by its slash-separated path."""
        return self._get(f'/resources/{quote(path.strip("/"), safe="/")}')

    def health_check(self) -> bool:
        try:
            self.hash_status()
            return True
        except ProjectSystemError as e:
            logger.error(f'Project system health check failed: {e}')
            return False
