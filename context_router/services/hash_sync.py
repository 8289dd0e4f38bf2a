"""
Hash-status cache sync against the external project system.

The external system publishes a hash tree: a root hash, one hash per section and one hash per
child within a section. Comparing against the last-seen hashes lets a sync fetch only what
changed. Hashes are written back bottom-up (children, then section, then root) so an
interrupted sync is retried from where it failed.
"""

from typing import Any, Dict, List, Optional

from ..utils.logging_config import get_logger
from ..utils.project_system_client import ProjectSystemClient, ProjectSystemError
from ..utils.stores import KeyValueStore
from ..utils.timestamp_utils import Clock, to_iso

logger = get_logger(__name__)

SECTIONS = ['cmds', 'config', 'structure', 'data', 'docs']
ROOT_KEY = 'root'
ERROR_HASH = 'error_hashing'


def _hash_of(entry: Any) -> Optional[str]:
    if isinstance(entry, dict):
        value = entry.get('hash')
        return str(value) if value is not None else None
    return None


class HashStatusSync:
    """Keeps a local copy of the external dataset in step with its hash tree."""

    def __init__(self, client: ProjectSystemClient, store: KeyValueStore, clock: Optional[Clock] = None):
        """
        Args:
            client: External project system client
            store: Hash cache, keyed by resource path ('root', '<section>', '<section>/<child>')
            clock: Time source (optional, wall clock if None)
        """
        self.client = client
        self.store = store
        self.clock = clock if clock is not None else Clock()

    def _write(self, key: str, hash_value: Optional[str], payload: Any) -> None:
        self.store.set(key, {'hash': hash_value, 'payload': payload, 'fetched_at': self.clock.now()})

    def check_sync_status(self) -> Dict[str, Any]:
        """Compare the remote root and section hashes with the cache without fetching any child.

        Returns:
            {'has_changes': bool, 'sections': {section: {'changed', 'current_hash', 'previous_hash', 'reason'}}}

        Raises:
            ProjectSystemError: If the root hash status cannot be fetched
        """
        root = self.client.hash_status()
        cached_root = self.store.get(ROOT_KEY)
        status = {'has_changes': False, 'sections': {}, 'root_hash': _hash_of(root), 'checked_at': to_iso(self.clock.now())}

        if cached_root is None:
            status['has_changes'] = True
            for section in SECTIONS:
                status['sections'][section] = {'changed': True, 'current_hash': _hash_of(root.get(section)),
                                               'previous_hash': None, 'reason': 'initial_sync'}
            return status

        if cached_root.get('hash') == _hash_of(root):
            return status

        status['has_changes'] = True
        for section in SECTIONS:
            cached_section = self.store.get(section)
            current = _hash_of(root.get(section))
            previous = cached_section.get('hash') if cached_section else None
            changed = current != previous
            status['sections'][section] = {'changed': changed, 'current_hash': current, 'previous_hash': previous,
                                           'reason': 'hash_mismatch' if changed else None}
        return status

    def sync(self) -> Dict[str, Any]:
        """Fetch everything whose hash changed since the last sync.

        Returns:
            Summary with section, fetch, skip and error counts plus the fetched resource paths

        Raises:
            ProjectSystemError: If the root hash status cannot be fetched
        """
        with self.store.lock:
            root = self.client.hash_status()
            root_hash = _hash_of(root)
            cached_root = self.store.get(ROOT_KEY)
            result = {'changed': False, 'sections_synced': [], 'fetched': 0, 'unchanged': 0, 'skipped': 0,
                      'errors': [], 'drill_downs': 0, 'fetched_keys': []}

            if cached_root is not None and cached_root.get('hash') == root_hash:
                logger.debug('Root hash unchanged, nothing to sync')
                return result

            result['changed'] = True
            for section in SECTIONS:
                current = _hash_of(root.get(section))
                cached_section = self.store.get(section)
                if cached_root is not None and cached_section is not None and cached_section.get('hash') == current:
                    continue
                if self._sync_section(section, current, result):
                    result['sections_synced'].append(section)

            if result['errors']:
                logger.warning(f'Sync incomplete, {len(result["errors"])} fetches failed; root hash not advanced')
            else:
                self._write(ROOT_KEY, root_hash, root)

            logger.info(f'Hash sync: {len(result["sections_synced"])} sections, {result["fetched"]} fetched, '
                        f'{result["unchanged"]} unchanged, {result["skipped"]} skipped')
            return result

    def _sync_section(self, section: str, section_hash: Optional[str], result: Dict[str, Any]) -> bool:
        try:
            children = self.client.hash_status(section)
        except ProjectSystemError as e:
            logger.warning(f'Failed to drill into section {section}: {e}')
            result['errors'].append({'resource': section, 'error': str(e)})
            return False
        result['drill_downs'] += 1

        ok = True
        for child, info in children.items():
            if child.startswith('.'):
                continue
            child_hash = _hash_of(info)
            if child_hash is None or child_hash == ERROR_HASH:
                result['skipped'] += 1
                continue

            key = f'{section}/{child}'
            cached = self.store.get(key)
            if cached is not None and cached.get('hash') == child_hash:
                result['unchanged'] += 1
                continue

            try:
                payload = self.client.get_project(child) if section == 'data' else self.client.get_resource(key)
            except ProjectSystemError as e:
                logger.warning(f'Failed to fetch {key}: {e}')
                result['errors'].append({'resource': key, 'error': str(e)})
                ok = False
                continue

            self._write(key, child_hash, payload)
            result['fetched'] += 1
            result['fetched_keys'].append(key)

        prefix = f'{section}/'
        removed = self.store.sweep(lambda key, _: key.startswith(prefix) and key[len(prefix):] not in children)
        if removed:
            logger.debug(f'Dropped {removed} cached entries no longer present in {section}')

        if ok:
            self._write(section, section_hash, children)
        return ok

    def cached(self, path: str) -> Optional[Any]:
        """Cached payload for a resource path, or None."""
        entry = self.store.get(path)
        return entry.get('payload') if entry else None

    def cached_projects(self) -> List[Dict[str, Any]]:
        projects = []
        for key, entry in self.store.items():
            payload = entry.get('payload')
            if key.startswith('data/') and isinstance(payload, dict):
                project = dict(payload)
                project.setdefault('id', key[len('data/'):])
                projects.append(project)
        return projects

    def get_project(self, project_id: str) -> Dict[str, Any]:
        """Project detail, served from the cache when present, else fetched and cached.

        Raises:
            ProjectSystemError: If the project is not cached and cannot be fetched
        """
        key = f'data/{project_id}'
        payload = self.cached(key)
        if isinstance(payload, dict):
            return payload

        payload = self.client.get_project(project_id)
        self._write(key, None, payload)
        return payload

    def stats(self) -> Dict[str, Any]:
        root = self.store.get(ROOT_KEY)
        keys = self.store.keys()
        return {
            'last_update': to_iso(root['fetched_at']) if root else None,
            'root_hash': root.get('hash') if root else None,
            'cached_projects': sum(1 for key in keys if key.startswith('data/')),
            'cached_structures': sum(1 for key in keys if key.startswith('structure/')),
            'cached_entries': len(keys),
        }
