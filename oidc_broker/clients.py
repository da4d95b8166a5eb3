"""
Downstream client allow-list. Public clients only (CLI, desktop agent); no secrets.
"""
from collections.abc import Iterable, Mapping


class ClientRegistry:
    def __init__(self, allowed_client_ids: Iterable[str] | None = None, names: Mapping[str, str] | None = None):
        self._allowed = frozenset(c for c in (allowed_client_ids or ()) if c)
        self._names = dict(names or {})

    def is_allowed(self, client_id: str | None) -> bool:
        # Empty allow-list denies everyone
        if not client_id or not self._allowed:
            return False
        return client_id in self._allowed

    def display_name(self, client_id: str) -> str:
        return self._names.get(client_id, client_id)
