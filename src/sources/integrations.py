# src/sources/integrations.py
"""
Which sources a project has connected, and the credentials to use for them.
"""
from typing import Dict, Iterable, Optional, Protocol


class IntegrationDirectory(Protocol):
    def active_platforms(self, project_id: str) -> Iterable[str]:
        ...

    def credentials(self, project_id: str, platform: str) -> Optional[dict]:
        ...


class StaticIntegrations:
    """
    In-process directory: {project_id: {platform: credentials}}. A `default` mapping applies to
    projects without an entry of their own.
    """

    def __init__(self, projects: Optional[Dict[str, Dict[str, Optional[dict]]]] = None, default=None):
        self._projects = projects or {}
        self._default = default

    def _for(self, project_id):
        if project_id in self._projects:
            return self._projects[project_id]
        return self._default or {}

    def active_platforms(self, project_id):
        return list(self._for(project_id))

    def credentials(self, project_id, platform):
        return self._for(project_id).get(platform)


class RegistryIntegrations:
    """Every registered source is active for every project, with no credentials."""

    def __init__(self, registry):
        self._registry = registry

    def active_platforms(self, project_id):
        return self._registry.names()

    def credentials(self, project_id, platform):
        return None
