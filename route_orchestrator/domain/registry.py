"""
Domain Layer - Tool Domains

A domain is a named group of tools (e.g. "payments", "calendar"). Routes
may declare which domains they are allowed to reach; tools outside those
domains are never callable inside the route.
"""

from typing import Dict, List, Optional

from .models import Tool


class DomainRegistry:
    def __init__(self):
        self._domains: Dict[str, List[Tool]] = {}

    def register(self, name: str, tools: Optional[List[Tool]] = None) -> None:
        """Register a domain. Raises ValueError when the name is already taken."""
        if name in self._domains:
            raise ValueError(f"Domain '{name}' is already registered")
        members = list(tools or [])
        for tool in members:
            tool.domain = name
        self._domains[name] = members

    def get(self, name: str) -> Optional[List[Tool]]:
        return self._domains.get(name)

    def has(self, name: str) -> bool:
        return name in self._domains

    def all(self) -> Dict[str, List[Tool]]:
        return {name: list(tools) for name, tools in self._domains.items()}

    def tools(self) -> List[Tool]:
        """Every tool across all domains, in registration order."""
        return [tool for tools in self._domains.values() for tool in tools]
