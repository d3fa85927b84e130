"""Workspace cross-reference graph built with NetworkX."""
from typing import Dict, Iterable, List, Set

import networkx as nx

MEMBER = "member"
DEPENDENCY = "dependency"


class WorkspaceGraph:
    """Directed graph of workspace members and the dependencies they touch.

    Edge (member, dependency) carries ``declared`` and ``used`` flags and the
    member files that use it. A member that uses a dependency without
    declaring it resolves it through the root's hoisted copy, so it still
    counts as a user.
    """

    def __init__(self):
        self.graph = nx.DiGraph()

    @staticmethod
    def _member_node(name: str):
        return (MEMBER, name)

    @staticmethod
    def _dep_node(name: str):
        return (DEPENDENCY, name)

    def add_member(self, name: str, rel_dir: str, declared: Iterable[str] = ()):
        """Register a member and the dependencies its manifest declares."""
        member = self._member_node(name)
        self.graph.add_node(member, kind=MEMBER, path=rel_dir)
        for dep in declared:
            self._edge(member, dep)['declared'] = True

    def add_usage(self, member_name: str, dependency: str, files: Iterable[str] = ()):
        """Record that a member's code or config uses a dependency."""
        member = self._member_node(member_name)
        if member not in self.graph:
            self.graph.add_node(member, kind=MEMBER, path=member_name)
        data = self._edge(member, dependency)
        data['used'] = True
        data['files'].update(files)

    def _edge(self, member, dependency: str) -> dict:
        dep = self._dep_node(dependency)
        if dep not in self.graph:
            self.graph.add_node(dep, kind=DEPENDENCY)
        if not self.graph.has_edge(member, dep):
            self.graph.add_edge(member, dep, declared=False, used=False, files=set())
        return self.graph.edges[member, dep]

    def members(self) -> List[str]:
        return sorted(n[1] for n, kind in self.graph.nodes(data='kind') if kind == MEMBER)

    def members_using(self, dependency: str) -> List[str]:
        """Members whose code or config uses ``dependency``."""
        dep = self._dep_node(dependency)
        if dep not in self.graph:
            return []
        return sorted(
            member[1] for member in self.graph.predecessors(dep)
            if self.graph.edges[member, dep]['used']
        )

    def member_files(self, member_name: str, dependency: str) -> Set[str]:
        member, dep = self._member_node(member_name), self._dep_node(dependency)
        if not self.graph.has_edge(member, dep):
            return set()
        return set(self.graph.edges[member, dep]['files'])

    def cross_references(self, root_dependencies: Iterable[str]) -> Dict[str, List[str]]:
        """Map each root dependency to the members that use it."""
        result = {}
        for dep in root_dependencies:
            users = self.members_using(dep)
            if users:
                result[dep] = users
        return result
