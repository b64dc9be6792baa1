"""
Domain Layer - Step Graph

Each Route owns a StepGraph: an arena of steps indexed by id plus explicit
edge lists. Steps never reference each other directly, which keeps
traversal, cycle detection and serialization simple.

A step with several outgoing edges is a branch point (e.g. "no slots
available" as an alternate path). Terminal steps link to END_ROUTE.
"""

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Set

if TYPE_CHECKING:
    from .models import Step

END_ROUTE = "END_ROUTE"


class StepGraphError(ValueError):
    """Raised when a StepGraph is structurally invalid."""
    pass


class StepGraph:
    def __init__(self, initial_step_id: Optional[str] = None):
        self.steps: Dict[str, "Step"] = {}
        self.edges: Dict[str, List[str]] = {}
        self.initial_step_id = initial_step_id

    @classmethod
    def linear(cls, steps: Iterable["Step"]) -> "StepGraph":
        """Chain steps in order; the last one links to END_ROUTE."""
        graph = cls()
        previous: Optional[str] = None
        for step in steps:
            graph.add_step(step)
            if previous is not None:
                graph.link(previous, step.id)
            previous = step.id
        if previous is not None:
            graph.link(previous, END_ROUTE)
        return graph

    # ==========================================================================
    # Construction
    # ==========================================================================

    def add_step(self, step: "Step") -> "Step":
        if step.id == END_ROUTE:
            raise StepGraphError(f"'{END_ROUTE}' is reserved")
        if step.id in self.steps:
            raise StepGraphError(f"Duplicate step id '{step.id}'")
        self.steps[step.id] = step
        self.edges.setdefault(step.id, [])
        if self.initial_step_id is None:
            self.initial_step_id = step.id
        return step

    def link(self, source_id: str, target_id: str) -> None:
        """Add a directed edge. Edge order is declaration order."""
        if source_id not in self.steps:
            raise StepGraphError(f"Unknown source step '{source_id}'")
        targets = self.edges[source_id]
        if target_id not in targets:
            targets.append(target_id)

    # ==========================================================================
    # Queries
    # ==========================================================================

    @property
    def initial_step(self) -> Optional["Step"]:
        if self.initial_step_id is None:
            return None
        return self.steps.get(self.initial_step_id)

    def get(self, step_id: Optional[str]) -> Optional["Step"]:
        if step_id is None:
            return None
        return self.steps.get(step_id)

    def successors(self, step_id: str) -> List[str]:
        return list(self.edges.get(step_id, []))

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps.values())

    def reachable_from(self, step_id: str) -> Set[str]:
        """All node ids reachable from step_id (END_ROUTE included), excluding the start."""
        seen: Set[str] = set()
        stack = list(self.successors(step_id))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            if node != END_ROUTE:
                stack.extend(self.successors(node))
        return seen

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a list of step ids, or None if the graph is acyclic."""
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {step_id: WHITE for step_id in self.steps}
        path: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            colour[node] = GREY
            path.append(node)
            for target in self.edges.get(node, []):
                if target == END_ROUTE or target not in colour:
                    continue
                if colour[target] == GREY:
                    return path[path.index(target):] + [target]
                if colour[target] == WHITE:
                    found = visit(target)
                    if found:
                        return found
            path.pop()
            colour[node] = BLACK
            return None

        for step_id in self.steps:
            if colour[step_id] == WHITE:
                cycle = visit(step_id)
                if cycle:
                    return cycle
        return None

    def validate(self) -> None:
        """
        Check structural integrity.

        Cycles are allowed (a step may loop back for corrections) as long
        as END_ROUTE stays reachable from the initial step.
        """
        if not self.steps:
            return
        if self.initial_step_id not in self.steps:
            raise StepGraphError(f"Initial step '{self.initial_step_id}' is not in the graph")
        for source, targets in self.edges.items():
            for target in targets:
                if target != END_ROUTE and target not in self.steps:
                    raise StepGraphError(f"Step '{source}' links to unknown step '{target}'")
        if END_ROUTE not in self.reachable_from(self.initial_step_id):
            raise StepGraphError(f"{END_ROUTE} is not reachable from '{self.initial_step_id}'")

    def to_dict(self) -> dict:
        return {
            "initial_step_id": self.initial_step_id,
            "steps": {
                step_id: {"description": step.description, "collect": list(step.collect), "requires": list(step.requires)}
                for step_id, step in self.steps.items()
            },
            "edges": {step_id: list(targets) for step_id, targets in self.edges.items()},
        }
