"""Constraint Graph

Typed relations between learning objects, rebuilt for every generation cycle
from the candidate pool. Nodes are held by id and edges live in adjacency maps
(by source, by target, by pair).

``Requires`` edges must form a DAG. Cycles are broken deterministically:
node ids are walked in sorted order, and for each cycle found the weakest
edge is dropped. Equal strengths drop the lexicographically greatest
(source_id, target_id) pair. This repeats until no cycle remains, and every
dropped edge is kept in ``broken_edges``.
"""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Literal, Union, assert_never

from core.logging import engine_logger
from engines.types import LearningObject

log = engine_logger()

Operator = Literal["equals", "not_equals", "in", "not_in", "greater_than", "less_than"]

REGISTER_LEVELS: dict[str, int] = {
    "frozen": 5,
    "formal": 4,
    "consultative": 3,
    "casual": 2,
    "intimate": 1,
}


@dataclass(frozen=True, slots=True)
class Condition:
    """Gate on the source object; the edge only applies when this holds."""
    property: str
    operator: Operator
    value: Any

    def evaluate(self, obj: LearningObject) -> bool:
        if self.property == "component":
            actual = obj.component
        elif self.property == "content":
            actual = obj.content
        else:
            actual = obj.metadata.get(self.property)

        if self.operator == "equals":
            return actual == self.value
        if self.operator == "not_equals":
            return actual != self.value
        if self.operator == "in":
            return isinstance(self.value, (list, tuple, set, frozenset)) and actual in self.value
        if self.operator == "not_in":
            return isinstance(self.value, (list, tuple, set, frozenset)) and actual not in self.value
        numeric = isinstance(actual, (int, float)) and isinstance(self.value, (int, float))
        if self.operator == "greater_than":
            return numeric and actual > self.value
        if self.operator == "less_than":
            return numeric and actual < self.value
        return True


@dataclass(frozen=True, slots=True)
class Requires:
    source_id: str
    target_id: str
    strength: float = 1.0
    condition: Condition | None = None
    kind: ClassVar[str] = "requires"


@dataclass(frozen=True, slots=True)
class Prefers:
    source_id: str
    target_id: str
    strength: float = 0.5
    condition: Condition | None = None
    kind: ClassVar[str] = "prefers"


@dataclass(frozen=True, slots=True)
class Restricts:
    """Limits which objects of a component may co-occur with the source.

    ``target_id`` names the restricted component as ``component:<CODE>``.
    """
    source_id: str
    target_id: str
    allowed_ids: frozenset[str] = frozenset()
    strength: float = 1.0
    condition: Condition | None = None
    reason: str = ""
    kind: ClassVar[str] = "restricts"

    @property
    def component(self) -> str:
        return self.target_id.split(":", 1)[-1]


@dataclass(frozen=True, slots=True)
class Enables:
    source_id: str
    target_id: str
    strength: float = 0.5
    condition: Condition | None = None
    kind: ClassVar[str] = "enables"


@dataclass(frozen=True, slots=True)
class Excludes:
    source_id: str
    target_id: str
    strength: float = 1.0
    condition: Condition | None = None
    kind: ClassVar[str] = "excludes"


@dataclass(frozen=True, slots=True)
class Modifies:
    source_id: str
    target_id: str
    attribute: str = "difficulty"
    adjustment: float = 0.0
    strength: float = 1.0
    condition: Condition | None = None
    kind: ClassVar[str] = "modifies"


Relation = Union[Requires, Prefers, Restricts, Enables, Excludes, Modifies]

_RELATION_TYPES: dict[str, type] = {
    cls.kind: cls for cls in (Requires, Prefers, Restricts, Enables, Excludes, Modifies)
}


def relation_from_dict(data: dict) -> Relation:
    """Build a relation from its stored form ``{"kind": ..., ...}``."""
    payload = dict(data)
    kind = payload.pop("kind")
    cls = _RELATION_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"unknown relation kind: {kind}")
    if payload.get("condition"):
        payload["condition"] = Condition(**payload["condition"])
    if "allowed_ids" in payload:
        payload["allowed_ids"] = frozenset(payload["allowed_ids"])
    return cls(**payload)


def relation_to_dict(rel: Relation) -> dict:
    data: dict[str, Any] = {
        "kind": rel.kind,
        "source_id": rel.source_id,
        "target_id": rel.target_id,
        "strength": rel.strength,
    }
    if rel.condition is not None:
        data["condition"] = {
            "property": rel.condition.property,
            "operator": rel.condition.operator,
            "value": rel.condition.value,
        }
    match rel:
        case Restricts():
            data["allowed_ids"] = sorted(rel.allowed_ids)
            data["reason"] = rel.reason
        case Modifies():
            data["attribute"] = rel.attribute
            data["adjustment"] = rel.adjustment
        case Requires() | Prefers() | Enables() | Excludes():
            pass
        case _:
            assert_never(rel)
    return data


@dataclass(frozen=True, slots=True)
class Collocation:
    source_id: str
    target_id: str
    score: float
    measure: Literal["npmi", "pmi"] = "npmi"

    @property
    def strength(self) -> float:
        if self.measure == "npmi":
            return max(0.0, min(1.0, (self.score + 1) / 2))
        return 1 / (1 + math.exp(-(self.score - 2)))


@dataclass(slots=True)
class Propagation:
    trigger_id: str
    required: list[str] = field(default_factory=list)
    excluded: set[str] = field(default_factory=set)
    restrictions: dict[str, frozenset[str]] = field(default_factory=dict)
    preferences: dict[str, float] = field(default_factory=dict)
    enabled: set[str] = field(default_factory=set)
    modifications: list[Modifies] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Validation:
    valid: bool
    violations: list[str]


class ConstraintGraph:
    """Relations among the objects of one candidate pool."""

    __slots__ = ("nodes", "by_source", "by_target", "by_pair", "broken_edges")

    def __init__(self, nodes: dict[str, LearningObject]):
        self.nodes = nodes
        self.by_source: dict[str, list[Relation]] = defaultdict(list)
        self.by_target: dict[str, list[Relation]] = defaultdict(list)
        self.by_pair: dict[tuple[str, str], list[Relation]] = defaultdict(list)
        self.broken_edges: list[Requires] = []

    @classmethod
    def build(
        cls,
        objects: Iterable[LearningObject],
        relations: Iterable[Relation] = (),
        collocations: Iterable[Collocation] = (),
    ) -> ConstraintGraph:
        graph = cls({obj.id: obj for obj in objects})
        for rel in relations:
            if rel.source_id in graph.nodes:
                graph.add(rel)
        for col in collocations:
            if col.source_id in graph.nodes and col.target_id in graph.nodes:
                graph.add(Prefers(col.source_id, col.target_id, col.strength))
                graph.add(Prefers(col.target_id, col.source_id, col.strength))
        graph._derive_linguistic_relations()
        graph.break_requires_cycles()
        return graph

    @property
    def edge_count(self) -> int:
        return sum(len(edges) for edges in self.by_source.values())

    def add(self, rel: Relation) -> None:
        self.by_source[rel.source_id].append(rel)
        self.by_target[rel.target_id].append(rel)
        self.by_pair[(rel.source_id, rel.target_id)].append(rel)

    def remove(self, rel: Relation) -> None:
        self.by_source[rel.source_id].remove(rel)
        self.by_target[rel.target_id].remove(rel)
        self.by_pair[(rel.source_id, rel.target_id)].remove(rel)

    def edges_from(self, object_id: str) -> list[Relation]:
        return list(self.by_source.get(object_id, ()))

    def edges_between(self, source_id: str, target_id: str) -> list[Relation]:
        return list(self.by_pair.get((source_id, target_id), ()))

    # -- derived relations -------------------------------------------------

    def _derive_linguistic_relations(self) -> None:
        ids = sorted(self.nodes)
        for i, a in enumerate(ids):
            obj_a = self.nodes[a]
            for b in ids[i + 1:]:
                obj_b = self.nodes[b]
                reg_a = REGISTER_LEVELS.get(str(obj_a.metadata.get("register", "")))
                reg_b = REGISTER_LEVELS.get(str(obj_b.metadata.get("register", "")))
                if reg_a is not None and reg_b is not None and abs(reg_a - reg_b) > 1:
                    self.add(Excludes(a, b))
                    self.add(Excludes(b, a))
                root_a = obj_a.metadata.get("root")
                if root_a and root_a == obj_b.metadata.get("root"):
                    self.add(Prefers(a, b, 0.6))
                    self.add(Prefers(b, a, 0.6))

        lexical = [self.nodes[i] for i in ids if self.nodes[i].component == "LEX"]
        for sid in ids:
            frame = str(self.nodes[sid].metadata.get("frame", ""))
            if self.nodes[sid].component != "SYNT" or not frame or not lexical:
                continue
            if "passive" in frame.lower():
                allowed = frozenset(
                    o.id for o in lexical
                    if o.metadata.get("transitivity") in ("transitive", "ditransitive")
                )
                if len(allowed) < len(lexical):
                    self.add(Restricts(sid, "component:LEX", allowed,
                                       reason="passive voice requires a transitive verb"))
            if "plural_subject" in frame:
                allowed = frozenset(
                    o.id for o in lexical if o.metadata.get("number") in ("plural", "both")
                )
                if len(allowed) < len(lexical):
                    self.add(Restricts(sid, "component:LEX", allowed,
                                       reason="plural subject requires a plural form"))

    # -- requires cycles ---------------------------------------------------

    def _requires_edges(self, source_id: str) -> list[Requires]:
        edges = [r for r in self.by_source.get(source_id, ()) if isinstance(r, Requires)]
        return sorted(edges, key=lambda r: r.target_id)

    def find_requires_cycle(self) -> list[Requires] | None:
        """First cycle met by DFS over sorted node ids, as its edge list."""
        WHITE, GRAY, BLACK = 0, 1, 2
        color: dict[str, int] = defaultdict(int)
        path: list[Requires] = []

        def visit(node: str) -> list[Requires] | None:
            color[node] = GRAY
            for edge in self._requires_edges(node):
                target = edge.target_id
                if color[target] == GRAY:
                    start = next(
                        (i for i, e in enumerate(path) if e.source_id == target), len(path)
                    )
                    return path[start:] + [edge]
                if color[target] == WHITE:
                    path.append(edge)
                    found = visit(target)
                    if found:
                        return found
                    path.pop()
            color[node] = BLACK
            return None

        for node in sorted(self.by_source):
            if color[node] == WHITE:
                found = visit(node)
                if found:
                    return found
        return None

    def break_requires_cycles(self) -> list[Requires]:
        while (cycle := self.find_requires_cycle()) is not None:
            weakest = min(edge.strength for edge in cycle)
            victim = max(
                (edge for edge in cycle if edge.strength == weakest),
                key=lambda e: (e.source_id, e.target_id),
            )
            self.remove(victim)
            self.broken_edges.append(victim)
            log.warning(
                "requires_cycle_broken",
                cycle=[e.source_id for e in cycle],
                removed=f"{victim.source_id}->{victim.target_id}",
                strength=victim.strength,
            )
        return self.broken_edges

    # -- propagation -------------------------------------------------------

    def propagate(self, trigger_id: str, assigned_ids: Iterable[str] = ()) -> Propagation:
        """Consequences of placing ``trigger_id`` in a task.

        Requirements are followed transitively; every other relation kind
        applies only from the objects reached that way. Requirements already
        met by ``assigned_ids`` are not reported.
        """
        result = Propagation(trigger_id)
        satisfied = set(assigned_ids) | {trigger_id}
        processed = {trigger_id}
        queue = [trigger_id]
        while queue:
            source_id = queue.pop(0)
            source = self.nodes.get(source_id)
            if source is None:
                continue
            for rel in self.by_source.get(source_id, ()):
                if rel.condition is not None and not rel.condition.evaluate(source):
                    continue
                match rel:
                    case Requires():
                        if rel.target_id not in result.required and rel.target_id not in satisfied:
                            result.required.append(rel.target_id)
                        if rel.target_id not in processed:
                            processed.add(rel.target_id)
                            queue.append(rel.target_id)
                    case Excludes():
                        result.excluded.add(rel.target_id)
                    case Prefers():
                        result.preferences[rel.target_id] = (
                            result.preferences.get(rel.target_id, 0.0) + rel.strength * 0.5
                        )
                    case Enables():
                        result.enabled.add(rel.target_id)
                        result.preferences[rel.target_id] = (
                            result.preferences.get(rel.target_id, 0.0) + rel.strength * 0.25
                        )
                    case Restricts():
                        current = result.restrictions.get(rel.component)
                        result.restrictions[rel.component] = (
                            rel.allowed_ids if current is None else current & rel.allowed_ids
                        )
                    case Modifies():
                        result.modifications.append(rel)
                    case _:
                        assert_never(rel)
        return result

    def validate(self, assigned_ids: Iterable[str]) -> Validation:
        """Check a complete assignment. Preferences never make it invalid."""
        ids = set(assigned_ids)
        violations: list[str] = []
        for object_id in sorted(ids):
            source = self.nodes.get(object_id)
            if source is None:
                continue
            for rel in self.by_source.get(object_id, ()):
                if rel.condition is not None and not rel.condition.evaluate(source):
                    continue
                match rel:
                    case Requires():
                        if rel.target_id not in ids:
                            violations.append(f"{object_id} requires {rel.target_id}")
                    case Excludes():
                        if rel.target_id in ids:
                            violations.append(f"{object_id} excludes {rel.target_id}")
                    case Restricts():
                        for other in sorted(ids):
                            obj = self.nodes.get(other)
                            if obj and obj.component == rel.component and other not in rel.allowed_ids:
                                violations.append(f"{object_id} restricts {rel.component} to exclude {other}")
                    case Prefers() | Enables() | Modifies():
                        pass
                    case _:
                        assert_never(rel)
        return Validation(not violations, violations)


def apply_preferences(scores: dict[str, float], propagation: Propagation) -> dict[str, float]:
    adjusted = dict(scores)
    for object_id, adjustment in propagation.preferences.items():
        adjusted[object_id] = adjusted.get(object_id, 0.0) + adjustment
    for object_id in propagation.excluded:
        adjusted[object_id] = -math.inf
    return adjusted


def apply_restrictions(
    candidates: Iterable[LearningObject], propagation: Propagation
) -> list[LearningObject]:
    kept = []
    for obj in candidates:
        allowed = propagation.restrictions.get(obj.component)
        if allowed is None or obj.id in allowed:
            kept.append(obj)
    return kept
