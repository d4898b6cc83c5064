"""
Edge splitting contract and implementations.

An EdgeSplitter cuts a Way into the ordered list of sub-segments that
become graph edges. Each segment is a list of at least two nodes; the
last node of a segment is the first node of the next one.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from roadgraph.osm.types import Node, Way


@runtime_checkable
class EdgeSplitter(Protocol):
    def split(self, way: Way) -> list[list[Node]]: ...


class WholeWaySplitter:
    """Keeps every way as a single segment."""

    def split(self, way: Way) -> list[list[Node]]:
        if len(way.nodes) < 2:
            return []
        return [list(way.nodes)]


class NodeUsageSplitter:
    """
    Splits ways at every interior node that is used more than once.

    A node counts once per occurrence in any way, so shared intersection
    nodes and self-touching points both become segment boundaries.
    """

    def __init__(self, usage: Counter[int]) -> None:
        self.usage = usage

    @classmethod
    def from_ways(cls, ways: Iterable[Way]) -> "NodeUsageSplitter":
        usage: Counter[int] = Counter()
        for way in ways:
            usage.update(node.osm_id for node in way.nodes)
        return cls(usage)

    def split(self, way: Way) -> list[list[Node]]:
        nodes = list(way.nodes)
        if len(nodes) < 2:
            return []

        segments: list[list[Node]] = []
        start = 0
        last = len(nodes) - 1
        for i in range(1, last + 1):
            if i == last or self.usage[nodes[i].osm_id] > 1:
                segments.append(nodes[start : i + 1])
                start = i
        return segments
