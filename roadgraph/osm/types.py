from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

# Raw element kinds exported to osm_nodes, osm_ways and osm_relations.
OSM_ELEMENT_TYPES: tuple[str, ...] = ("nodes", "ways", "relations")


class OneWay(IntEnum):
    """Direction restriction of a way, in the encoding stored in ways.one_way."""

    UNKNOWN = 0
    YES = 1
    NO = 2
    REVERSIBLE = 3
    REVERSED = -1

    @classmethod
    def from_tags(cls, tags: dict[str, str]) -> "OneWay":
        value = tags.get("oneway", "").strip().lower()
        if value in ("yes", "true", "1"):
            return cls.YES
        if value in ("-1", "reverse"):
            return cls.REVERSED
        if value in ("no", "false", "0"):
            return cls.NO
        if value == "reversible":
            return cls.REVERSIBLE
        if tags.get("junction") == "roundabout":
            return cls.YES
        return cls.UNKNOWN


@dataclass(frozen=True)
class Node:
    osm_id: int
    lon: float
    lat: float


@dataclass(frozen=True)
class TagConfig:
    """The (key, value) tag pair that classifies a way, e.g. highway=primary."""

    key: str
    value: str

    @property
    def is_empty(self) -> bool:
        return not self.key or not self.value

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class TagClass:
    """Routing class assigned to a TagConfig."""

    class_id: int
    priority: float = 1.0
    maxspeed: float = 50.0
    maxspeed_forward: float | None = None
    maxspeed_backward: float | None = None

    @property
    def default_forward(self) -> float:
        return self.maxspeed_forward or self.maxspeed

    @property
    def default_backward(self) -> float:
        return self.maxspeed_backward or self.maxspeed


@dataclass(frozen=True)
class Way:
    """
    A tagged road geometry before splitting.

    Speeds are in km/h. ``nodes`` is the ordered node sequence of the way.
    """

    osm_id: int
    nodes: tuple[Node, ...]
    tag_config: TagConfig
    maxspeed_forward: float
    maxspeed_backward: float
    one_way: OneWay = OneWay.UNKNOWN
    name: str | None = None

    @property
    def is_oneway(self) -> bool:
        return self.one_way == OneWay.YES

    @property
    def is_reversed(self) -> bool:
        return self.one_way == OneWay.REVERSED


@dataclass
class Configuration:
    """
    Mapping from TagConfig to the TagClass used for routing.

    Tag keys are matched in the order they were first configured.
    """

    classes: dict[TagConfig, TagClass] = field(default_factory=dict)

    def __post_init__(self):
        seen: dict[int, TagConfig] = {}
        for tag, tag_class in self.classes.items():
            if tag_class.class_id in seen:
                raise ValueError(
                    f"class_id {tag_class.class_id} used by both "
                    f"{seen[tag_class.class_id]} and {tag}"
                )
            seen[tag_class.class_id] = tag

    def __contains__(self, tag: TagConfig) -> bool:
        return tag in self.classes

    def __len__(self) -> int:
        return len(self.classes)

    @property
    def keys(self) -> list[str]:
        return list(dict.fromkeys(tag.key for tag in self.classes))

    def tag_class(self, tag: TagConfig) -> TagClass:
        return self.classes[tag]

    def class_id(self, tag: TagConfig) -> int:
        return self.classes[tag].class_id

    def priority(self, tag: TagConfig) -> float:
        return self.classes[tag].priority

    def match(self, tags: dict[str, str]) -> TagConfig | None:
        """
        Return the TagConfig classifying a tag dict.

        None when no configured key is present. When a configured key is
        present but its value is not configured, the TagConfig has an
        empty value so the way is recognised as unclassifiable.
        """
        for key in self.keys:
            if key not in tags:
                continue
            candidate = TagConfig(key, tags[key])
            if candidate in self.classes:
                return candidate
            return TagConfig(key, "")
        return None

    def to_rows(self) -> list[dict[str, Any]]:
        """Rows for the configuration table."""
        return [
            {
                "class_id": tag_class.class_id,
                "tag_key": tag.key,
                "tag_value": tag.value,
                "priority": tag_class.priority,
                "maxspeed": tag_class.maxspeed,
                "maxspeed_forward": tag_class.maxspeed_forward,
                "maxspeed_backward": tag_class.maxspeed_backward,
            }
            for tag, tag_class in self.classes.items()
        ]
