"""
Streaming OpenStreetMap PBF reader for routing ways.

Reads .osm.pbf files element-by-element using pyosmium and yields Way
objects for every way carrying one of the Configuration's tag keys.
Node coordinates come from pyosmium's node location cache.

Speeds are taken from the maxspeed, maxspeed:forward and
maxspeed:backward tags (km/h, "mph" suffix converted), falling back to
the defaults of the way's TagClass.

Usage:
    from roadgraph.parsers.pbf import parse_ways

    ways, result = parse_ways(
        "illinois-latest.osm.pbf",
        configuration=CAR_CONFIGURATION,
        location_storage="sparse_file_array,/tmp/osm_node_cache.nodecache",
    )
    ways = list(ways)
    print(result.ways_parsed, result.ways_failed)
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from shapely import wkb
from shapely.geometry import LineString, Point

from roadgraph.osm.types import OSM_ELEMENT_TYPES, Configuration, Node, OneWay, TagConfig, Way

logger = logging.getLogger(__name__)

MPH_TO_KMH = 1.609344
SPEED_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(mph|km/h|kmh|kph)?\s*$", re.IGNORECASE)


@dataclass
class ParseResult:
    """Accumulated metadata from a parse run."""

    ways_parsed: int = 0
    ways_unclassified: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ways_failed(self) -> int:
        return len(self.failures)


def parse_speed(value: str | None) -> float | None:
    """Parse a maxspeed tag value into km/h; None when it is not numeric."""
    if not value:
        return None
    match = SPEED_PATTERN.match(value)
    if match is None:
        return None
    speed = float(match.group(1))
    if match.group(2) and match.group(2).lower() == "mph":
        speed *= MPH_TO_KMH
    return speed if speed > 0 else None


def build_way(
    osm_id: int,
    nodes: list[Node],
    tags: dict[str, str],
    configuration: Configuration,
) -> Way | None:
    """
    Build a Way from raw OSM data.

    Returns None when none of the configured tag keys is present. A way
    whose key is configured but whose value is not gets an empty
    TagConfig value.
    """
    tag_config = configuration.match(tags)
    if tag_config is None:
        return None

    if tag_config.is_empty:
        forward = backward = None
        default_forward = default_backward = 50.0
    else:
        tag_class = configuration.tag_class(tag_config)
        default_forward = tag_class.default_forward
        default_backward = tag_class.default_backward
        maxspeed = parse_speed(tags.get("maxspeed"))
        forward = parse_speed(tags.get("maxspeed:forward")) or maxspeed
        backward = parse_speed(tags.get("maxspeed:backward")) or maxspeed

    return Way(
        osm_id=osm_id,
        nodes=tuple(nodes),
        tag_config=tag_config,
        maxspeed_forward=forward or default_forward,
        maxspeed_backward=backward or default_backward,
        one_way=OneWay.from_tags(tags),
        name=tags.get("name"),
    )


def parse_ways(
    filepath: str | Path,
    configuration: Configuration,
    location_storage: str = "flex_mem",
) -> tuple[Iterator[Way], ParseResult]:
    """
    Stream-parse the ways of an OSM PBF file.

    Args:
        filepath:          Path to .osm.pbf file.
        configuration:     Tag classes; ways without a configured key are
                           not yielded.
        location_storage:  pyosmium index type for caching node locations.
                           The default "flex_mem" is good for small-to-medium
                           files. For large files use a disk-backed store,
                           e.g. "sparse_file_array,/tmp/node_cache.nodecache".

    Returns:
        (way_iterator, result): iterate the ways, then inspect result
        for failure details.
    """
    filepath = Path(filepath)
    result = ParseResult()
    return _generate_ways(filepath, configuration, location_storage, result), result


def _generate_ways(
    filepath: Path,
    configuration: Configuration,
    location_storage: str,
    result: ParseResult,
) -> Iterator[Way]:
    import osmium

    # Nodes must be read too so the location cache can see their
    # coordinates, but only way objects are processed.
    fp = osmium.FileProcessor(str(filepath)).with_locations(location_storage)

    for obj in fp:
        if not obj.is_way():
            continue

        try:
            tags = dict(obj.tags)
            nodes = [
                Node(osm_id=n.ref, lon=n.lon, lat=n.lat)
                for n in obj.nodes
                if n.location.valid()
            ]
            if len(nodes) < 2:
                raise ValueError(f"Way has {len(nodes)} valid coordinates, need at least 2")

            way = build_way(obj.id, nodes, tags, configuration)
            if way is None:
                continue
            if way.tag_config.is_empty:
                result.ways_unclassified += 1

            result.ways_parsed += 1
            yield way

        except Exception as e:
            logger.debug("Skipping way %d: %s", obj.id, e)
            result.failures.append({"osm_id": obj.id, "error": str(e)})

    _log_summary(filepath, result)


def _log_summary(filepath: Path, result: ParseResult) -> None:
    logger.info(
        "Parsed %d ways from %s (%d without a configured tag value)",
        result.ways_parsed,
        filepath.name,
        result.ways_unclassified,
    )
    if result.failures:
        logger.warning(
            "Skipped %d ways in %s (first error: %s)",
            result.ways_failed,
            filepath.name,
            result.failures[0]["error"],
        )


# ------------------------------------------------------------------
# Raw element export
# ------------------------------------------------------------------


@dataclass
class ElementParseResult:
    """Accumulated metadata from a raw element parse run."""

    element_type: str
    elements_parsed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def elements_failed(self) -> int:
        return len(self.failures)


def parse_osm_elements(
    filepath: str | Path,
    element_type: str,
    srid: int = 4326,
    batch_size: int = 50_000,
    location_storage: str = "flex_mem",
) -> tuple[Iterator[list[dict[str, Any]]], ElementParseResult]:
    """
    Stream every OSM element of one type as batches of row dicts.

    Rows carry ``osm_id`` and ``tags`` (a JSON object string). Nodes and
    ways add ``the_geom`` as hex EWKB; relations add ``members`` as a
    JSON array of ``{type, ref, role}``. Only tagged nodes are yielded,
    since untagged nodes are pure way geometry.
    """
    if element_type not in OSM_ELEMENT_TYPES:
        raise ValueError(
            f"element_type must be one of {OSM_ELEMENT_TYPES}, got {element_type!r}"
        )
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    filepath = Path(filepath)
    result = ElementParseResult(element_type=element_type)
    generators = {
        "nodes": lambda: _generate_nodes(filepath, srid, batch_size, result),
        "ways": lambda: _generate_raw_ways(filepath, srid, batch_size, location_storage, result),
        "relations": lambda: _generate_relations(filepath, batch_size, result),
    }
    return generators[element_type](), result


def _tags_json(obj) -> str:
    return json.dumps(dict(obj.tags), sort_keys=True)


def _batched(
    rows: Iterator[dict[str, Any]], batch_size: int
) -> Iterator[list[dict[str, Any]]]:
    batch: list[dict[str, Any]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def _generate_nodes(
    filepath: Path, srid: int, batch_size: int, result: ElementParseResult
) -> Iterator[list[dict[str, Any]]]:
    import osmium

    def rows():
        for obj in osmium.FileProcessor(str(filepath), osmium.osm.NODE):
            if len(obj.tags) == 0:
                continue
            try:
                if not obj.location.valid():
                    raise ValueError("Node has no valid location")
                row = {
                    "osm_id": obj.id,
                    "tags": _tags_json(obj),
                    "the_geom": wkb.dumps(
                        Point(obj.location.lon, obj.location.lat), hex=True, srid=srid
                    ),
                }
            except Exception as e:
                logger.debug("Skipping node %d: %s", obj.id, e)
                result.failures.append({"osm_id": obj.id, "error": str(e)})
                continue
            result.elements_parsed += 1
            yield row

    yield from _batched(rows(), batch_size)
    _log_element_summary(filepath, result)


def _generate_raw_ways(
    filepath: Path,
    srid: int,
    batch_size: int,
    location_storage: str,
    result: ElementParseResult,
) -> Iterator[list[dict[str, Any]]]:
    import osmium

    def rows():
        fp = osmium.FileProcessor(str(filepath)).with_locations(location_storage)
        for obj in fp:
            if not obj.is_way():
                continue
            try:
                coords = [(n.lon, n.lat) for n in obj.nodes if n.location.valid()]
                if len(coords) < 2:
                    raise ValueError(f"Way has {len(coords)} valid coordinates, need at least 2")
                row = {
                    "osm_id": obj.id,
                    "tags": _tags_json(obj),
                    "the_geom": wkb.dumps(LineString(coords), hex=True, srid=srid),
                }
            except Exception as e:
                logger.debug("Skipping way %d: %s", obj.id, e)
                result.failures.append({"osm_id": obj.id, "error": str(e)})
                continue
            result.elements_parsed += 1
            yield row

    yield from _batched(rows(), batch_size)
    _log_element_summary(filepath, result)


def _generate_relations(
    filepath: Path, batch_size: int, result: ElementParseResult
) -> Iterator[list[dict[str, Any]]]:
    import osmium

    def rows():
        for obj in osmium.FileProcessor(str(filepath), osmium.osm.RELATION):
            members = [{"type": m.type, "ref": m.ref, "role": m.role} for m in obj.members]
            result.elements_parsed += 1
            yield {
                "osm_id": obj.id,
                "tags": _tags_json(obj),
                "members": json.dumps(members),
            }

    yield from _batched(rows(), batch_size)
    _log_element_summary(filepath, result)


def _log_element_summary(filepath: Path, result: ElementParseResult) -> None:
    logger.info(
        "Parsed %d %s from %s", result.elements_parsed, result.element_type, filepath.name
    )
    if result.failures:
        logger.warning(
            "Skipped %d %s in %s (first error: %s)",
            result.elements_failed,
            result.element_type,
            filepath.name,
            result.failures[0]["error"],
        )
