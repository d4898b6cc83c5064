"""
Staging rows built from Ways.

One row per segment returned by the EdgeSplitter, keyed by the column
names in roadgraph.db.tables.STAGED_COLUMNS. Geometry is EWKB hex.

The staged ``cost``/``reverse_cost`` carry the segment length (in
degrees) with the direction convention used by the routing engine: a
negative value means the segment cannot be traversed that way.
"""

from __future__ import annotations

from typing import Any

from shapely import wkb as shapely_wkb
from shapely.geometry import LineString

from roadgraph.ingest.exceptions import MalformedTagError
from roadgraph.osm.splitter import EdgeSplitter
from roadgraph.osm.types import Configuration, Node, Way


def directional_costs(way: Way, length: float) -> tuple[float, float]:
    """(cost, reverse_cost) for a segment of ``length``."""
    cost = -length if way.is_reversed else length
    reverse_cost = -length if way.is_oneway else length
    return cost, reverse_cost


def way_fields(way: Way, configuration: Configuration) -> dict[str, Any]:
    if way.tag_config.is_empty:
        raise MalformedTagError(f"Way {way.osm_id} has an empty tag key or value")
    if way.tag_config not in configuration:
        raise MalformedTagError(
            f"Way {way.osm_id} tag {way.tag_config} is not in the configuration"
        )

    return {
        "class_id": configuration.class_id(way.tag_config),
        "osm_id": way.osm_id,
        "maxspeed_forward": way.maxspeed_forward,
        "maxspeed_backward": way.maxspeed_backward,
        "one_way": int(way.one_way),
        "priority": configuration.priority(way.tag_config),
        "name": way.name,
    }


def segment_fields(way: Way, segment: list[Node], srid: int) -> dict[str, Any]:
    first, last = segment[0], segment[-1]
    line = LineString([(n.lon, n.lat) for n in segment])
    length = line.length
    cost, reverse_cost = directional_costs(way, length)

    return {
        "length": length,
        "x1": first.lon,
        "y1": first.lat,
        "x2": last.lon,
        "y2": last.lat,
        "source_osm": first.osm_id,
        "target_osm": last.osm_id,
        "the_geom": shapely_wkb.dumps(line, hex=True, srid=srid),
        "cost": cost,
        "reverse_cost": reverse_cost,
    }


def build_way_rows(
    way: Way,
    configuration: Configuration,
    splitter: EdgeSplitter,
    srid: int = 4326,
) -> list[dict[str, Any]]:
    """
    Rows for every segment of a way.

    Raises MalformedTagError when the way cannot be classified.
    """
    common = way_fields(way, configuration)
    return [
        {**common, **segment_fields(way, segment, srid)}
        for segment in splitter.split(way)
    ]
