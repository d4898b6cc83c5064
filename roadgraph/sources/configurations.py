from roadgraph.osm.types import Configuration, TagClass, TagConfig


def _highway(value: str, class_id: int, priority: float, maxspeed: float):
    return TagConfig("highway", value), TagClass(
        class_id=class_id, priority=priority, maxspeed=maxspeed
    )


###############################################################################
#                                  CARS                                       #
###############################################################################

CAR_CONFIGURATION = Configuration(
    dict(
        [
            _highway("road", 100, 1.0, 50),
            _highway("motorway", 101, 1.0, 130),
            _highway("motorway_link", 102, 1.0, 130),
            _highway("motorway_junction", 103, 1.0, 130),
            _highway("trunk", 104, 1.05, 110),
            _highway("trunk_link", 105, 1.05, 110),
            _highway("primary", 106, 1.15, 90),
            _highway("primary_link", 107, 1.15, 90),
            _highway("secondary", 108, 1.5, 90),
            _highway("secondary_link", 124, 1.5, 90),
            _highway("tertiary", 109, 1.75, 90),
            _highway("tertiary_link", 125, 1.75, 90),
            _highway("residential", 110, 2.5, 50),
            _highway("living_street", 111, 3.0, 20),
            _highway("service", 112, 2.5, 50),
            _highway("unclassified", 123, 3.0, 90),
        ]
    )
)


###############################################################################
#                               PEDESTRIANS                                   #
###############################################################################

PEDESTRIAN_CONFIGURATION = Configuration(
    dict(
        [
            _highway("residential", 110, 1.0, 5),
            _highway("living_street", 111, 1.0, 5),
            _highway("service", 112, 1.0, 5),
            _highway("track", 113, 1.0, 5),
            _highway("pedestrian", 114, 1.0, 5),
            _highway("path", 117, 1.0, 5),
            _highway("footway", 119, 1.0, 5),
            _highway("steps", 122, 1.0, 3),
            _highway("unclassified", 123, 1.0, 5),
        ]
    )
)
