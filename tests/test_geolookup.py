import json

import pytest

from clickplanet.coordinates import TileCoordinatesMap
from clickplanet.geolookup import (
    COUNTRY_TO_TILES_FILE,
    TILE_TO_COUNTRIES_FILE,
    CountryPolygon,
    CountryTilesMap,
    GeoLookup,
    point_in_polygon,
    uv_to_latlong,
)
from clickplanet.model import TileVertex

FR_RING = [[0.0, 40.0], [10.0, 40.0], [10.0, 50.0], [0.0, 50.0], [0.0, 40.0]]
DE_RING = [[10.0, 50.0], [20.0, 50.0], [20.0, 55.0], [10.0, 55.0], [10.0, 50.0]]


def _feature(code, name, ring):
    return {
        "type": "Feature",
        "properties": {"ISO_A2": code, "ADMIN": name},
        "geometry": {"type": "MultiPolygon", "coordinates": [[ring]]},
    }


GEOJSON = json.dumps(
    {
        "type": "FeatureCollection",
        "features": [
            _feature("FR", "France", FR_RING),
            _feature("DE", "Germany", DE_RING),
            {
                "type": "Feature",
                "properties": {"ISO_A2": "XX"},
                "geometry": {"type": "Point", "coordinates": [5.0, 45.0]},
            },
        ],
    }
)


def _tile_at(index, longitude, latitude):
    return TileVertex.from_components(
        index, 0.0, 0.0, 1.0, longitude / 360.0 + 0.5, latitude / 180.0 + 0.5
    )


@pytest.fixture
def lookup():
    return GeoLookup.from_geojson(GEOJSON)


@pytest.fixture
def tiles():
    return TileCoordinatesMap(
        {
            0: _tile_at(0, 5.0, 45.0),
            1: _tile_at(1, -50.0, 0.0),
            2: _tile_at(2, 15.0, 52.0),
            3: _tile_at(3, 2.0, 42.0),
        }
    )


def test_uv_center_is_origin():
    assert uv_to_latlong(0.5, 0.5) == (0.0, 0.0)


def test_point_in_polygon():
    square = [tuple(p) for p in FR_RING]
    assert point_in_polygon((5.0, 45.0), square)
    assert not point_in_polygon((15.0, 45.0), square)
    assert not point_in_polygon((5.0, 45.0), [])


def test_envelope_and_distance():
    polygon = CountryPolygon("FR", "France", [[tuple(p) for p in FR_RING]])
    assert polygon.envelope() == ((0.0, 40.0), (10.0, 50.0))
    assert polygon.distance_2((5.0, 45.0)) == 0.0
    assert polygon.distance_2((10.0, 50.0)) == 0.0
    assert polygon.distance_2((13.0, 45.0)) < polygon.distance_2((14.0, 45.0))


def test_only_multipolygons_loaded(lookup):
    assert sorted(p.country_code for p in lookup.polygons) == ["DE", "FR"]
    assert {p.name for p in lookup.polygons} == {"France", "Germany"}


def test_find_country(lookup):
    assert lookup.find_country(_tile_at(0, 5.0, 45.0)) == "fr"
    assert lookup.find_country(_tile_at(0, 15.0, 52.0)) == "de"
    assert lookup.find_country(_tile_at(0, -50.0, 0.0)) is None


def test_invalid_geojson_raises():
    with pytest.raises(ValueError):
        GeoLookup.from_geojson("{not json")
    with pytest.raises(ValueError):
        GeoLookup.from_geojson("[1, 2]")


def test_from_file_and_default_location(tmp_path, monkeypatch):
    (tmp_path / "countries.geojson").write_text(GEOJSON, encoding="utf-8")
    from_path = GeoLookup.from_file(tmp_path / "countries.geojson")
    monkeypatch.chdir(tmp_path)
    default = GeoLookup.from_default_location()
    assert from_path.polygons == default.polygons
    assert len(default.polygons) == 2


def test_build(lookup, tiles):
    mapping = CountryTilesMap.build(lookup, tiles)
    assert mapping.get_tiles_for_country("fr") == [0, 3]
    assert mapping.get_tiles_for_country("de") == [2]
    assert mapping.get_tiles_for_country("it") is None
    assert mapping.get_unassigned_tiles() == [1]
    assert mapping.is_unassigned(1)
    assert not mapping.is_unassigned(0)
    assert mapping.get_country_for_tile(2) == "de"
    assert sorted(mapping.get_country_codes()) == ["de", "fr"]
    assert mapping.get_country_tile_count("fr") == 2
    assert mapping.get_country_tile_count("it") == 0
    assert dict(iter(mapping)) == mapping.country_tiles


def test_statistics(lookup, tiles):
    stats = CountryTilesMap.build(lookup, tiles).get_statistics()
    assert stats.total_tiles == len(tiles)
    assert stats.assigned_tiles + stats.unassigned_tiles == stats.total_tiles
    assert stats.country_counts == {"fr": 2, "de": 1}


def test_load_or_build_round_trip(lookup, tiles, tmp_path):
    built = CountryTilesMap.load_or_build(lookup, tiles, tmp_path)
    assert (tmp_path / TILE_TO_COUNTRIES_FILE).exists()
    assert (tmp_path / COUNTRY_TO_TILES_FILE).exists()

    loaded = CountryTilesMap.load_or_build(GeoLookup(), tiles, tmp_path)
    assert loaded.tile_to_country == built.tile_to_country
    assert loaded.country_tiles == built.country_tiles
    assert loaded.unassigned_tiles == built.unassigned_tiles