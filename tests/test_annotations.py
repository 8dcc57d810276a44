import json

import numpy as np
import pytest

from conftest import feature, rect
from hemicount.annotations import (
    Region, RootAnnotationNotFound, assign_hemispheres, compute_midline,
    determine_hemisphere, find_root, load_annotations, parse_annotations, require_root,
)


def test_parse_skips_detections_and_keeps_order(brain_doc):
    regions = parse_annotations(brain_doc)
    assert [r.name for r in regions] == ["Root", "CA1", "Cortex, layer 1"]


def test_unnamed_annotation_uses_classification_then_placeholder():
    doc = [
        {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [rect(0, 0, 10, 10)]},
         "properties": {"classification": {"name": "Thalamus"}}},
        {"type": "Feature", "geometry": {"type": "Polygon", "coordinates": [rect(0, 0, 10, 10)]},
         "properties": {}},
    ]
    assert [r.name for r in parse_annotations(doc)] == ["Thalamus", "Unnamed"]


def test_unsupported_geojson_raises():
    with pytest.raises(ValueError):
        parse_annotations({"type": "Point", "coordinates": [1, 2]})


def test_load_annotations_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_annotations(tmp_path / "nope.geojson")


def test_load_annotations_multipolygon(tmp_path):
    doc = {"type": "FeatureCollection", "features": [{
        "type": "Feature",
        "geometry": {"type": "MultiPolygon", "coordinates": [[rect(0, 0, 10, 10)], [rect(20, 0, 30, 10)]]},
        "properties": {"name": "Striatum"},
    }]}
    path = tmp_path / "a.geojson"
    path.write_text(json.dumps(doc), encoding="utf-8")
    (region,) = load_annotations(path)
    assert len(region.polygons) == 2
    assert region.bounds == (0.0, 0.0, 30.0, 10.0)


def test_find_root_ignores_case(brain_doc):
    regions = parse_annotations(brain_doc)
    assert find_root(regions).name == "Root"
    assert find_root(regions, "ROOT") is regions[0]
    assert find_root(regions, "brainstem") is None


def test_require_root_message(brain_doc):
    regions = parse_annotations(brain_doc)[1:]
    with pytest.raises(RootAnnotationNotFound, match="Root annotation named 'root' not found."):
        require_root(regions)


def test_midline_excludes_root():
    root = Region("root", [[rect(0, 0, 1000, 500)]])
    a = Region("A", [[rect(100, 10, 200, 20)]])
    b = Region("B", [[rect(300, 10, 700, 20)]])
    assert compute_midline([root, a, b], root) == 400.0


def test_midline_falls_back_to_root_bounds():
    root = Region("root", [[rect(10, 0, 90, 50)]])
    assert compute_midline([root], root) == 50.0


def test_hemisphere_on_midline_is_right():
    assert determine_hemisphere(99.99, 100.0) == "Left"
    assert determine_hemisphere(100.0, 100.0) == "Right"
    assert list(assign_hemispheres([10, 100, 150], 100.0)) == ["Left", "Right", "Right"]


def test_contains_respects_holes():
    region = Region("ring", [[rect(0, 0, 100, 100), rect(40, 40, 60, 60)]])
    inside = region.contains([10, 50, 150], [10, 50, 50])
    assert inside.tolist() == [True, False, False]


def test_mask_counts_pixel_centres():
    region = Region("sq", [[rect(20, 20, 180, 60)]])
    x0, y0, x1, y1 = region.pixel_window(200, 120)
    assert (x0, y0, x1, y1) == (20, 20, 180, 60)
    assert region.mask(x0, y0, x1 - x0, y1 - y0).sum() == 160 * 40


def test_split_halves_sum_to_whole():
    region = Region("CA1", [[rect(20, 20, 180, 60)]])
    halves = region.split_at(100.0, 200, 120)
    left, _ = halves["Left"]
    right, window = halves["Right"]
    assert window == (20, 20)
    assert left.sum() == 80 * 40
    assert right.sum() == 80 * 40
    assert not np.any(left & right)


def test_split_region_entirely_on_one_side():
    region = Region("lateral", [[rect(120, 0, 150, 10)]])
    halves = region.split_at(100.0, 200, 120)
    assert halves["Left"][0].sum() == 0
    assert halves["Right"][0].sum() == 30 * 10


def test_window_clipped_to_image():
    region = Region("edge", [[rect(-10, -10, 30, 30)]])
    assert region.pixel_window(20, 20) == (0, 0, 20, 20)


def test_region_needs_polygons():
    with pytest.raises(ValueError):
        Region("empty", [])


def test_feature_helper_roundtrip():
    (region,) = parse_annotations(feature("CA3", [rect(1, 2, 3, 4)]))
    assert region.name == "CA3"
