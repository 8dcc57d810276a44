import json

import numpy as np
import pytest
import tifffile

from conftest import AF647_CENTRES, DAPI_CENTRES, HEIGHT, WIDTH, draw_blobs, draw_labels, rect
from hemicount.annotations import Region
from hemicount.detect_cells import (
    DEFAULT_DETECTION_PARAMS, detect_cells, detect_from_labels, parse_detection_params,
    run_detection, segment_nuclei,
)
from hemicount.image_io import FluorescenceImage

ROOT = Region("root", [[rect(5, 5, 195, 115)]])


@pytest.fixture
def image(brain_stack):
    return FluorescenceImage(brain_stack, ["AF647", "DAPI"], pixel_size=1.0, path="brain_01.tif")


def test_parse_params_from_json_string():
    p = parse_detection_params(json.dumps({"detectionImage": "DAPI", "threshold": 90}))
    assert p["threshold"] == 90
    assert p["requestedPixelSizeMicrons"] == DEFAULT_DETECTION_PARAMS["DAPI"]["requestedPixelSizeMicrons"]


def test_parse_params_channel_default():
    assert parse_detection_params(None, channel="AF647") == DEFAULT_DETECTION_PARAMS["AF647"]


@pytest.mark.parametrize("bad", [
    '{"detectionImage": "AF647", "thresh": 1}',
    "{not json",
    "[1, 2]",
    {"threshold": 100},
    {"detectionImage": "AF647", "minAreaMicrons": 50, "maxAreaMicrons": 10},
])
def test_parse_params_rejects(bad):
    with pytest.raises(ValueError):
        parse_detection_params(bad)


def test_segment_area_limits():
    img = np.zeros((80, 80), dtype=np.float32)
    img[:] = draw_blobs([(20, 20)], radius=2, shape=(80, 80))
    img += draw_blobs([(60, 60)], radius=6, shape=(80, 80))
    params = parse_detection_params({
        "detectionImage": "AF647", "minAreaMicrons": 30, "maxAreaMicrons": 200,
        "backgroundRadiusMicrons": 0, "sigmaMicrons": 0,
    })
    labels = segment_nuclei(img, 1.0, params)
    assert labels.max() == 1
    assert labels[60, 60] == 1
    assert labels[20, 20] == 0


def test_segment_splits_nothing_in_empty_image():
    params = parse_detection_params(None, channel="AF647")
    labels = segment_nuclei(np.zeros((40, 40), dtype=np.float32), 1.0, params)
    assert labels.max() == 0


def test_detect_af647_inside_root(image):
    df = detect_cells(image, ROOT, DEFAULT_DETECTION_PARAMS["AF647"])
    assert len(df) == len(AF647_CENTRES)
    assert set(df["Channel"]) == {"AF647"}
    assert df["Cell"].tolist() == [1, 2, 3]
    for x, y in AF647_CENTRES:
        d = np.hypot(df["X"] - (x + 0.5), df["Y"] - (y + 0.5))
        assert d.min() < 1.0
    assert (df["AF647: Mean"] > 300).all()
    assert (df["DAPI: Mean"] < 100).all()
    assert "Nucleus Area" in df.columns


def test_detect_dapi_at_coarser_resolution(image):
    df = detect_cells(image, ROOT, DEFAULT_DETECTION_PARAMS["DAPI"])
    assert len(df) == len(DAPI_CENTRES)
    for x, y in DAPI_CENTRES:
        d = np.hypot(df["X"] - (x + 0.5), df["Y"] - (y + 0.5))
        assert d.min() < 2.5


def test_detect_drops_cells_outside_region(image):
    left_only = Region("left", [[rect(5, 5, 100, 115)]])
    df = detect_cells(image, left_only, DEFAULT_DETECTION_PARAMS["AF647"])
    assert len(df) == 1
    assert df["X"].iloc[0] < 100


def test_detect_missing_channel(image):
    with pytest.raises(ValueError, match="not found"):
        detect_cells(image, ROOT, {"detectionImage": "GFP"})


def test_cell_expansion_grows_area(image):
    base = detect_cells(image, ROOT, DEFAULT_DETECTION_PARAMS["AF647"])
    grown = detect_cells(image, ROOT, dict(DEFAULT_DETECTION_PARAMS["AF647"], cellExpansionMicrons=2.0))
    assert (grown["Area"].values > base["Area"].values).all()
    assert np.allclose(grown["Nucleus Area"], base["Nucleus Area"])


def test_detect_from_labels(tmp_path, image):
    path = tmp_path / "labels.tif"
    tifffile.imwrite(str(path), draw_labels(DAPI_CENTRES))
    df = detect_from_labels(image, ROOT, path, "DAPI")
    assert len(df) == len(DAPI_CENTRES)
    first = df.sort_values("X").iloc[0]
    assert first["X"] == pytest.approx(40.5)
    assert first["Y"] == pytest.approx(90.5)
    assert first["DAPI: Mean"] == pytest.approx(1000.0)


def test_detect_from_labels_shape_mismatch(tmp_path, image):
    path = tmp_path / "labels.tif"
    tifffile.imwrite(str(path), np.zeros((HEIGHT // 2, WIDTH), dtype=np.uint16))
    with pytest.raises(ValueError, match="expected"):
        detect_from_labels(image, ROOT, path, "DAPI")


def test_run_detection_backends(tmp_path, image):
    with pytest.raises(ValueError, match="needs a label TIFF"):
        run_detection(image, ROOT, {"detectionImage": "AF647"}, backend="labels")
    with pytest.raises(ValueError, match="Unknown detection backend"):
        run_detection(image, ROOT, {"detectionImage": "AF647"}, backend="cellpose")


def test_median_filter_removes_isolated_pixels():
    img = draw_blobs([(30, 30)], radius=6, shape=(60, 60)).astype(np.float32)
    for y, x in ((5, 5), (5, 50), (50, 8)):
        img[y, x] = 5000
    params = {
        "detectionImage": "AF647", "minAreaMicrons": 1, "maxAreaMicrons": 400,
        "backgroundRadiusMicrons": 0, "sigmaMicrons": 0,
        "watershedPostProcess": False, "smoothBoundaries": False,
    }
    assert segment_nuclei(img, 1.0, parse_detection_params(params)).max() == 4
    filtered = segment_nuclei(img, 1.0, parse_detection_params(dict(params, medianRadiusMicrons=2)))
    assert filtered.max() == 1
    assert filtered[30, 30] == 1
