import json

import numpy as np
import pytest
from skimage.draw import disk

from hemicount.image_io import save_fluorescence_tiff

WIDTH, HEIGHT = 200, 120
RADIUS = 5

# (x, y) centres in full-resolution pixels
AF647_CENTRES = [(40, 40), (140, 40), (170, 40)]
DAPI_CENTRES = [(70, 40), (40, 90), (60, 90), (150, 90)]


def rect(x0, y0, x1, y1):
    return [[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]


def feature(name, rings, object_type="annotation"):
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": rings},
        "properties": {"objectType": object_type, "name": name},
    }


def draw_blobs(centres, value=1000, shape=(HEIGHT, WIDTH), radius=RADIUS):
    img = np.zeros(shape, dtype=np.uint16)
    for x, y in centres:
        rr, cc = disk((y, x), radius, shape=shape)
        img[rr, cc] = value
    return img


def draw_labels(centres, shape=(HEIGHT, WIDTH), radius=RADIUS):
    lab = np.zeros(shape, dtype=np.uint16)
    for i, (x, y) in enumerate(centres, start=1):
        rr, cc = disk((y, x), radius, shape=shape)
        lab[rr, cc] = i
    return lab


@pytest.fixture
def brain_doc():
    """root + two regions straddling the midline at x=100."""
    return {
        "type": "FeatureCollection",
        "features": [
            feature("Root", [rect(5, 5, 195, 115)]),
            feature("CA1", [rect(20, 20, 180, 60)]),
            feature("Cortex, layer 1", [rect(20, 70, 180, 110)]),
            feature("cell", [rect(0, 0, 4, 4)], object_type="detection"),
        ],
    }


@pytest.fixture
def brain_stack():
    return np.stack([draw_blobs(AF647_CENTRES), draw_blobs(DAPI_CENTRES)])


@pytest.fixture
def brain_files(tmp_path, brain_doc, brain_stack):
    """brain_01.tif (AF647, DAPI at 1 um/px) with brain_01.geojson next to it."""
    tif = save_fluorescence_tiff(tmp_path / "brain_01.tif", brain_stack, ["AF647", "DAPI"], 1.0)
    ann = tmp_path / "brain_01.geojson"
    ann.write_text(json.dumps(brain_doc), encoding="utf-8")
    return tif, ann
