from conftest import rect
from hemicount.annotations import Region
from hemicount.ui.napari_review import region_edge_colors, region_shapes


def test_root_outline_follows_root_name():
    names = ["Brain", "CA1", "root"]
    assert region_edge_colors(names, root_name="brain") == ["white", "lime", "lime"]
    assert region_edge_colors(names) == ["lime", "lime", "white"]


def test_region_shapes_are_row_col():
    shapes, names = region_shapes([Region("CA1", [[rect(1, 2, 3, 4)]])])
    assert names == ["CA1"]
    assert shapes[0][0].tolist() == [2.0, 1.0]
