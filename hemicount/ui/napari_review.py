"""
Quick visual quality control (QC) viewer using napari.

Lets you check the hemisphere pipeline's inputs and outputs side by side.

Usage:
  python -m hemicount.ui.napari_review --input data/brain_01.tif \
      --annotations data/brain_01.geojson \
      --detections ~/Desktop/brain_01_detections.csv

It loads and overlays:
  every channel of the TIFF (AF647 red, DAPI blue, others gray)
  annotation outlines (root in white)
  detected cell centroids per channel
"""


import argparse
from pathlib import Path

import numpy as np
import pandas as pd

from hemicount.annotations import load_annotations
from hemicount.hemisphere_pipeline import default_annotations_path
from hemicount.image_io import load_fluorescence_image

COLORMAPS = {"AF647": "red", "DAPI": "blue"}
POINT_COLORS = {"AF647": "red", "DAPI": "cyan"}


def region_shapes(regions):
    """Napari shape data: one (N, 2) (row, col) array per exterior ring, plus the region names."""
    shapes, names = [], []
    for region in regions:
        for rings in region.polygons:
            shapes.append(rings[0][:, ::-1])
            names.append(region.name)
    return shapes, names


def region_edge_colors(names, root_name="root"):
    """Root outline in white, every other region in lime."""
    return ["white" if n.lower() == root_name.lower() else "lime" for n in names]


def review(input_path, annotations_path=None, detections_csv=None, channels=None, root_name="root"):
    try:  # napari is optional
        import napari
    except ImportError:
        print("[napari] not installed. pip install napari[all]  (optional)")
        return

    image = load_fluorescence_image(input_path, channels=channels)
    v = napari.Viewer()
    for i, name in enumerate(image.channel_names):
        v.add_image(image.data[i], name=name, colormap=COLORMAPS.get(name, "gray"), blending="additive")

    ann = Path(annotations_path) if annotations_path else default_annotations_path(image.path)
    if ann.exists():
        shapes, names = region_shapes(load_annotations(ann))
        if shapes:
            edge = region_edge_colors(names, root_name)
            v.add_shapes(shapes, shape_type="polygon", name="Regions", edge_color=edge,
                         face_color="transparent", edge_width=2, properties={"name": np.array(names)})
    else:
        print(f"[napari] no annotations at {ann}")

    if detections_csv and Path(detections_csv).exists():
        det = pd.read_csv(detections_csv)
        for ch, sub in det.groupby("Channel"):
            v.add_points(sub[["Y", "X"]].values, name=f"{ch} cells", size=6,
                         face_color=POINT_COLORS.get(ch, "yellow"))

    napari.run()


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--input", required=True)
    ap.add_argument("--annotations", default=None)
    ap.add_argument("--detections", default=None)
    ap.add_argument("--channels", nargs="*", default=None)
    ap.add_argument("--root_name", default="root")
    args = ap.parse_args()
    review(args.input, args.annotations, args.detections, channels=args.channels, root_name=args.root_name)


if __name__ == "__main__":
    main()
