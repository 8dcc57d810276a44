"""
StarDist Segmentation
---------------------
Segments nuclei in one named channel of a fluorescence TIFF with a pretrained
StarDist 2D model. Used two ways:

- as the 'stardist' detection backend of the hemisphere pipeline
  (detect_cells_stardist), restricted to the root annotation;
- as a script that writes a full-resolution label TIFF which the 'labels'
  backend can reuse without re-running the network.

Example:
python -m hemicount.make_stardist_labels \
    --input "data/brain_01.tif" \
    --output "outputs/brain_01_DAPI_stardist_labels.tif" \
    --channel DAPI --channels AF647 DAPI --n_tiles 2,2

StarDist/TensorFlow are an optional extra: pip install "hemicount[stardist]".
"""

import os
# Force CPU and quiet logs BEFORE TensorFlow loads
os.environ.setdefault("CUDA_VISIBLE_DEVICES", "-1")  # no GPU
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")   # 0=all, 1=info, 2=warn, 3=error

import argparse
import numpy as np
import tifffile as tiff

from hemicount.annotations import load_annotations, require_root
from hemicount.detect_cells import measure_labels, restrict_to_region
from hemicount.image_io import load_fluorescence_image

_MODELS = {}

# ----- helpers -----

def normalize_025_985(img):
    """Robust percentile normalization to [0,1]."""
    img = img.astype(np.float32)
    p2, p985 = np.percentile(img, (2.0, 98.5))
    if p985 > p2:
        img = (img - p2) / (p985 - p2)
    return np.clip(img, 0, 1)


def parse_n_tiles(value):
    try:
        n_tiles = tuple(int(v) for v in str(value).split(","))
        if len(n_tiles) != 2 or any(v <= 0 for v in n_tiles):
            raise ValueError
    except ValueError:
        raise ValueError(f"Invalid n_tiles {value!r}. Use e.g. '2,2' or '3,3'.")
    return n_tiles


def _load_model(model_name):
    # Downloaded on first use, then cached per process
    if model_name not in _MODELS:
        from stardist.models import StarDist2D
        _MODELS[model_name] = StarDist2D.from_pretrained(model_name)
    return _MODELS[model_name]


def predict_labels(img2d, prob_thresh=0.48, nms_thresh=0.30, n_tiles="1,1", model_name="2D_versatile_fluo"):
    """Normalise a 2D image and return StarDist instance labels (uint16)."""
    model = _load_model(model_name)
    # Tiling reduces peak RAM on whole sections
    labels, _ = model.predict_instances(
        normalize_025_985(img2d),
        n_tiles=parse_n_tiles(n_tiles),
        prob_thresh=prob_thresh,
        nms_thresh=nms_thresh,
    )
    return labels.astype(np.uint16)


def detect_cells_stardist(image, region, channel, prob_thresh=0.48, nms_thresh=0.30,
                          n_tiles="1,1", model_name="2D_versatile_fluo"):
    """StarDist detections for `channel` inside `region`, in the shared detection table format."""
    if image.channel_index(channel) is None:
        raise ValueError(f"Detection channel '{channel}' not found. Available: {image.channel_names}")
    x0, y0, x1, y1 = region.pixel_window(image.width, image.height)
    crop = image.channel(channel)[y0:y1, x0:x1]
    inside = region.mask(x0, y0, x1 - x0, y1 - y0)
    labels = predict_labels(crop, prob_thresh, nms_thresh, n_tiles, model_name).astype(np.int32)
    labels[~inside] = 0
    df = measure_labels(labels, image, (x0, y0), (1.0, 1.0), channel)
    df = restrict_to_region(df, region)
    print(f"[detect] {channel}: {len(df)} cell(s) with StarDist ({model_name})")
    return df

# ----- main -----

def main():
    ap = argparse.ArgumentParser(description="Write a StarDist label TIFF for one channel.")
    ap.add_argument("--input", required=True, help="Path to input .tif")
    ap.add_argument("--output", required=True, help="Path to write *_stardist_labels.tif")
    ap.add_argument("--channel", required=True, help="Channel name to segment, e.g. DAPI")
    ap.add_argument("--channels", nargs="*", default=None, help="Channel names in acquisition order")
    ap.add_argument("--annotations", default=None, help="QuPath GeoJSON; if given, only segment inside root")
    ap.add_argument("--root_name", default="root")
    ap.add_argument("--prob_thresh", type=float, default=0.48, help="Probability threshold")
    ap.add_argument("--nms_thresh", type=float, default=0.30, help="NMS threshold")
    ap.add_argument("--n_tiles", default="2,2", help="Tiling as rows,cols (e.g. 2,2 or 3,3)")
    args = ap.parse_args()

    try:
        parse_n_tiles(args.n_tiles)
    except ValueError as e:
        raise SystemExit(str(e))

    image = load_fluorescence_image(args.input, channels=args.channels)
    if image.channel_index(args.channel) is None:
        raise SystemExit(f"Channel '{args.channel}' not in {image.channel_names}")

    full = np.zeros((image.height, image.width), dtype=np.uint16)
    if args.annotations:
        root = require_root(load_annotations(args.annotations), args.root_name)
        x0, y0, x1, y1 = root.pixel_window(image.width, image.height)
        window = predict_labels(image.channel(args.channel)[y0:y1, x0:x1],
                                args.prob_thresh, args.nms_thresh, args.n_tiles)
        window[~root.mask(x0, y0, x1 - x0, y1 - y0)] = 0
        full[y0:y1, x0:x1] = window
    else:
        full[:] = predict_labels(image.channel(args.channel), args.prob_thresh, args.nms_thresh, args.n_tiles)

    tiff.imwrite(args.output, full)
    print(f"[saved] {args.output}")


if __name__ == "__main__":
    main()
