"""
Hemisphere cell-count + intensity pipeline (AF647/DAPI)

What this does (high level):
- Loads a multi-channel fluorescence TIFF and the QuPath/ABBA GeoJSON
  annotations exported for it.
- Finds the 'root' annotation and computes the brain midline from the
  bounding box of all other annotations.
- Detects cells inside root, separately for AF647 and DAPI (watershed by
  default; precomputed labels or StarDist optional).
- For every other annotation, splits it at the midline and records per
  hemisphere: AF647/DAPI counts, fractions, AF647 cell area, region area and
  mean AF647 intensity.
- Writes <image>_cellcount_intensity.csv (default: ~/Desktop).
- (Optionally) writes the per-cell table, a QC overlay and opens a napari review.

Inputs can come from CLI flags or a YAML config.
CLI takes precedence over config; sensible defaults are provided.
"""

import argparse
from pathlib import Path

import pandas as pd
import yaml

from hemicount.annotations import (
    RootAnnotationNotFound, compute_midline, load_annotations, require_root,
)
from hemicount.detect_cells import DEFAULT_DETECTION_PARAMS, parse_detection_params, run_detection
from hemicount.image_io import load_fluorescence_image, resolve_input_path
from hemicount.region_summary import (
    assign_detections_to_regions, build_summary_table, make_overlay_png,
    summarize_regions, write_summary_csv,
)

MARKER_CHANNEL = "AF647"
NUCLEAR_CHANNEL = "DAPI"
OUTPUT_SUFFIX = "_cellcount_intensity.csv"

DEFAULTS = {
    "annotations_path": None,
    "output_dir": None,            # None -> ~/Desktop
    "output_name": None,           # None -> image file stem
    "channels": None,              # None -> from TIFF metadata
    "pixel_size_microns": None,    # None -> from TIFF metadata, else 1.0
    "root_name": "root",
    "intensity_channel": MARKER_CHANNEL,
    "backend": "watershed",
    "detection": {},
    "labels": {},
    "stardist": {},
    "write_detections": True,
    "make_overlay": False,
    "review": False,
}


# -------- CLI / config --------
def load_config(path: str | None):
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def default_output_dir() -> Path:
    return Path.home() / "Desktop"


def default_annotations_path(image_path) -> Path:
    """<image stem>.geojson next to the image."""
    p = Path(image_path)
    return p.with_name(p.stem + ".geojson")


def build_parser():
    ap = argparse.ArgumentParser(description="Per-hemisphere AF647/DAPI cell counts and intensity per region.")
    ap.add_argument("--config", type=str, required=False, help="YAML config file")
    ap.add_argument("--input_path", type=str, required=False, help="TIFF path (overrides config)")
    ap.add_argument("--annotations_path", type=str, required=False,
                    help="QuPath GeoJSON export (default: <image stem>.geojson next to the image)")
    ap.add_argument("--output_dir", type=str, required=False, help="Where the CSV goes (default: ~/Desktop)")
    ap.add_argument("--channels", nargs="*", help="Channel names in acquisition order, e.g. DAPI AF647")
    ap.add_argument("--pixel_size", type=float, default=None, help="Microns per pixel (overrides TIFF metadata)")
    ap.add_argument("--root_name", type=str, default=None, help="Name of the root annotation (case-insensitive)")
    ap.add_argument("--backend", choices=["watershed", "labels", "stardist"], default=None,
                    help="Cell detection backend")
    ap.add_argument("--labels_af647", type=str, default=None, help="Label TIFF for AF647 (backend=labels)")
    ap.add_argument("--labels_dapi", type=str, default=None, help="Label TIFF for DAPI (backend=labels)")
    ap.add_argument("--af647_params", type=str, default=None, help="AF647 detection parameters as JSON")
    ap.add_argument("--dapi_params", type=str, default=None, help="DAPI detection parameters as JSON")
    ap.add_argument("--no_detections", action="store_true", help="Do not write the per-cell detections CSV")
    ap.add_argument("--overlay", action="store_true", help="Write a QC overlay PNG")
    ap.add_argument("--review", action="store_true",
                    help="Open Napari-based review UI after processing (if installed).")
    return ap


def parse_args(argv=None):
    return build_parser().parse_args(argv)


def resolve_settings(args, cfg: dict) -> dict:
    """Merge parameters with precedence: CLI > config > defaults."""
    s = dict(DEFAULTS)
    s.update({k: v for k, v in (cfg or {}).items() if v is not None})
    s["input_path"] = args.input_path or s.get("input_path")

    if args.annotations_path:
        s["annotations_path"] = args.annotations_path
    if args.output_dir:
        s["output_dir"] = args.output_dir
    if args.channels:
        s["channels"] = args.channels
    if args.pixel_size is not None:
        s["pixel_size_microns"] = args.pixel_size
    if args.root_name:
        s["root_name"] = args.root_name
    if args.backend:
        s["backend"] = args.backend
    if args.no_detections:
        s["write_detections"] = False
    if args.overlay:
        s["make_overlay"] = True
    if args.review:
        s["review"] = True

    detection = dict(s.get("detection") or {})
    if args.af647_params:
        detection[MARKER_CHANNEL] = args.af647_params  # JSON, parsed with the other params
    if args.dapi_params:
        detection[NUCLEAR_CHANNEL] = args.dapi_params
    s["detection"] = detection

    labels = dict(s.get("labels") or {})
    if args.labels_af647:
        labels[MARKER_CHANNEL] = args.labels_af647
    if args.labels_dapi:
        labels[NUCLEAR_CHANNEL] = args.labels_dapi
    s["labels"] = labels
    return s


def detection_params_for(settings: dict, channel: str) -> dict:
    user = (settings.get("detection") or {}).get(channel)
    if user is None:
        return dict(DEFAULT_DETECTION_PARAMS[channel])
    return parse_detection_params(user, channel=channel)


# -------- main processing --------
def run_pipeline(settings: dict) -> dict:
    """
    Run the whole per-image analysis. Returns a dict with the midline, cell
    counts and the paths written.
    Raises RootAnnotationNotFound if the root annotation is missing.
    """
    input_path = settings.get("input_path")
    if not input_path:
        raise ValueError("No input image given ('input_path').")

    image = load_fluorescence_image(
        input_path,
        channels=settings.get("channels"),
        pixel_size_microns=settings.get("pixel_size_microns"),
    )

    ann_path = settings.get("annotations_path") or default_annotations_path(image.path)
    regions = load_annotations(resolve_input_path(ann_path, kind="Annotation file"))
    root = require_root(regions, settings.get("root_name", "root"))

    midline = compute_midline(regions, root)
    print("Calculated brain midline at x-coordinate: " + str(midline))

    backend = settings.get("backend", "watershed")
    labels = settings.get("labels") or {}
    detections = {}
    # Each channel is detected on its own; nothing carries over between runs
    for channel in (MARKER_CHANNEL, NUCLEAR_CHANNEL):
        detections[channel] = run_detection(
            image, root, detection_params_for(settings, channel),
            backend=backend,
            label_path=labels.get(channel),
            stardist_cfg=settings.get("stardist"),
        )
    af647_cells = detections[MARKER_CHANNEL]
    dapi_cells = detections[NUCLEAR_CHANNEL]

    region_data = summarize_regions(
        regions, root, midline, af647_cells, dapi_cells, image,
        intensity_channel=settings.get("intensity_channel", MARKER_CHANNEL),
    )
    table = build_summary_table(region_data)

    out_dir = Path(settings.get("output_dir") or default_output_dir()).expanduser()
    name = settings.get("output_name") or image.name
    csv_path = write_summary_csv(table, out_dir / f"{name}{OUTPUT_SUFFIX}")

    result = {
        "Image": name,
        "Midline_x": midline,
        "Regions": len(region_data),
        "AF647_cells": int(len(af647_cells)),
        "DAPI_cells": int(len(dapi_cells)),
        "Summary_csv": str(csv_path),
        "Detections_csv": "",
        "Overlay_png": "",
    }

    if settings.get("write_detections", True):
        cells = [assign_detections_to_regions(c, regions, root, midline) for c in (af647_cells, dapi_cells)]
        cells = [c for c in cells if not c.empty]
        if cells:
            det_path = out_dir / f"{name}_detections.csv"
            pd.concat(cells, ignore_index=True).to_csv(det_path, index=False)
            result["Detections_csv"] = str(det_path)
            print(f"[export] wrote {det_path}")

    if settings.get("make_overlay", False):
        overlay_path = out_dir / f"{name}_overlay.png"
        make_overlay_png(image, regions, root, midline, af647_cells, dapi_cells, overlay_path,
                         channel=settings.get("intensity_channel", MARKER_CHANNEL),
                         title=f"Overlay - {name}")
        result["Overlay_png"] = str(overlay_path)
        print(f"[export] wrote {overlay_path}")

    print(f"Cell counts, fractions, areas, and intensity measurements have been written to {csv_path}")
    return result


def main(argv=None):
    args = parse_args(argv)
    cfg = load_config(args.config)
    settings = resolve_settings(args, cfg)

    if not settings.get("input_path"):
        raise SystemExit("Please provide --input_path or set 'input_path' in the config YAML.")

    print("[pipeline] config:", args.config or "(none)")
    print("[pipeline] input_path:", settings["input_path"])
    print("[pipeline] backend:", settings["backend"])

    try:
        result = run_pipeline(settings)
    except (RootAnnotationNotFound, ValueError) as e:
        raise SystemExit(str(e))

    if settings.get("review"):
        from hemicount.ui.napari_review import review
        review(settings["input_path"], settings.get("annotations_path"), result["Detections_csv"],
               channels=settings.get("channels"), root_name=settings.get("root_name", "root"))
    return result


if __name__ == "__main__":
    main()
