# hemicount/region_summary.py
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from pathlib import Path

from hemicount.annotations import SIDES, assign_hemispheres

CSV_HEADER = [
    "Region", "Side",
    "Cell Count AF647", "Cell Count DAPI",
    "Fraction AF647", "Fraction DAPI",
    "Area AF647", "Total Region Area",
    "Mean Intensity AF647",
]

# ---------------------------
# Counters
# ---------------------------

def new_side_counters() -> dict:
    return {
        "countAF647": 0,
        "countDAPI": 0,
        "areaAF647": 0.0,
        "areaTotal": 0.0,
        "intensityAF647": 0.0,
    }


def new_region_entry() -> dict:
    return {side: new_side_counters() for side in SIDES}


def compute_fractions(count_af647, count_dapi):
    """(fraction AF647, fraction DAPI) of the combined count; both 0 when nothing was counted."""
    total = count_af647 + count_dapi
    if total <= 0:
        return 0.0, 0.0
    return count_af647 / total, count_dapi / total

# ---------------------------
# Intensity
# ---------------------------

def measure_intensity_for_mask(image, mask: np.ndarray, window, channel_name: str) -> float:
    """
    Mean intensity of `channel_name` over the True pixels of `mask`
    (full resolution, mask origin at `window` = (x0, y0)).
    Problems are reported and measured as 0.
    """
    idx = image.channel_index(channel_name)
    if idx is None:
        print(f"Channel '{channel_name}' not found.")
        return 0.0
    try:
        x0, y0 = window
        h, w = mask.shape
        pixels = image.data[idx, y0:y0 + h, x0:x0 + w][mask]
        if pixels.size == 0:
            return 0.0
        return float(pixels.mean(dtype=np.float64))
    except (IndexError, ValueError, TypeError) as e:
        print(f"Error measuring intensity: {e}")
        return 0.0

# ---------------------------
# Region aggregation
# ---------------------------

def _add_side_area(counters: dict, area: float, mean: float):
    # Same-named annotations accumulate; intensity becomes the area-weighted mean
    prev = counters["areaTotal"]
    total = prev + area
    counters["intensityAF647"] = (counters["intensityAF647"] * prev + mean * area) / total
    counters["areaTotal"] = total


def _count_cells(entry: dict, region, cells: pd.DataFrame, midline_x: float, count_key: str, area_key=None):
    if cells is None or cells.empty:
        return
    inside = region.contains(cells["X"].values, cells["Y"].values)
    if not inside.any():
        return
    sides = assign_hemispheres(cells["X"].values[inside], midline_x)
    areas = cells["Area"].values[inside]
    for side in SIDES:
        on_side = sides == side
        entry[side][count_key] += int(on_side.sum())
        if area_key:
            entry[side][area_key] += float(areas[on_side].sum())


def summarize_regions(regions, root, midline_x, af647_cells, dapi_cells, image, intensity_channel="AF647"):
    """
    Per-region, per-hemisphere counters for every annotation except root.

    Returns an insertion-ordered dict:
        {region name: {"Left": counters, "Right": counters}}
    """
    region_data = {}
    for region in regions:
        if region is root:
            continue
        entry = region_data.setdefault(region.name, new_region_entry())
        try:
            for side, (mask, window) in region.split_at(midline_x, image.width, image.height).items():
                area = float(mask.sum())
                if area > 0:
                    mean = measure_intensity_for_mask(image, mask, window, intensity_channel)
                    _add_side_area(entry[side], area, mean)

            _count_cells(entry, region, af647_cells, midline_x, "countAF647", "areaAF647")
            _count_cells(entry, region, dapi_cells, midline_x, "countDAPI")
        except Exception as e:
            print(f"Error processing region {region.name}: {e}")

    print(f"[regions] summarized {len(region_data)} region(s)")
    return region_data


def build_summary_table(region_data: dict) -> pd.DataFrame:
    """One row per region and side (Left, Right), columns as in CSV_HEADER."""
    rows = []
    for name, hemispheres in region_data.items():
        for side in SIDES:
            d = hemispheres[side]
            frac_af, frac_dapi = compute_fractions(d["countAF647"], d["countDAPI"])
            rows.append([
                name, side,
                int(d["countAF647"]), int(d["countDAPI"]),
                frac_af, frac_dapi,
                float(d["areaAF647"]), float(d["areaTotal"]),
                float(d["intensityAF647"]),
            ])
    return pd.DataFrame(rows, columns=CSV_HEADER)


def write_summary_csv(table: pd.DataFrame, out_path) -> Path:
    """Write the region table; names with commas, quotes or newlines are quoted (quotes doubled)."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(out_path, index=False, lineterminator="\n")
    return out_path

# ---------------------------
# Per-cell table
# ---------------------------

def assign_detections_to_regions(cells: pd.DataFrame, regions, root, midline_x: float) -> pd.DataFrame:
    """
    Add Region (first non-root annotation containing the centroid, else root)
    and Side columns to a detection table.
    """
    df = cells.copy()
    if df.empty:
        df["Region"] = pd.Series(dtype=object)
        df["Side"] = pd.Series(dtype=object)
        return df
    xs, ys = df["X"].values, df["Y"].values
    names = np.full(len(df), root.name, dtype=object)
    unassigned = np.ones(len(df), dtype=bool)
    for region in regions:
        if region is root:
            continue
        hit = unassigned & region.contains(xs, ys)
        names[hit] = region.name
        unassigned &= ~hit
    df["Region"] = names
    df["Side"] = assign_hemispheres(xs, midline_x)
    return df

# ---------------------------
# Overlay rendering
# ---------------------------

def make_overlay_png(image, regions, root, midline_x, af647_cells, dapi_cells, out_path,
                     channel="AF647", title=None, max_side=2000):
    """
    QC overlay:
      - background: `channel` in grayscale (strided down to max_side)
      - region outlines (root dashed), midline in yellow
      - AF647 centroids red, DAPI centroids cyan
    """
    idx = image.channel_index(channel)
    bg = image.data[idx] if idx is not None else image.data[0]
    step = max(1, int(np.ceil(max(bg.shape) / max_side)))
    bg = bg[::step, ::step].astype(np.float32)
    lo, hi = np.percentile(bg, (1, 99.5)) if bg.size else (0.0, 1.0)
    bg = np.clip((bg - lo) / (hi - lo + 1e-8), 0, 1)

    fig = plt.figure(figsize=(8, 8 * bg.shape[0] / max(1, bg.shape[1])))
    ax = fig.add_subplot(111)
    ax.imshow(bg, cmap="gray", extent=(0, image.width, image.height, 0))
    for region in regions:
        style = "--" if region is root else "-"
        for rings in region.polygons:
            for ring in rings:
                ax.plot(ring[:, 0], ring[:, 1], style, lw=0.6, color="white" if region is root else "lime")
    ax.axvline(midline_x, color="yellow", lw=1.0)
    for cells, color in ((af647_cells, "red"), (dapi_cells, "cyan")):
        if cells is not None and not cells.empty:
            ax.scatter(cells["X"], cells["Y"], s=2, c=color, linewidths=0)
    ax.set_xlim(0, image.width)
    ax.set_ylim(image.height, 0)
    ax.axis("off")
    if title:
        ax.set_title(title)
    fig.tight_layout()
    fig.savefig(out_path, dpi=200)
    plt.close(fig)
    return Path(out_path)
