"""
Watershed cell detection restricted to an annotation.

Parameters use the names of QuPath's WatershedCellDetection so that settings
can be copied from a QuPath script as a JSON string or a YAML mapping:

    detectionImage, requestedPixelSizeMicrons, backgroundRadiusMicrons,
    medianRadiusMicrons, sigmaMicrons, minAreaMicrons, maxAreaMicrons,
    threshold, watershedPostProcess, cellExpansionMicrons, includeNuclei,
    smoothBoundaries, makeMeasurements

The steps (median -> background top-hat -> Gaussian -> threshold -> hole
fill -> distance watershed -> area filter -> expansion) approximate that
plugin with scikit-image; they are not a port of it.

Every backend returns the same per-cell DataFrame:
    Cell, Channel, X, Y, Area[, Nucleus Area][, <channel>: Mean ...]
with X/Y in full-resolution pixel coordinates (pixel centres at +0.5) and
areas in full-resolution pixels^2.
"""

import json

import numpy as np
import pandas as pd
import tifffile
from scipy import ndimage as ndi
from skimage.feature import peak_local_max
from skimage.filters import gaussian, median
from skimage.measure import label as cc_label, regionprops_table
from skimage.morphology import disk, white_tophat
from skimage.segmentation import expand_labels, relabel_sequential, watershed
from skimage.transform import rescale, resize

BASE_PARAMS = {
    "detectionImage": None,
    "requestedPixelSizeMicrons": 0.5,
    "backgroundRadiusMicrons": 8.0,
    "medianRadiusMicrons": 0.0,
    "sigmaMicrons": 1.5,
    "minAreaMicrons": 10.0,
    "maxAreaMicrons": 400.0,
    "threshold": 150.0,
    "watershedPostProcess": True,
    "cellExpansionMicrons": 0.0,
    "includeNuclei": True,
    "smoothBoundaries": True,
    "makeMeasurements": True,
}

DEFAULT_DETECTION_PARAMS = {
    "AF647": dict(BASE_PARAMS, detectionImage="AF647", requestedPixelSizeMicrons=0.5, threshold=150.0),
    "DAPI": dict(BASE_PARAMS, detectionImage="DAPI", requestedPixelSizeMicrons=2.0, threshold=200.0),
}

DETECTION_COLUMNS = ["Cell", "Channel", "X", "Y", "Area"]


def parse_detection_params(params, channel=None) -> dict:
    """
    Normalise detection parameters.

    params may be a JSON string (as passed to QuPath's runPlugin), a dict or
    None. Missing keys come from the channel defaults (or BASE_PARAMS).
    """
    if params is None:
        params = {}
    elif isinstance(params, str):
        try:
            params = json.loads(params)
        except json.JSONDecodeError as e:
            raise ValueError(f"Detection parameters are not valid JSON: {e}") from e
    if not isinstance(params, dict):
        raise ValueError(f"Detection parameters must be a mapping, got {type(params).__name__}")

    unknown = set(params) - set(BASE_PARAMS)
    if unknown:
        raise ValueError(f"Unknown detection parameter(s): {sorted(unknown)}")

    channel = params.get("detectionImage") or channel
    out = dict(DEFAULT_DETECTION_PARAMS.get(channel, BASE_PARAMS))
    out.update(params)
    if channel:
        out["detectionImage"] = channel
    if not out.get("detectionImage"):
        raise ValueError("Detection parameters need a 'detectionImage' channel name")
    if out["minAreaMicrons"] > out["maxAreaMicrons"]:
        raise ValueError(
            f"minAreaMicrons ({out['minAreaMicrons']}) is larger than maxAreaMicrons ({out['maxAreaMicrons']})"
        )
    return out


def empty_detections(channels=()) -> pd.DataFrame:
    cols = DETECTION_COLUMNS + ["Nucleus Area"] + [f"{c}: Mean" for c in channels]
    return pd.DataFrame({c: pd.Series(dtype=object if c == "Channel" else float) for c in cols})


# ---------------------------
# Segmentation (detection resolution)
# ---------------------------

def segment_nuclei(img: np.ndarray, pixel_size: float, params: dict, mask=None) -> np.ndarray:
    """
    Segment bright nuclei in a 2D image.

    Parameters
    ----------
    img : np.ndarray
        2D image at detection resolution (raw intensity units).
    pixel_size : float
        Microns per pixel of `img`.
    params : dict
        Parsed detection parameters (see parse_detection_params).
    mask : np.ndarray | None
        Where detection is allowed.

    Returns
    -------
    np.ndarray (int32)
        Sequential nucleus labels.
    """
    img = img.astype(np.float32)

    median_r = params["medianRadiusMicrons"] / pixel_size
    if median_r >= 1:
        img = median(img, footprint=disk(int(round(median_r))))

    bg_r = params["backgroundRadiusMicrons"] / pixel_size
    if bg_r >= 1:
        img = white_tophat(img, footprint=disk(int(round(bg_r))))

    sigma = params["sigmaMicrons"] / pixel_size
    if sigma > 0:
        img = gaussian(img, sigma=sigma, preserve_range=True)

    binary = img > float(params["threshold"])
    if mask is not None:
        binary &= mask
    binary = ndi.binary_fill_holes(binary)

    if params["watershedPostProcess"] and binary.any():
        distance = ndi.distance_transform_edt(binary)
        # Slight smoothing merges plateau maxima of round nuclei
        distance = gaussian(distance, sigma=1.0, preserve_range=True)
        min_radius = np.sqrt(params["minAreaMicrons"] / np.pi) / pixel_size
        coords = peak_local_max(
            distance,
            min_distance=max(2, int(min_radius)),
            labels=cc_label(binary),
            exclude_border=False,
        )
        peaks = np.zeros(binary.shape, dtype=bool)
        if len(coords) > 0:
            peaks[tuple(coords.T)] = True
        # Touching peaks (flat maxima) seed a single nucleus
        markers, _ = ndi.label(peaks, structure=np.ones((3, 3)))
        labels = watershed(-distance, markers, mask=binary)
    else:
        labels = cc_label(binary)

    # Area filter in um^2
    px_area = pixel_size ** 2
    areas = np.bincount(labels.ravel())
    keep = (areas * px_area >= params["minAreaMicrons"]) & (areas * px_area <= params["maxAreaMicrons"])
    keep[0] = False
    labels = np.where(keep[labels], labels, 0)

    if params["smoothBoundaries"] and labels.any():
        labels = np.where(ndi.binary_opening(labels > 0, structure=disk(1)), labels, 0)

    labels, _, _ = relabel_sequential(labels.astype(np.int32))
    return labels


def expand_nuclei(nuclei: np.ndarray, pixel_size: float, params: dict) -> np.ndarray:
    distance = params["cellExpansionMicrons"] / pixel_size
    if distance <= 0:
        return nuclei
    return expand_labels(nuclei, distance=distance)


# ---------------------------
# Measurements (back to full resolution)
# ---------------------------

def measure_labels(cells, image, window, scale, channel, nuclei=None, measure_channels=True) -> pd.DataFrame:
    """
    Per-cell table in full-resolution coordinates.

    window: (x0, y0) origin of the label array in the full image.
    scale: (sy, sx) full-resolution pixels per label pixel.
    """
    x0, y0 = window
    sy, sx = scale
    channels = image.channel_names if measure_channels else []
    if cells.size == 0 or cells.max() == 0:
        return empty_detections(channels)

    props = regionprops_table(cells, properties=("label", "area", "centroid"))
    df = pd.DataFrame(props).rename(columns={"label": "Cell", "area": "Area", "centroid-0": "Y", "centroid-1": "X"})
    df["X"] = (df["X"] + 0.5) * sx + x0
    df["Y"] = (df["Y"] + 0.5) * sy + y0
    df["Area"] = df["Area"].astype(float) * sx * sy
    df.insert(1, "Channel", channel)

    if nuclei is not None:
        nuc = pd.DataFrame(regionprops_table(nuclei, properties=("label", "area")))
        nuc = nuc.rename(columns={"label": "Cell", "area": "Nucleus Area"})
        nuc["Nucleus Area"] = nuc["Nucleus Area"].astype(float) * sx * sy
        df = df.merge(nuc, on="Cell", how="left")

    h, w = cells.shape
    for ch in channels:
        crop = image.channel(ch)[y0:y0 + int(round(h * sy)), x0:x0 + int(round(w * sx))]
        if crop.shape != cells.shape:
            crop = resize(crop.astype(np.float32), cells.shape, anti_aliasing=True, preserve_range=True)
        means = regionprops_table(cells, intensity_image=crop, properties=("label", "intensity_mean"))
        m = pd.DataFrame(means).rename(columns={"label": "Cell", "intensity_mean": f"{ch}: Mean"})
        df = df.merge(m, on="Cell", how="left")

    return df


def restrict_to_region(df: pd.DataFrame, region) -> pd.DataFrame:
    if df.empty:
        return df
    inside = region.contains(df["X"].values, df["Y"].values)
    out = df[inside].reset_index(drop=True)
    out["Cell"] = np.arange(1, len(out) + 1)
    return out


# ---------------------------
# Backends
# ---------------------------

def detect_cells(image, region, params) -> pd.DataFrame:
    """
    Run watershed cell detection for params['detectionImage'] inside `region`.
    Cells whose centroid falls outside the region are dropped.
    """
    params = parse_detection_params(params)
    channel = params["detectionImage"]
    if image.channel_index(channel) is None:
        raise ValueError(f"Detection channel '{channel}' not found. Available: {image.channel_names}")

    x0, y0, x1, y1 = region.pixel_window(image.width, image.height)
    if x1 <= x0 or y1 <= y0:
        print(f"[detect] {channel}: region '{region.name}' lies outside the image")
        return empty_detections(image.channel_names if params["makeMeasurements"] else [])

    crop = image.channel(channel)[y0:y1, x0:x1].astype(np.float32)
    inside = region.mask(x0, y0, x1 - x0, y1 - y0)

    downsample = max(1.0, float(params["requestedPixelSizeMicrons"]) / float(image.pixel_size))
    if downsample > 1.0:
        small = rescale(crop, 1.0 / downsample, anti_aliasing=True, preserve_range=True).astype(np.float32)
        small_inside = resize(inside.astype(np.float32), small.shape, order=0, anti_aliasing=False) > 0.5
    else:
        small, small_inside = crop, inside
    sy = crop.shape[0] / small.shape[0]
    sx = crop.shape[1] / small.shape[1]
    det_pixel = float(image.pixel_size) * (sx + sy) / 2.0

    nuclei = segment_nuclei(small, det_pixel, params, mask=small_inside)
    cells = expand_nuclei(nuclei, det_pixel, params)

    df = measure_labels(
        cells, image, (x0, y0), (sy, sx), channel,
        nuclei=nuclei if params["includeNuclei"] else None,
        measure_channels=params["makeMeasurements"],
    )
    df = restrict_to_region(df, region)
    print(f"[detect] {channel}: {len(df)} cell(s) at {det_pixel:.3g} um/px (downsample {downsample:.3g})")
    return df


def detect_from_labels(image, region, label_path, channel: str, measure_channels: bool = True) -> pd.DataFrame:
    """Use a precomputed full-resolution label TIFF (e.g. StarDist output) as the detections for `channel`."""
    labels = tifffile.imread(str(label_path))
    if labels.ndim == 3:
        labels = labels.max(axis=0)
    if labels.shape != (image.height, image.width):
        raise ValueError(
            f"Label image {label_path} has shape {labels.shape}, expected {(image.height, image.width)}"
        )
    x0, y0, x1, y1 = region.pixel_window(image.width, image.height)
    window = labels[y0:y1, x0:x1].astype(np.int32)
    window, _, _ = relabel_sequential(window)
    df = measure_labels(window, image, (x0, y0), (1.0, 1.0), channel, measure_channels=measure_channels)
    df = restrict_to_region(df, region)
    print(f"[detect] {channel}: {len(df)} cell(s) from {label_path}")
    return df


def run_detection(image, region, params, backend: str = "watershed", label_path=None, stardist_cfg=None):
    """Dispatch to a detection backend: 'watershed' | 'labels' | 'stardist'."""
    params = parse_detection_params(params)
    channel = params["detectionImage"]
    if backend == "watershed":
        return detect_cells(image, region, params)
    if backend == "labels":
        if not label_path:
            raise ValueError(f"backend 'labels' needs a label TIFF for channel '{channel}'")
        return detect_from_labels(image, region, label_path, channel, measure_channels=params["makeMeasurements"])
    if backend == "stardist":
        from hemicount.make_stardist_labels import detect_cells_stardist
        return detect_cells_stardist(image, region, channel, **(stardist_cfg or {}))
    raise ValueError(f"Unknown detection backend={backend!r}")
