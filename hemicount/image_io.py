"""
Multi-channel fluorescence TIFF loading.

What this does (high level):
- Resolves the input path the same way on Windows/Linux (see resolve_input_path).
- Reads the TIFF with tifffile and brings it to (C, Y, X); Z stacks are
  max-projected because region statistics are 2D.
- Recovers channel names (OME-XML first, then ImageJ labels) so that channels
  can be requested by name ("AF647", "DAPI") instead of by index.
- Recovers the pixel size in microns from OME or ImageJ resolution tags.

Config/CLI values always win over what the file says.
"""

import xml.etree.ElementTree as ET
from pathlib import Path

import numpy as np
import tifffile


MICRON_UNITS = {"micron", "microns", "um", "µm", "\\u00B5m", "μm"}


class FluorescenceImage:
    """A (C, Y, X) stack plus the metadata the region pipeline needs."""

    def __init__(self, data: np.ndarray, channel_names, pixel_size=None, path=None):
        if data.ndim != 3:
            raise ValueError(f"Expected a (C, Y, X) array, got shape {data.shape}")
        self.data = data
        self.channel_names = list(channel_names)
        self.pixel_size = pixel_size
        self.path = Path(path) if path is not None else None

    @property
    def name(self) -> str:
        """Image name without its last extension ('brain_01.ome.tif' -> 'brain_01.ome')."""
        return self.path.stem if self.path is not None else "image"

    @property
    def height(self) -> int:
        return int(self.data.shape[1])

    @property
    def width(self) -> int:
        return int(self.data.shape[2])

    def channel_index(self, channel_name: str):
        """Index of a channel by name, or None if the image has no such channel."""
        try:
            return self.channel_names.index(channel_name)
        except ValueError:
            return None

    def channel(self, channel_name: str) -> np.ndarray:
        idx = self.channel_index(channel_name)
        if idx is None:
            raise KeyError(f"Channel '{channel_name}' not found. Available: {self.channel_names}")
        return self.data[idx]


# -------- path resolution --------
def _strip_leading_slashes(p: str) -> str:
    # Avoid absolute path from accidental leading '/' or '\'
    if p.startswith("\\") or p.startswith("/"):
        return p.lstrip("\\/")
    return p


def resolve_input_path(user_path, kind: str = "TIFF") -> Path:
    """
    Try to resolve an input path robustly on Windows/Linux:
    - Accept absolute paths as-is (if they exist).
    - If the path starts with '/' or '\\', strip and treat as relative.
    - Try relative to CWD, the package dir and the project root.
    """
    candidates: list[Path] = []
    raw = Path(str(user_path))
    if raw.is_absolute() and raw.is_file():
        return raw

    stripped = Path(_strip_leading_slashes(str(raw)))

    cwd = Path.cwd()
    package_dir = Path(__file__).resolve().parent
    project_root = package_dir.parent

    for base in [cwd, package_dir, project_root]:
        candidates.append((base / stripped).resolve())
    candidates.append((cwd / raw).resolve())

    for cand in candidates:
        if cand.is_file():
            return cand

    tried = "\n  - ".join(str(c) for c in dict.fromkeys(candidates))
    raise FileNotFoundError(
        f"{kind} not found. I tried resolving these locations:\n  - {tried}\n"
        "Tip: In configs, prefer relative paths like 'data/brain_01.tif' (without a leading slash)."
    )


# -------- shape handling --------
def to_cyx(arr: np.ndarray) -> np.ndarray:
    """
    Bring a TIFF array to (C, Y, X).
      (Y, X)        -> single channel
      (C, Y, X)     -> as-is
      (Y, X, C)     -> channels last when the last axis is small (<= 5)
      (Z, C, Y, X)  -> max projection over Z
      (C, Z, Y, X)  -> first axis <= 5 is taken as channels, then max over Z
    """
    if arr.ndim == 2:
        return arr[np.newaxis]
    if arr.ndim == 3:
        if arr.shape[-1] <= 5 and arr.shape[0] > 5:
            return np.moveaxis(arr, -1, 0)
        return arr
    if arr.ndim == 4:
        if arr.shape[0] <= 5:
            arr = np.moveaxis(arr, 0, 1)  # -> (Z,C,Y,X)
        return arr.max(axis=0)
    raise ValueError(f"Unsupported TIFF shape {arr.shape}")


# -------- metadata --------
def _ome_root(tif: tifffile.TiffFile):
    xml = tif.ome_metadata
    if not xml:
        return None
    try:
        return ET.fromstring(xml)
    except ET.ParseError as e:
        print(f"[WARN] Could not parse OME-XML: {e}")
        return None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _ome_channel_names(root) -> list:
    names = []
    for el in root.iter():
        if _local(el.tag) == "Channel":
            names.append(el.attrib.get("Name") or "")
    return names


def _ome_pixel_size(root):
    for el in root.iter():
        if _local(el.tag) == "Pixels" and "PhysicalSizeX" in el.attrib:
            unit = el.attrib.get("PhysicalSizeXUnit", "µm")
            size = float(el.attrib["PhysicalSizeX"])
            if unit in MICRON_UNITS:
                return size
            if unit == "nm":
                return size / 1000.0
            if unit == "mm":
                return size * 1000.0
    return None


def _imagej_pixel_size(tif: tifffile.TiffFile):
    meta = tif.imagej_metadata or {}
    unit = str(meta.get("unit", "")).strip()
    if unit not in MICRON_UNITS:
        return None
    tag = tif.pages[0].tags.get("XResolution")
    if tag is None:
        return None
    num, den = tag.value
    if num == 0:
        return None
    # XResolution is pixels per unit
    return float(den) / float(num)


def read_metadata(tif: tifffile.TiffFile, n_channels: int):
    """Return (channel_names, pixel_size) as found in the file; missing values are None."""
    names = None
    pixel_size = None

    root = _ome_root(tif)
    if root is not None:
        ome_names = _ome_channel_names(root)
        if len(ome_names) == n_channels and all(ome_names):
            names = ome_names
        pixel_size = _ome_pixel_size(root)

    if names is None:
        labels = (tif.imagej_metadata or {}).get("Labels")
        if labels and len(labels) >= n_channels:
            names = [str(s) for s in labels[:n_channels]]

    if pixel_size is None:
        pixel_size = _imagej_pixel_size(tif)

    return names, pixel_size


def load_fluorescence_image(path, channels=None, pixel_size_microns=None) -> FluorescenceImage:
    """
    Open a multi-channel TIFF and return a FluorescenceImage.

    Parameters
    ----------
    path : str | os.PathLike
        TIFF path (resolved with resolve_input_path).
    channels : list[str] | None
        Channel names in acquisition order; overrides file metadata.
    pixel_size_microns : float | None
        Microns per pixel; overrides file metadata.
    """
    resolved = resolve_input_path(path)
    print("[image] resolved TIFF path:", resolved)

    with tifffile.TiffFile(str(resolved)) as tif:
        arr = tif.asarray()
        print("[image] original TIFF shape:", arr.shape)
        data = to_cyx(arr)
        file_names, file_pixel_size = read_metadata(tif, data.shape[0])

    if channels:
        if len(channels) != data.shape[0]:
            raise ValueError(
                f"{len(channels)} channel names given ({channels}) but the image has {data.shape[0]} channels"
            )
        names = list(channels)
    elif file_names:
        names = file_names
    else:
        names = [f"Channel {i + 1}" for i in range(data.shape[0])]
        print(f"[WARN] No channel names in {resolved.name}; using {names}. Set 'channels' in the config.")

    pixel_size = pixel_size_microns if pixel_size_microns is not None else file_pixel_size
    if pixel_size is None:
        pixel_size = 1.0
        print("[WARN] Pixel size unknown; assuming 1.0 um/px. Set 'pixel_size_microns' in the config.")

    print(f"[image] channels={names} pixel_size={pixel_size} um/px shape(C,Y,X)={data.shape}")
    return FluorescenceImage(data, names, pixel_size=float(pixel_size), path=resolved)


def save_fluorescence_tiff(path, data: np.ndarray, channels, pixel_size_microns: float = 1.0):
    """Write a (C, Y, X) stack as an ImageJ hyperstack with channel labels and micron calibration."""
    path = Path(path)
    if str(path.parent) not in ("", "."):
        path.parent.mkdir(parents=True, exist_ok=True)
    res = 1.0 / float(pixel_size_microns)
    tifffile.imwrite(
        str(path),
        np.asarray(data),
        imagej=True,
        resolution=(res, res),
        metadata={"axes": "CYX", "unit": "um", "Labels": list(channels)},
    )
    return path
