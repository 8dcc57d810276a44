"""
Region annotations exported from QuPath/ABBA as GeoJSON.

Coordinates are full-resolution pixel coordinates with QuPath's convention:
pixel (row, col) covers [col, col+1) x [row, row+1), so its centre sits at
(col + 0.5, row + 0.5). Masks below rasterise pixel centres.
"""

import json
from pathlib import Path

import numpy as np
from skimage.draw import polygon as draw_polygon
from skimage.measure import points_in_poly

SIDES = ("Left", "Right")


class RootAnnotationNotFound(LookupError):
    """No annotation carries the root name."""


class Region:
    """
    A named annotation made of one or more polygons.

    polygons: list of rings-lists, each [exterior, hole, hole, ...] with every
    ring an (N, 2) float array of (x, y) vertices.
    """

    def __init__(self, name: str, polygons):
        if not polygons:
            raise ValueError(f"Region '{name}' has no polygons")
        self.name = name
        self.polygons = [[np.asarray(r, dtype=float).reshape(-1, 2) for r in rings] for rings in polygons]

    def __repr__(self):
        return f"Region({self.name!r}, parts={len(self.polygons)})"

    @property
    def bounds(self):
        """(min_x, min_y, max_x, max_y) of the exterior rings."""
        ext = np.vstack([rings[0] for rings in self.polygons])
        return float(ext[:, 0].min()), float(ext[:, 1].min()), float(ext[:, 0].max()), float(ext[:, 1].max())

    def contains(self, xs, ys) -> np.ndarray:
        """Vectorised point containment: inside an exterior and outside its holes."""
        pts = np.column_stack([np.asarray(xs, dtype=float).ravel(), np.asarray(ys, dtype=float).ravel()])
        inside = np.zeros(len(pts), dtype=bool)
        if len(pts) == 0:
            return inside
        for rings in self.polygons:
            part = points_in_poly(pts, rings[0])
            for hole in rings[1:]:
                part &= ~points_in_poly(pts, hole)
            inside |= part
        return inside

    def pixel_window(self, width: int, height: int):
        """Bounding box clipped to the image, as integer (x0, y0, x1, y1)."""
        min_x, min_y, max_x, max_y = self.bounds
        x0 = max(0, int(np.floor(min_x)))
        y0 = max(0, int(np.floor(min_y)))
        x1 = min(int(width), int(np.ceil(max_x)))
        y1 = min(int(height), int(np.ceil(max_y)))
        return x0, y0, max(x0, x1), max(y0, y1)

    def mask(self, x0: int, y0: int, width: int, height: int) -> np.ndarray:
        """Boolean (height, width) mask of pixel centres inside the region, window origin (x0, y0)."""
        out = np.zeros((height, width), dtype=bool)
        if width == 0 or height == 0:
            return out
        for rings in self.polygons:
            part = np.zeros_like(out)
            ext = rings[0]
            rr, cc = draw_polygon(ext[:, 1] - y0 - 0.5, ext[:, 0] - x0 - 0.5, shape=out.shape)
            part[rr, cc] = True
            for hole in rings[1:]:
                rr, cc = draw_polygon(hole[:, 1] - y0 - 0.5, hole[:, 0] - x0 - 0.5, shape=out.shape)
                part[rr, cc] = False
            out |= part
        return out

    def split_at(self, midline_x: float, width: int, height: int):
        """
        Split the region at a vertical line.

        Returns {"Left": (mask, (x0, y0)), "Right": (mask, (x0, y0))}; both masks
        share the region window. A pixel is Left when its centre x < midline_x.
        """
        x0, y0, x1, y1 = self.pixel_window(width, height)
        full = self.mask(x0, y0, x1 - x0, y1 - y0)
        centres_x = np.arange(x0, x1) + 0.5
        left_cols = centres_x < midline_x
        left = full & left_cols[np.newaxis, :]
        right = full & ~left_cols[np.newaxis, :]
        return {"Left": (left, (x0, y0)), "Right": (right, (x0, y0))}


# ---------------------------
# GeoJSON parsing
# ---------------------------

def _feature_name(props: dict) -> str:
    name = props.get("name")
    if not name:
        cls = props.get("classification") or {}
        if isinstance(cls, dict):
            name = cls.get("name")
        elif isinstance(cls, str):
            name = cls
    return str(name) if name else ""


def _geometry_polygons(geometry: dict):
    gtype = geometry.get("type")
    coords = geometry.get("coordinates") or []
    if gtype == "Polygon":
        return [coords] if coords else []
    if gtype == "MultiPolygon":
        return [p for p in coords if p]
    if gtype == "GeometryCollection":
        polys = []
        for g in geometry.get("geometries") or []:
            polys.extend(_geometry_polygons(g))
        return polys
    return []


def _iter_features(doc):
    if isinstance(doc, list):
        for item in doc:
            yield from _iter_features(item)
    elif isinstance(doc, dict):
        if doc.get("type") == "FeatureCollection":
            yield from _iter_features(doc.get("features") or [])
        elif doc.get("type") == "Feature":
            yield doc
        else:
            raise ValueError(f"Unsupported GeoJSON object type: {doc.get('type')!r}")


def parse_annotations(doc) -> list:
    """Turn a parsed GeoJSON document into Regions (annotation objects only)."""
    regions = []
    for i, feat in enumerate(_iter_features(doc)):
        props = feat.get("properties") or {}
        if str(props.get("objectType", "annotation")).lower() not in ("annotation", ""):
            continue
        polygons = _geometry_polygons(feat.get("geometry") or {})
        if not polygons:
            print(f"[WARN] annotation #{i} has no polygon geometry; skipped")
            continue
        name = _feature_name(props)
        if not name:
            name = "Unnamed"
            print(f"[WARN] annotation #{i} has no name; using '{name}'")
        regions.append(Region(name, polygons))
    return regions


def load_annotations(path) -> list:
    """Read a QuPath GeoJSON export and return its annotations as Regions."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Annotation file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        doc = json.load(f)
    regions = parse_annotations(doc)
    print(f"[annotations] loaded {len(regions)} annotation(s) from {path.name}")
    return regions


# ---------------------------
# Root & midline
# ---------------------------

def find_root(regions, root_name: str = "root"):
    """First annotation whose name equals root_name ignoring case, or None."""
    for r in regions:
        if r.name.lower() == root_name.lower():
            return r
    return None


def require_root(regions, root_name: str = "root") -> Region:
    root = find_root(regions, root_name)
    if root is None:
        raise RootAnnotationNotFound(
            f"Root annotation named '{root_name}' not found. "
            f"Please check the available annotations: {sorted({r.name for r in regions})}"
        )
    return root


def compute_midline(regions, root) -> float:
    """
    Centre of the horizontal extent of every annotation except root:
    (smallest left bound + largest right bound) / 2.
    Falls back to the root's own extent when root is the only annotation.
    """
    others = [r for r in regions if r is not root]
    if not others:
        print("[WARN] no annotations besides root; midline taken from the root bounds")
        others = [root]
    min_x = min(r.bounds[0] for r in others)
    max_x = max(r.bounds[2] for r in others)
    return (min_x + max_x) / 2.0


def determine_hemisphere(x: float, midline_x: float) -> str:
    return "Left" if x < midline_x else "Right"


def assign_hemispheres(xs, midline_x: float) -> np.ndarray:
    return np.where(np.asarray(xs, dtype=float) < midline_x, "Left", "Right")
