# hemicount/run_multi.py
import argparse
import glob
from pathlib import Path

import pandas as pd
from concurrent.futures import ProcessPoolExecutor, as_completed

# Single-image helpers from the hemisphere pipeline
from hemicount.hemisphere_pipeline import (
    DEFAULTS, OUTPUT_SUFFIX, load_config, run_pipeline,
)

TIFF_EXTS = {".tif", ".tiff", ".TIF", ".TIFF"}
ALL_CSV = "ALL_cellcount_intensity.csv"


def is_tiff(p: Path) -> bool:
    return p.suffix in TIFF_EXTS and p.is_file()


def expand_inputs(inputs, input_dir, glob_pattern):
    files = []
    # 1) explicit paths
    for s in (inputs or []):
        p = Path(s)
        if p.is_dir():
            files += [q for q in p.rglob("*") if is_tiff(q)]
        elif p.is_file() and is_tiff(p):
            files.append(p)
        else:
            files += [Path(x) for x in glob.glob(s) if is_tiff(Path(x))]
    # 2) input_dir
    if input_dir:
        d = Path(input_dir)
        if d.is_dir():
            files += [q for q in d.rglob("*") if is_tiff(q)]
    # 3) glob
    if glob_pattern:
        files += [Path(x) for x in glob.glob(glob_pattern) if is_tiff(Path(x))]
    # de-dup & sort
    uniq = sorted({str(p.resolve()) for p in files})
    return [Path(u) for u in uniq]


def annotations_for(image_path: Path, annotations_dir=None) -> Path:
    """<stem>.geojson in annotations_dir if given, else next to the image."""
    name = image_path.stem + ".geojson"
    if annotations_dir:
        return Path(annotations_dir) / name
    return image_path.with_name(name)


def make_output_names(files) -> dict:
    """<stem> per file; append _2, _3 ... if two inputs share a stem."""
    names, taken = {}, set()
    for path in files:
        base = Path(path).stem
        name, i = base, 2
        while name in taken:
            name = f"{base}_{i}"
            i += 1
        taken.add(name)
        names[Path(path)] = name
    return names


def read_if_exists(path: Path) -> pd.DataFrame | None:
    if path.exists():
        return pd.read_csv(path, keep_default_na=False)
    return None

# ----------------- per-file worker (for parallel) -----------------

def process_one_file(fpath: Path, out_dir: Path, settings: dict, annotations_dir=None, output_name=None) -> dict:
    """Run the pipeline for one image. Returns dict with file/name/csv and status."""
    name = output_name or fpath.stem
    status = {"file": str(fpath), "name": name, "csv": "", "ok": True, "error": ""}
    s = dict(settings)
    s.update({
        "input_path": str(fpath),
        "annotations_path": str(annotations_for(fpath, annotations_dir)),
        "output_dir": str(out_dir),
        "output_name": name,
        "review": False,
    })
    if not Path(s["annotations_path"]).exists():
        status["ok"] = False
        status["error"] = f"skipped (no annotations): {s['annotations_path']}"
        return status
    try:
        result = run_pipeline(s)
        status["csv"] = result["Summary_csv"]
    except Exception as e:
        status["ok"] = False
        status["error"] = f"pipeline failed: {e}"
    return status


def collect_summaries(statuses) -> pd.DataFrame | None:
    """Concatenate per-image summary CSVs with a leading Image column."""
    rows = []
    for s in statuses:
        if not s["ok"] or not s["csv"]:
            continue
        csv_path = Path(s["csv"])
        df = read_if_exists(csv_path)
        if df is None:
            continue
        df.insert(0, "Image", s.get("name") or csv_path.name[: -len(OUTPUT_SUFFIX)])
        rows.append(df)
    if not rows:
        return None
    return pd.concat(rows, ignore_index=True)

# ----------------- main -----------------

def main(argv=None):
    ap = argparse.ArgumentParser(description="Batch runner for multiple TIFF + GeoJSON pairs.")
    ap.add_argument("--config", type=str, help="YAML config (same keys as the single-image pipeline)")
    ap.add_argument("--inputs", nargs="*", help="Explicit files/dirs/globs (space-separated)")
    ap.add_argument("--input_dir", type=str, help="Directory to scan recursively for .tif/.tiff")
    ap.add_argument("--glob", dest="glob_pattern", type=str, help="Glob pattern, e.g. 'data/*.tif'")
    ap.add_argument("--annotations_dir", type=str, default=None,
                    help="Folder with <stem>.geojson files (default: next to each image)")
    ap.add_argument("--outputs_dir", type=str, default="outputs", help="Base outputs directory")
    ap.add_argument("--jobs", type=int, default=1, help="Parallel workers (>=1).")
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    settings = dict(DEFAULTS)
    settings.update({k: v for k, v in cfg.items() if v is not None})
    out_dir = Path(args.outputs_dir); out_dir.mkdir(parents=True, exist_ok=True)

    files = expand_inputs(args.inputs, args.input_dir, args.glob_pattern)
    if not files:
        raise SystemExit("No input .tif/.tiff files found. Use --inputs / --input_dir / --glob.")

    print(f"[batch] found {len(files)} TIFF(s). jobs={args.jobs}")
    # Names are fixed before any worker starts so parallel runs cannot clash
    names = make_output_names(files)

    statuses = []
    if args.jobs and args.jobs > 1:
        with ProcessPoolExecutor(max_workers=args.jobs) as ex:
            futs = [ex.submit(process_one_file, f, out_dir, settings, args.annotations_dir, names[f])
                    for f in files]
            for fut in as_completed(futs):
                statuses.append(fut.result())
                s = statuses[-1]
                print(("OK  " if s["ok"] else "FAIL") + f" :: {s['file']} :: {s['error']}")
        # Completion order varies; keep the combined table in input order
        order = {str(f): i for i, f in enumerate(files)}
        statuses.sort(key=lambda s: order[s["file"]])
    else:
        for f in files:
            s = process_one_file(f, out_dir, settings, args.annotations_dir, names[f])
            statuses.append(s)
            print(("OK  " if s["ok"] else "FAIL") + f" :: {s['file']} :: {s['error']}")

    all_df = collect_summaries(statuses)
    if all_df is not None:
        all_path = out_dir / ALL_CSV
        all_df.to_csv(all_path, index=False, lineterminator="\n")
        print(f"[batch] wrote {all_path}")

    print("\n[batch] done.")
    return statuses


if __name__ == "__main__":
    main()
