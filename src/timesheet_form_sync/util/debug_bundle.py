from __future__ import annotations

import logging
import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional


logger = logging.getLogger(__name__)

BUNDLE_PREFIX = "debug_bundle"


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    label: str = "",
    extra_paths: Optional[Iterable[str]] = None,
    keep: int = 10,
) -> Path:
    """
    Zip page screenshots/HTML from failed runs plus the log file, for sharing when the vendor form changes.

    Never includes `.env`, config.yaml or the state DB (the DB holds stored credentials).
    Older bundles beyond `keep` are deleted.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    tag = (label or "").strip().lower().replace(" ", "_")
    tag_part = f"_{tag}" if tag else ""
    out_path = out_root / f"{BUNDLE_PREFIX}{tag_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if not file_path.is_file():
            return
        try:
            z.write(file_path, arcname=arcname)
        except OSError:
            # A debug file can be rotated away mid-bundle.
            logger.debug("Skipped %s while bundling", file_path, exc_info=True)

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        _add_file(z, log, arcname=log.name)

        if dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if p.is_file():
                    _add_file(z, p, arcname=str(Path("debug") / p.relative_to(dbg)))

        for raw in extra_paths or ():
            p = Path(raw)
            if p.is_file():
                _add_file(z, p, arcname=str(Path("extra") / p.name))
            elif p.is_dir():
                for f in sorted(p.rglob("*")):
                    if f.is_file():
                        _add_file(z, f, arcname=str(Path("extra") / p.name / f.relative_to(p)))

    prune_debug_bundles(out_root, keep=keep)
    return out_path


def prune_debug_bundles(out_dir: Path, *, keep: int) -> list[Path]:
    if keep <= 0:
        return []
    bundles = sorted(out_dir.glob(f"{BUNDLE_PREFIX}*.zip"), key=lambda p: p.stat().st_mtime, reverse=True)
    removed: list[Path] = []
    for old in bundles[keep:]:
        try:
            old.unlink()
            removed.append(old)
        except OSError:
            logger.debug("Failed to remove old debug bundle %s", old, exc_info=True)
    return removed
