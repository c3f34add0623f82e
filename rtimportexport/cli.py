from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import ImportExportConfig, load_config
from .entities import EntityKind
from .examiner import DicomIndex, examine_files, loadables_to_frame
from .export import export_dicom_rt_study, exportable_for_item
from .hierarchy import SubjectHierarchy
from .loaders import LoadSession
from .utils import list_files

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rtimportexport", description="DICOM-RT import and export")
    p.add_argument("--config", default=None, help="Path to YAML configuration file")
    p.add_argument("--logs", default=None, help="Logs directory (adds a file log)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity")
    sub = p.add_subparsers(dest="command", required=True)

    ex = sub.add_parser("examine", help="List RT objects found under a directory")
    ex.add_argument("dicom_root", help="Path to root with DICOM files")
    ex.add_argument("--index", default=None, help="Write a CSV index of all DICOM files to this path")

    ld = sub.add_parser("load", help="Load every series under a directory and print the hierarchy")
    ld.add_argument("dicom_root", help="Path to root with DICOM files")

    cv = sub.add_parser("convert", help="Load a directory and export image, dose and structures as a DICOM-RT study")
    cv.add_argument("dicom_root", help="Path to root with DICOM files")
    cv.add_argument("--outdir", required=True, help="Output directory for the exported study")
    return p


def _doctor(argv: list[str]) -> int:
    import platform
    from importlib import metadata as importlib_metadata

    p = argparse.ArgumentParser(prog="rtimportexport doctor", description="Check environment for rtimportexport")
    p.parse_args(argv)

    print("rtimportexport doctor")
    print(f"- Python: {platform.python_version()} on {platform.system()} {platform.release()}")

    def ver(name: str) -> str:
        try:
            return importlib_metadata.version(name)
        except importlib_metadata.PackageNotFoundError:
            return "not installed"

    for dist in ("numpy", "pydicom", "SimpleITK", "scikit-image", "pandas", "PyYAML", "rt-utils"):
        print(f"- {dist}: {ver(dist)}")
    return 0


def _print_tree(hierarchy: SubjectHierarchy, item_id: int, depth: int = 0) -> None:
    item = hierarchy.item(item_id)
    print(f"{'  ' * depth}{item.name} [{item.level.value}]")
    for child in item.children:
        _print_tree(hierarchy, child, depth + 1)


def _configure_logging(args: argparse.Namespace, cfg: ImportExportConfig) -> None:
    level = logging.INFO if args.verbose == 0 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    if args.logs:
        cfg.logs_root = Path(args.logs).resolve()
    if cfg.logs_root is None:
        return
    try:
        cfg.ensure_dirs()
        fh = logging.FileHandler(cfg.logs_root / "rtimportexport.log", encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logging.getLogger().addHandler(fh)
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if argv and argv[0] == "doctor":
        return _doctor(argv[1:])
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    _configure_logging(args, cfg)

    root = Path(args.dicom_root)
    if not root.exists():
        logger.error("DICOM root not found: %s", root)
        return 2

    if args.command == "examine":
        if args.index:
            index = DicomIndex.build(root)
            index.save(Path(args.index))
            logger.info("Indexed %d DICOM file(s) into %s", len(index), args.index)
        frame = loadables_to_frame(examine_files(list_files(root)))
        if frame.empty:
            print("No RT objects found")
        else:
            print(frame.to_string(index=False))
        return 0

    session = LoadSession(cfg)
    summary = session.load_directory(root)

    if args.command == "load":
        _print_tree(session.hierarchy, session.hierarchy.scene_item_id)
        return 0 if summary["failed"] == 0 else 1

    # convert
    hierarchy, store = session.hierarchy, session.store
    outdir = Path(args.outdir)
    exportables = []
    for kind in (EntityKind.VOLUME, EntityKind.DOSE_VOLUME, EntityKind.SEGMENTATION):
        entities = store.of_kind(kind)
        if not entities:
            continue
        if len(entities) > 1:
            logger.warning("Found %d %s entities; exporting the first one", len(entities), kind.value)
        exportables.append(exportable_for_item(hierarchy, hierarchy.item_by_entity(entities[0].id), outdir))
    error = export_dicom_rt_study(hierarchy, store, exportables, config=cfg)
    if error:
        logger.error("Export failed: %s", error)
        return 1
    logger.info("Exported DICOM-RT study to %s", outdir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
