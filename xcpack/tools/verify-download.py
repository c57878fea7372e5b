#!/usr/bin/env python3
import argparse
import importlib.util
import shutil
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
UNIFY_PATH = ROOT / "pipeline" / "unify.py"


def load_unify():
    spec = importlib.util.spec_from_file_location("xcpack_unify_verify", UNIFY_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


def verify(download_dir: Path, recompute: bool = True) -> list:
    """Return one (filename, problem-or-None) pair per manifest entry."""
    unify = load_unify()
    manifest = download_dir / unify.MANIFEST_NAME
    if not manifest.is_file():
        raise RuntimeError(f"Manifest not found: {manifest}")

    results = []
    for filename, checksum in unify.read_manifest(manifest):
        archive = download_dir / filename
        if not archive.is_file():
            results.append((filename, "archive missing"))
            continue
        if not checksum or checksum == unify.CHECKSUM_PLACEHOLDER:
            results.append((filename, f"no checksum recorded ({checksum or 'empty'})"))
            continue
        if recompute:
            actual = unify.compute_checksum(archive)
            if not actual.ok:
                results.append((filename, f"checksum tool failed: {actual.reason}"))
                continue
            if actual.value != checksum:
                results.append((filename, f"checksum mismatch: manifest {checksum}, actual {actual.value}"))
                continue
        results.append((filename, None))
    return results


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify archives and checksums in a Download directory.")
    parser.add_argument("--dir", default="Download")
    parser.add_argument("--skip-recompute", action="store_true", help="Only check files and placeholders")
    args = parser.parse_args()

    recompute = not args.skip_recompute
    if recompute and shutil.which("swift") is None:
        raise SystemExit("swift is required to recompute checksums (or pass --skip-recompute)")

    try:
        results = verify(Path(args.dir), recompute=recompute)
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from exc

    failed = 0
    for filename, problem in results:
        if problem:
            failed += 1
            print(f"[FAIL] {filename}: {problem}")
        else:
            print(f"[OK] {filename}")
    if not results:
        print("[FAIL] manifest has no entries")
        return 1
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
