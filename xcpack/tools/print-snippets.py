#!/usr/bin/env python3
import argparse
import importlib.util
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
UNIFY_PATH = ROOT / "pipeline" / "unify.py"


def load_unify():
    spec = importlib.util.spec_from_file_location("xcpack_unify", UNIFY_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


def snippets(manifest: Path, url_prefix: str) -> list:
    unify = load_unify()
    return [
        unify.binary_target_snippet(filename, checksum, url_prefix)
        for filename, checksum in unify.read_manifest(manifest)
    ]


def main() -> int:
    parser = argparse.ArgumentParser(description="Print Package.swift binaryTarget lines from checksums.txt.")
    parser.add_argument("--manifest", default="Download/checksums.txt")
    parser.add_argument("--url-prefix", default="", help="Base URL the archives are served from")
    args = parser.parse_args()

    manifest = Path(args.manifest)
    if not manifest.is_file():
        raise SystemExit(f"Manifest not found: {manifest}")

    for line in snippets(manifest, args.url_prefix):
        print(line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
