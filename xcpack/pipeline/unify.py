#!/usr/bin/env python3
"""
Build Realm XCFrameworks with realm-swift's build.sh, then (optionally) sign
them, zip them for SwiftPM and record their checksums.

WARNING: the --repo working tree is force-checked-out at --tag and its
build/<CONFIGURATION> directory is deleted before building.

Archive names embed the Xcode version (Realm.xcframework@26.1.spm.zip).
Archives and checksums.txt are copied into ./Download (or --download-dir) and
copy-paste Package.swift snippets are printed at the end.

An interrupted run can leave partially copied bundles or truncated archives
in the output directory; nothing is rolled back.
"""
import argparse
import json
import os
import plistlib
import shutil
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from xml.parsers.expat import ExpatError

import yaml

TAG_DEFAULT = "v10.54.6"
CONFIGURATION_DEFAULT = "Release"
ARTIFACTS_DEFAULT = ("Realm", "RealmSwift")
REQUIRED_TOOLS = ("xcodebuild", "ditto", "swift", "git")
CHECKSUM_PLACEHOLDER = "N/A"
MANIFEST_NAME = "checksums.txt"
EVENTS_NAME = "unify-run.jsonl"
SUMMARY_NAME = "unify-run-summary.md"
URL_PLACEHOLDER = "<URL>"
CONFIG_KEYS = {
    "repo",
    "tag",
    "platforms",
    "out",
    "identity",
    "configuration",
    "download_dir",
    "url_prefix",
    "artifacts",
}

USAGE_EPILOG = """\
Examples:
  # Build iOS only (default) - copies to ./Download folder
  unify-xcframeworks --repo ./realm-swift

  # Build all platforms - copies to ./Download folder
  unify-xcframeworks --repo ./realm-swift --platforms "all"

The repository is force-checked-out at the tag and build/$CONFIGURATION is
removed first. Environment: CONFIGURATION (default: Release), XCPACK_DRY_RUN.
"""


class PipelineError(RuntimeError):
    pass


class MissingArgument(PipelineError):
    pass


class NotFound(PipelineError):
    pass


class ArtifactNotFound(NotFound):
    pass


class MissingTool(PipelineError):
    pass


class VersionNotFound(PipelineError):
    pass


class BuildFailed(PipelineError):
    pass


@dataclass(frozen=True)
class Settings:
    repo: Path
    tag: str
    platforms: str
    out: Path | None
    identity: str
    configuration: str
    download_dir: Path
    url_prefix: str
    artifacts: tuple
    dry_run: bool = False

    @property
    def all_platforms(self) -> bool:
        # Any non-empty value selects the multi-platform build; it is never parsed.
        return bool(self.platforms)


@dataclass
class ToolResult:
    ok: bool
    value: str = ""
    reason: str = ""


@dataclass
class Artifact:
    name: str
    source: Path
    bundle: Path
    archive: Path
    checksum: str = CHECKSUM_PLACEHOLDER
    checksum_result: ToolResult | None = None
    signing: list = field(default_factory=list)

    @property
    def manifest_line(self) -> str:
        return f"{self.archive.name} {self.checksum}"


class UsageParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def run(cmd, cwd=None, check=True, capture=False):
    print(f"  $ {' '.join(str(c) for c in cmd)}")
    return subprocess.run(
        [str(c) for c in cmd],
        cwd=cwd,
        check=check,
        text=True,
        capture_output=capture,
    )


def iso_ts(epoch: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(epoch))


def write_event(path: Path, payload: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=True) + "\n")


def bool_from_env(value, default=False):
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def resolve_path(value, base: Path) -> Path:
    path = value if isinstance(value, Path) else Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def load_config(path: Path) -> dict:
    if not path.exists():
        raise NotFound(f"config not found: {path}")
    suffix = path.suffix.lower()
    with path.open("r", encoding="utf-8") as f:
        text = f.read()
    if suffix == ".json":
        cfg = json.loads(text)
    elif suffix in (".yml", ".yaml"):
        cfg = yaml.safe_load(text)
    else:
        try:
            cfg = json.loads(text)
        except json.JSONDecodeError:
            cfg = yaml.safe_load(text)
    cfg = cfg or {}
    if not isinstance(cfg, dict):
        raise PipelineError(f"config must be a mapping: {path}")
    unknown = sorted(set(cfg) - CONFIG_KEYS)
    if unknown:
        raise PipelineError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return cfg


def build_parser() -> argparse.ArgumentParser:
    parser = UsageParser(
        prog="unify-xcframeworks",
        description="Build, sign, zip and checksum Realm XCFrameworks for SwiftPM.",
        epilog=USAGE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--repo", help="Path to realm-swift repository (required)")
    parser.add_argument("--tag", help=f"Version tag (default: {TAG_DEFAULT})")
    parser.add_argument(
        "--platforms",
        help="If provided: builds all platforms. If empty/omitted: builds iOS only",
    )
    parser.add_argument("--out", help="Output directory (optional)")
    parser.add_argument("--identity", help="Code-signing identity (optional)")
    parser.add_argument("--config", help="JSON or YAML file with default values")
    parser.add_argument("--download-dir", help="Publication directory (default: ./Download)")
    parser.add_argument("--url-prefix", help="Base URL used in Package.swift snippets")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan, run nothing")
    return parser


def resolve_settings(args, start_dir: Path, environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    cfg = {}
    cfg_dir = start_dir
    if args.config:
        config_path = resolve_path(args.config, start_dir)
        cfg = load_config(config_path)
        cfg_dir = config_path.parent

    def pick(name, default=None):
        value = getattr(args, name, None)
        if value is not None:
            return value
        value = cfg.get(name)
        if value is not None:
            return value
        return default

    repo_value = pick("repo", "")
    if not repo_value:
        raise MissingArgument("--repo required")
    repo_base = start_dir if args.repo else cfg_dir
    repo = resolve_path(str(repo_value), repo_base)

    out_value = pick("out")
    out = None
    if out_value:
        out = resolve_path(str(out_value), start_dir if args.out else cfg_dir)

    download_value = pick("download_dir")
    if download_value:
        download_dir = resolve_path(str(download_value), start_dir if args.download_dir else cfg_dir)
    else:
        download_dir = start_dir / "Download"

    artifacts = cfg.get("artifacts") or list(ARTIFACTS_DEFAULT)
    if not isinstance(artifacts, list) or not all(isinstance(a, str) and a for a in artifacts):
        raise PipelineError("config 'artifacts' must be a list of names")
    duplicates = sorted({a for a in artifacts if artifacts.count(a) > 1})
    if duplicates:
        raise PipelineError(f"config 'artifacts' lists duplicates: {', '.join(duplicates)}")

    return Settings(
        repo=repo,
        tag=str(pick("tag", "") or TAG_DEFAULT),
        platforms=str(pick("platforms", "") or ""),
        out=out,
        identity=str(pick("identity", "") or ""),
        configuration=environ.get("CONFIGURATION") or cfg.get("configuration") or CONFIGURATION_DEFAULT,
        download_dir=download_dir,
        url_prefix=str(pick("url_prefix", "") or "").rstrip("/"),
        artifacts=tuple(artifacts),
        dry_run=args.dry_run or bool_from_env(environ.get("XCPACK_DRY_RUN")),
    )


def validate(settings: Settings):
    if not settings.repo.is_dir():
        raise NotFound(f"repo not found: {settings.repo}")
    if not (settings.repo / "build.sh").is_file():
        raise NotFound(f"build.sh not found in {settings.repo}")

    missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
    if missing:
        raise MissingTool(f"Missing {', '.join(missing)}")
    if settings.identity and shutil.which("codesign") is None:
        raise MissingTool("codesign not found (required by --identity)")


def detect_xcode_version() -> str:
    try:
        res = run(["xcodebuild", "-version"], capture=True)
    except subprocess.CalledProcessError as exc:
        raise BuildFailed(f"xcodebuild -version failed (exit {exc.returncode})") from exc
    lines = res.stdout.strip().splitlines()
    parts = lines[0].split() if lines else []
    if len(parts) < 2:
        raise BuildFailed(f"Cannot parse Xcode version from: {res.stdout.strip()!r}")
    return parts[1]


def clean_build(settings: Settings):
    build_dir = settings.repo / "build" / settings.configuration
    if build_dir.is_dir():
        shutil.rmtree(build_dir)
        print(f"   Removed: build/{settings.configuration}")


def fetch_tags(repo: Path) -> ToolResult:
    res = subprocess.run(
        ["git", "fetch", "--tags", "--force", "--prune", "--prune-tags"],
        cwd=repo,
        check=False,
        text=True,
        capture_output=True,
    )
    if res.returncode != 0:
        return ToolResult(False, reason=(res.stderr or res.stdout).strip() or f"exit {res.returncode}")
    return ToolResult(True)


def checkout_tag(repo: Path, tag: str) -> str:
    for ref in (f"refs/tags/{tag}", f"tags/{tag}"):
        res = subprocess.run(
            ["git", "checkout", "-f", "--detach", ref],
            cwd=repo,
            check=False,
            text=True,
            capture_output=True,
        )
        if res.returncode == 0:
            break
    else:
        raise VersionNotFound(f"Cannot check out tag {tag}: {(res.stderr or res.stdout).strip()}")

    head = subprocess.run(
        ["git", "rev-parse", "--short", "HEAD"],
        cwd=repo,
        check=False,
        text=True,
        capture_output=True,
    )
    return head.stdout.strip() if head.returncode == 0 else "unknown"


def build_command(settings: Settings) -> list:
    if settings.all_platforms:
        return ["./build.sh", "build"]
    return ["./build.sh", "ios-swift"]


def products_dir(settings: Settings) -> Path:
    root = settings.repo / "build" / settings.configuration
    if settings.all_platforms:
        return root
    return root / "ios"


def run_build(settings: Settings) -> Path:
    cmd = build_command(settings)
    label = "all platforms" if settings.all_platforms else "iOS only"
    print(f"[BUILD] {' '.join(cmd)} ({label})")
    try:
        run(cmd, cwd=settings.repo)
    except subprocess.CalledProcessError as exc:
        raise BuildFailed(f"{' '.join(cmd)} failed (exit {exc.returncode})") from exc
    return products_dir(settings)


def describe_dir(path: Path) -> str:
    if not path.is_dir():
        return "   Directory does not exist"
    entries = sorted(path.iterdir())
    if not entries:
        return "   (empty)"
    return "\n".join(f"   {e.name}{'/' if e.is_dir() else ''}" for e in entries)


def locate_artifact(products: Path, name: str) -> Path:
    source = products / f"{name}.xcframework"
    if not source.is_dir():
        raise ArtifactNotFound(
            f"Framework not found: {source}\n   Expected in: {products}\n{describe_dir(products)}"
        )
    return source


def list_slices(bundle: Path):
    info = bundle / "Info.plist"
    if not info.is_file():
        return None
    try:
        with info.open("rb") as f:
            data = plistlib.load(f)
    except (plistlib.InvalidFileException, ExpatError, ValueError, OSError):
        return None
    libraries = data.get("AvailableLibraries") if isinstance(data, dict) else None
    if not isinstance(libraries, list):
        return None
    return [lib.get("LibraryIdentifier", "?") for lib in libraries if isinstance(lib, dict)]


def has_privacy_manifest(bundle: Path) -> bool:
    return any(bundle.rglob("PrivacyInfo.xcprivacy"))


def advisory_checks(bundle: Path) -> list:
    warnings = []
    slices = list_slices(bundle)
    if slices is None:
        warnings.append("No readable AvailableLibraries in Info.plist")
    else:
        print("   Framework slices:")
        for identifier in slices:
            print(f"     {identifier}")
    if has_privacy_manifest(bundle):
        print("   Privacy manifest present")
    else:
        warnings.append("No PrivacyInfo.xcprivacy")
    for message in warnings:
        print(f"   [WARN] {message}")
    return warnings


def codesign(path: Path, identity: str) -> ToolResult:
    res = subprocess.run(
        ["codesign", "--timestamp", "-v", "--force", "--sign", identity, str(path)],
        check=False,
        text=True,
        capture_output=True,
    )
    if res.returncode != 0:
        return ToolResult(False, value=str(path), reason=(res.stderr or res.stdout).strip() or f"exit {res.returncode}")
    return ToolResult(True, value=str(path))


def sign_bundle(bundle: Path, identity: str) -> list:
    if not identity:
        return []
    print(f"   Signing: {bundle.name}")
    targets = sorted(p for p in bundle.rglob("*.framework") if p.is_dir())
    targets.append(bundle)
    results = [codesign(target, identity) for target in targets]
    for result in results:
        if not result.ok:
            print(f"   [WARN] codesign failed for {result.value}: {result.reason}")
    return results


def compute_checksum(archive: Path) -> ToolResult:
    if not archive.is_file():
        return ToolResult(False, CHECKSUM_PLACEHOLDER, f"archive missing: {archive}")
    try:
        res = subprocess.run(
            ["swift", "package", "compute-checksum", str(archive)],
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError as exc:
        return ToolResult(False, CHECKSUM_PLACEHOLDER, str(exc))
    value = res.stdout.strip()
    if res.returncode != 0 or not value or len(value.split()) != 1:
        reason = res.stderr.strip() or f"exit {res.returncode}"
        return ToolResult(False, CHECKSUM_PLACEHOLDER, reason)
    return ToolResult(True, value)


def archive_name(name: str, xcode_version: str) -> str:
    return f"{name}.xcframework@{xcode_version}.spm.zip"


def package_one(name: str, products: Path, out: Path, xcode_version: str, identity: str, manifest: Path) -> Artifact:
    source = locate_artifact(products, name)
    artifact = Artifact(
        name=name,
        source=source,
        bundle=out / f"{name}.xcframework",
        archive=out / archive_name(name, xcode_version),
    )

    if artifact.bundle.exists():
        shutil.rmtree(artifact.bundle)
    artifact.archive.unlink(missing_ok=True)

    run(["ditto", source, artifact.bundle])
    advisory_checks(artifact.bundle)
    artifact.signing = sign_bundle(artifact.bundle, identity)

    run(["ditto", "-c", "-k", "--sequesterRsrc", "--keepParent", artifact.bundle, artifact.archive])
    print(f"   Packaged: {artifact.archive}")

    artifact.checksum_result = compute_checksum(artifact.archive)
    artifact.checksum = artifact.checksum_result.value
    if not artifact.checksum_result.ok:
        print(f"   [WARN] checksum unavailable: {artifact.checksum_result.reason}")
    print(f"   Checksum: {artifact.checksum}")

    with manifest.open("a", encoding="utf-8") as f:
        f.write(artifact.manifest_line + "\n")
    return artifact


def read_manifest(path: Path) -> list:
    entries = []
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        parts = line.split()
        if not parts:
            continue
        entries.append((parts[0], parts[1] if len(parts) > 1 else ""))
    return entries


def framework_name(filename: str) -> str:
    return filename.split(".xcframework@", 1)[0]


def binary_target_snippet(filename: str, checksum: str, url_prefix: str = "") -> str:
    base = url_prefix.rstrip("/") if url_prefix else URL_PLACEHOLDER
    return (
        f'.binaryTarget(name: "{framework_name(filename)}", '
        f'url: "{base}/{filename}", checksum: "{checksum}"),'
    )


def publish(artifacts: list, manifest: Path, download_dir: Path) -> list:
    download_dir.mkdir(parents=True, exist_ok=True)
    copied = []
    for artifact in artifacts:
        shutil.copy2(artifact.archive, download_dir / artifact.archive.name)
        copied.append(download_dir / artifact.archive.name)
        print(f"   Copied: {artifact.archive.name}")
    shutil.copy2(manifest, download_dir / MANIFEST_NAME)
    copied.append(download_dir / MANIFEST_NAME)
    print(f"   Copied: {MANIFEST_NAME}")
    return copied


def write_summary(path: Path, run_id: str, settings: Settings, xcode_version: str, artifacts: list, error=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write("# Unify XCFrameworks Run Summary\n\n")
        f.write(f"- Run ID: {run_id}\n")
        f.write(f"- Tag: {settings.tag}\n")
        f.write(f"- Configuration: {settings.configuration}\n")
        f.write(f"- Mode: {'all platforms' if settings.all_platforms else 'ios'}\n")
        f.write(f"- Xcode: {xcode_version}\n\n")
        if error:
            f.write(f"- Error: {error}\n\n")
        for artifact in artifacts:
            status = "OK" if artifact.checksum_result and artifact.checksum_result.ok else "CHECKSUM N/A"
            failed = [r for r in artifact.signing if not r.ok]
            if artifact.signing:
                status += ", signed" if not failed else f", signing failed ({len(failed)})"
            f.write(f"- {artifact.archive.name}: {status}\n")


def print_plan(settings: Settings, xcode_version: str):
    products = products_dir(settings)
    out = settings.out or products / "Universal"
    print(f"[DRY-RUN] rm -rf {settings.repo / 'build' / settings.configuration}")
    print(f"[DRY-RUN] git fetch --tags --force --prune --prune-tags (in {settings.repo}, failure tolerated)")
    print(f"[DRY-RUN] git checkout -f --detach refs/tags/{settings.tag} (in {settings.repo})")
    print(f"[DRY-RUN] {' '.join(build_command(settings))} (in {settings.repo})")
    for name in settings.artifacts:
        bundle = out / f"{name}.xcframework"
        archive = out / archive_name(name, xcode_version)
        print(f"[DRY-RUN] ditto {products / bundle.name} {bundle}")
        if settings.identity:
            sign = f"codesign --timestamp -v --force --sign {settings.identity}"
            print(f"[DRY-RUN] {sign} <each *.framework under {bundle}>")
            print(f"[DRY-RUN] {sign} {bundle}")
        print(f"[DRY-RUN] ditto -c -k --sequesterRsrc --keepParent {bundle} {archive}")
        print(f"[DRY-RUN] swift package compute-checksum {archive}")
    print(f"[DRY-RUN] copy archives and {MANIFEST_NAME} -> {settings.download_dir}")


def execute(settings: Settings, run_id: str) -> int:
    xcode_version = detect_xcode_version()
    print(f"Detected Xcode version: {xcode_version}")

    if settings.dry_run:
        print_plan(settings, xcode_version)
        return 0

    print("[CLEAN] Cleaning previous build artifacts...")
    clean_build(settings)

    print(f"[CHECKOUT] {settings.tag}")
    fetched = fetch_tags(settings.repo)
    if not fetched.ok:
        print(f"   [WARN] git fetch failed, using local tags: {fetched.reason}")
    commit = checkout_tag(settings.repo, settings.tag)
    print(f"   On commit: {commit}")

    products = run_build(settings)
    out = settings.out or products / "Universal"
    out.mkdir(parents=True, exist_ok=True)
    events_path = out / EVENTS_NAME
    manifest = out / MANIFEST_NAME
    manifest.unlink(missing_ok=True)

    print(f"Using build products in: {products}")
    print(f"Output will go to: {out}")

    started_at = time.time()
    write_event(
        events_path,
        {
            "event": "run_start",
            "run_id": run_id,
            "timestamp": iso_ts(started_at),
            "repo": str(settings.repo),
            "tag": settings.tag,
            "commit": commit,
            "configuration": settings.configuration,
            "platforms": settings.platforms,
            "build": " ".join(build_command(settings)),
            "xcode_version": xcode_version,
            "fetch_ok": fetched.ok,
        },
    )

    artifacts = []
    error = None
    try:
        for name in settings.artifacts:
            print(f"\n[PACKAGE] {name}")
            artifact = package_one(name, products, out, xcode_version, settings.identity, manifest)
            artifacts.append(artifact)
            write_event(
                events_path,
                {
                    "event": "artifact_packaged",
                    "run_id": run_id,
                    "timestamp": iso_ts(time.time()),
                    "artifact": name,
                    "archive": artifact.archive.name,
                    "checksum": artifact.checksum,
                    "checksum_error": artifact.checksum_result.reason or None,
                    "signing_failures": [r.value for r in artifact.signing if not r.ok],
                },
            )

        print(f"\n[DONE] Checksums saved to: {manifest}")
        print(manifest.read_text(encoding="utf-8"), end="")

        print(f"\n[PUBLISH] Copying files to: {settings.download_dir}")
        publish(artifacts, manifest, settings.download_dir)
    except (PipelineError, subprocess.CalledProcessError) as exc:
        error = str(exc)
        raise
    except OSError as exc:
        error = str(exc)
        raise PipelineError(f"Filesystem error: {exc}") from exc
    finally:
        write_summary(out / SUMMARY_NAME, run_id, settings, xcode_version, artifacts, error)
        if error:
            write_event(
                events_path,
                {"event": "run_error", "run_id": run_id, "timestamp": iso_ts(time.time()), "error": error},
            )

    print("\nCopy-paste into your Package.swift:")
    for filename, checksum in read_manifest(manifest):
        print(f"   {binary_target_snippet(filename, checksum, settings.url_prefix)}")

    finished_at = time.time()
    write_event(
        events_path,
        {
            "event": "run_end",
            "run_id": run_id,
            "timestamp": iso_ts(finished_at),
            "duration_sec": round(finished_at - started_at, 2),
            "artifacts": [a.archive.name for a in artifacts],
            "download_dir": str(settings.download_dir),
        },
    )
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    start_dir = Path.cwd()
    run_id = time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:8]

    try:
        settings = resolve_settings(args, start_dir)
        validate(settings)
        return execute(settings, run_id)
    except subprocess.CalledProcessError as exc:
        cmd = " ".join(str(c) for c in exc.cmd) if isinstance(exc.cmd, list) else exc.cmd
        print(f"[ERROR] {cmd} failed (exit {exc.returncode})", file=sys.stderr)
    except PipelineError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
    except OSError as exc:
        print(f"[ERROR] Filesystem error: {exc}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
