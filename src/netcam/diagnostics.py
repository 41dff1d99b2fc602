"""Command-line helpers for NetCam diagnostics."""
from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import os
import shutil
import sys
from pathlib import Path
from typing import Sequence

from .cameras import Camera
from .config import DEFAULT_CONFIG_PATH, DEFAULT_DATA_DIR, ConfigManager
from .prober import DEFAULT_PROBE_TIMEOUT, StatusProber
from .storage import format_file_size
from .version import APP_VERSION

MEDIA_PIP_HINT = (
    "Install the media dependencies inside the active environment with "
    "`pip install av simplejpeg numpy`."
)

TRANSPORT_PIP_HINT = "Install the websocket client with `pip install websockets`."


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m netcam.diagnostics",
        description="NetCam diagnostics helpers",
    )
    parser.add_argument(
        "addresses",
        nargs="*",
        help="Camera addresses to probe. Defaults to the configured cameras.",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Configuration file listing the known cameras.",
    )
    parser.add_argument(
        "--data-dir",
        default=str(DEFAULT_DATA_DIR),
        help="Recordings root whose storage status is reported.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_PROBE_TIMEOUT,
        help="Seconds to wait for each camera to accept a connection.",
    )
    parser.add_argument(
        "--no-probe",
        action="store_true",
        help="Only report dependency and storage status.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    return parser


def diagnose_media_stack() -> dict[str, object]:
    """Return diagnostic details about the recording and transport dependencies."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str] = {}

    def mark_error(detail: str) -> None:
        nonlocal status
        status = "error"
        details.append(detail)

    def add_hint(text: str) -> None:
        if text not in hints:
            hints.append(text)

    modules = (
        ("numpy", "NumPy", MEDIA_PIP_HINT),
        ("av", "PyAV", MEDIA_PIP_HINT),
        ("simplejpeg", "SimpleJPEG", MEDIA_PIP_HINT),
        ("websockets", "websockets", TRANSPORT_PIP_HINT),
    )

    for module_name, friendly, hint in modules:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            mark_error(f"{friendly} module not found.")
            add_hint(hint)
            continue
        except Exception as exc:  # pragma: no cover - depends on runtime environment
            mark_error(f"{friendly} import failed: {exc}")
            add_hint(hint)
            continue
        version = getattr(module, "__version__", None)
        if isinstance(version, str):
            versions[module_name] = version

    encoder = _detect_encoder() if status == "ok" else None
    if status == "ok" and encoder is None:
        details.append("No MP4 encoder available; recordings stay in MJPEG form.")

    payload: dict[str, object] = {
        "status": status,
        "details": details,
        "versions": versions,
        "mp4_encoder": encoder,
    }
    if hints:
        payload["hints"] = hints
    return payload


def _detect_encoder() -> str | None:
    from .encoding import select_video_codec

    return select_video_codec()


def collect_storage_status(data_dir: Path = DEFAULT_DATA_DIR) -> dict[str, object]:
    """Return writability and free space of the recordings root."""

    payload: dict[str, object] = {"path": str(data_dir)}
    target = data_dir if data_dir.exists() else data_dir.parent
    payload["exists"] = data_dir.exists()
    payload["writable"] = target.exists() and os.access(target, os.W_OK)
    try:
        usage = shutil.disk_usage(target)
    except OSError:  # pragma: no cover - depends on filesystem
        return payload
    payload["free_bytes"] = usage.free
    payload["total_bytes"] = usage.total
    return payload


def probe_cameras(cameras: Sequence[Camera], timeout: float) -> list[dict[str, str]]:
    """Probe ``cameras`` once and return their address, name and status."""

    prober = StatusProber(timeout=timeout)
    updated = asyncio.run(prober.probe_all(cameras))
    return [camera.to_dict() for camera in updated]


def collect_diagnostics(data_dir: Path = DEFAULT_DATA_DIR) -> dict[str, object]:
    """Collect diagnostics payload used by both the CLI and API."""

    return {
        "version": APP_VERSION,
        "dependencies": diagnose_media_stack(),
        "storage": collect_storage_status(data_dir),
    }


def _resolve_cameras(args: argparse.Namespace) -> list[Camera]:
    if args.addresses:
        return [Camera.coerce(address) for address in args.addresses]
    config_path = Path(args.config)
    if not config_path.exists():
        return []
    return ConfigManager(config_path).get_cameras()


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)

    payload = collect_diagnostics(Path(args.data_dir))
    if not args.no_probe:
        try:
            cameras = _resolve_cameras(args)
        except (RuntimeError, ValueError) as exc:
            parser.error(str(exc))
        payload["cameras"] = probe_cameras(cameras, args.timeout)

    if args.json:
        print(json.dumps(payload, indent=2))
        return 0

    print(f"NetCam diagnostics (version {APP_VERSION})")
    dependencies = payload["dependencies"]
    assert isinstance(dependencies, dict)
    if dependencies.get("status") == "ok":
        print("Media and transport stack: OK")
    else:
        print("Media and transport stack issues detected:")
        for detail in dependencies.get("details", []):
            print(f" - {detail}")
        hints_payload = dependencies.get("hints")
        if hints_payload:
            print("Hints:")
            for hint in hints_payload:
                print(f" * {hint}")
    encoder = dependencies.get("mp4_encoder")
    print(f" - MP4 encoder: {encoder or 'unavailable'}")

    storage = payload["storage"]
    assert isinstance(storage, dict)
    state = "writable" if storage.get("writable") else "not writable"
    print(f"Recordings root {storage['path']}: {state}")
    free_bytes = storage.get("free_bytes")
    if isinstance(free_bytes, int):
        print(f" - Free space: {format_file_size(free_bytes)}")

    cameras = payload.get("cameras")
    if isinstance(cameras, list):
        if not cameras:
            print("No cameras to probe.")
        for camera in cameras:
            label = camera.get("name") or camera["ip"]
            print(f" - {label} ({camera['ip']}): {camera['status']}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m netcam.diagnostics`."""

    return run(argv)


__all__ = [
    "build_parser",
    "collect_diagnostics",
    "collect_storage_status",
    "diagnose_media_stack",
    "main",
    "probe_cameras",
    "run",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
