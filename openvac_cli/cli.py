from __future__ import annotations

import argparse
import json
import os
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any

from openvac_core.config import get_config
from openvac_core.conversion.events import Done, is_terminal
from openvac_core.conversion.orchestrator import ConversionOrchestrator
from openvac_core.conversion.settings import ConversionSettings
from openvac_core.frames.store import FrameStore, FrameTier
from openvac_core.jobs import JobService
from openvac_core.preview import PreviewSampler
from openvac_core.workspace import WorkspaceFactory

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8082
SERVICE_TARGET = "local_adapter.conversion_service:app"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _settings_from_args(args: argparse.Namespace) -> ConversionSettings:
    return ConversionSettings.from_form(
        {
            "fps": args.fps,
            "aspect": args.aspect,
            "threshold": args.threshold,
            "motion": args.motion,
        }
    )


def _workspaces() -> WorkspaceFactory:
    return WorkspaceFactory(get_config().scratch_root)


def _uvicorn_cmd(target: str, host: str, port: int, log_level: str) -> list[str]:
    return [
        "uvicorn",
        target,
        "--host",
        host,
        "--port",
        str(port),
        "--log-level",
        log_level,
    ]


def cmd_serve(args: argparse.Namespace) -> int:
    cmd = _uvicorn_cmd(SERVICE_TARGET, args.host, args.port, args.log_level)
    if args.dry_run:
        print(" ".join(cmd))
        return 0
    proc = subprocess.Popen(cmd)
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait(timeout=5)
        return 0


def cmd_convert(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    if args.url:
        from openvac_sdk.client import OpenvacClient

        events = OpenvacClient(base_url=args.url).convert(args.input, settings)
    else:
        config = get_config()
        workspaces = _workspaces()
        jobs = JobService.from_config(
            config,
            workspaces,
            ConversionOrchestrator.from_config(config),
        )
        job = jobs.submit_path(args.input, settings)
        print(f"job_id={job.id}", file=sys.stderr)
        events = jobs.start(job).events()

    ok = False
    for event in events:
        print(json.dumps(event.to_dict()), flush=True)
        if is_terminal(event):
            ok = isinstance(event, Done)
    return 0 if ok else 1


def cmd_preview(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    if args.url:
        from openvac_sdk.client import OpenvacClient

        frames = OpenvacClient(base_url=args.url).preview(args.input, settings)
        _print_json({"frames": {tier.value: texts for tier, texts in frames.items()}})
        return 0

    config = get_config()
    workspaces = _workspaces()
    sampler = PreviewSampler.from_config(
        config,
        workspaces,
        ConversionOrchestrator.from_config(config),
    )
    result = sampler.sample(args.input, settings)
    _print_json(result.to_dict())
    return 0


def cmd_frames(args: argparse.Namespace) -> int:
    if args.url:
        from openvac_sdk.client import OpenvacClient

        client = OpenvacClient(base_url=args.url)
        if args.index is not None:
            text = client.frame(args.job_id, args.tier or FrameTier.MEDIUM, args.index)
            if text is None:
                print("Frame not found", file=sys.stderr)
                return 1
            sys.stdout.write(text)
            return 0
        tier, frames = client.load_frames(args.job_id, args.tier)
    else:
        store = FrameStore(_workspaces())
        if args.index is not None:
            text = store.read(args.job_id, args.tier or FrameTier.MEDIUM, args.index)
            if text is None:
                print("Frame not found", file=sys.stderr)
                return 1
            sys.stdout.write(text)
            return 0
        tier, artifacts = store.best_available(args.job_id, args.tier)
        frames = [artifact.text for artifact in artifacts]

    _print_json(
        {
            "jobId": args.job_id,
            "tier": tier.value if tier is not None else None,
            "frameCount": len(frames),
        }
    )
    return 0 if tier is not None else 1


def cmd_reap(args: argparse.Namespace) -> int:
    ttl = args.ttl if args.ttl is not None else get_config().job_ttl_seconds
    if ttl <= 0:
        print("Reaping disabled: set JOB_TTL_SECONDS or pass --ttl", file=sys.stderr)
        return 2
    removed = _workspaces().reap(ttl)
    _print_json({"removed": [path.name for path in removed]})
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    config = get_config()
    checks: list[tuple[str, bool, str]] = []

    def check_bin(name: str) -> None:
        location = shutil.which(name)
        checks.append((name, location is not None, location or "missing"))

    check_bin(config.ffmpeg_bin)
    check_bin(config.ffprobe_bin)
    check_bin(config.converter_shell)

    script = Path(config.converter_script)
    checks.append(("OPENVAC_CONVERTER_SCRIPT", script.is_file(), str(script)))

    scratch = Path(config.scratch_root)
    try:
        scratch.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=scratch):
            pass
        writable = True
    except OSError:
        writable = False
    checks.append(("OPENVAC_SCRATCH_ROOT", writable, str(scratch)))

    ok = True
    for name, passed, info in checks:
        status = "ok" if passed else "missing"
        if not passed:
            ok = False
        print(f"{name}: {status} ({info})")

    return 0 if ok else 1


def _add_settings_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--input", required=True, help="Source video path")
    parser.add_argument("--fps")
    parser.add_argument("--aspect")
    parser.add_argument("--threshold")
    parser.add_argument("--motion")
    parser.add_argument("--url", default=os.getenv("OPENVAC_URL"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="openvac")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the conversion service")
    serve_parser.add_argument("--host", default=DEFAULT_HOST)
    serve_parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve_parser.add_argument("--log-level", default="info")
    serve_parser.add_argument("--dry-run", action="store_true", help="Print command only")
    serve_parser.set_defaults(func=cmd_serve)

    convert_parser = subparsers.add_parser("convert", help="Convert a video to text frames")
    _add_settings_arguments(convert_parser)
    convert_parser.set_defaults(func=cmd_convert)

    preview_parser = subparsers.add_parser("preview", help="Render a short preview")
    _add_settings_arguments(preview_parser)
    preview_parser.set_defaults(func=cmd_preview)

    frames_parser = subparsers.add_parser("frames", help="Inspect converted frames")
    frames_parser.add_argument("--job-id", required=True)
    frames_parser.add_argument("--tier", choices=[tier.value for tier in FrameTier])
    frames_parser.add_argument("--index", type=int)
    frames_parser.add_argument("--url", default=os.getenv("OPENVAC_URL"))
    frames_parser.set_defaults(func=cmd_frames)

    reap_parser = subparsers.add_parser("reap", help="Remove expired job workspaces")
    reap_parser.add_argument("--ttl", type=float)
    reap_parser.set_defaults(func=cmd_reap)

    doctor_parser = subparsers.add_parser("doctor", help="Check local prerequisites")
    doctor_parser.set_defaults(func=cmd_doctor)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 2
    try:
        return args.func(args)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
