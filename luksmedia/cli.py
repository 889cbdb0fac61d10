"""CLI entrypoint for the encrypted removable-media provisioner."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from importlib import metadata
from typing import Any, Dict, NoReturn, Optional

from . import executil
from .errors import ExternalToolFailure, LuksMediaError
from .executil import append_jsonl, resolve_log_path, trace
from .model import Options
from .paths import logs_dir
from .workflow import Pipeline, new_context, plan_report

RESULT_CODES: Dict[str, int] = {
    "PROVISION_OK": 0,
    "PLAN_OK": 0,
    "FAIL_DEVICE_MOUNTED": 2,
    "FAIL_DEVICE_BUSY": 3,
    "FAIL_LIVE_DISK": 4,
    "FAIL_NOT_CONFIRMED": 5,
    "FAIL_PARTITIONING": 10,
    "FAIL_LUKS": 11,
    "FAIL_AUTH": 12,
    "FAIL_LVM": 13,
    "FAIL_MKFS": 14,
    "FAIL_INSTALLER_TIMEOUT": 15,
    "FAIL_KEY_MATERIAL": 16,
    "FAIL_KEY_BINDING": 17,
    "FAIL_UNHANDLED": 19,
    "FAIL_USAGE": 64,
    "FAIL_NOT_BLOCK_DEVICE": 65,
    "FAIL_DEVICE_TOO_SMALL": 66,
    "FAIL_NOT_ROOT": 67,
}

RESULT_LOG_PATH: Optional[str] = None
CLI_START_MONO = time.perf_counter()


def _version() -> str:
    try:
        return metadata.version("luksmedia")
    except metadata.PackageNotFoundError:
        return "0+unknown"


def _result_log_path() -> str:
    global RESULT_LOG_PATH
    if RESULT_LOG_PATH:
        return RESULT_LOG_PATH
    path = resolve_log_path()
    if not path:
        path = os.path.join(logs_dir(), executil.LOG_NAME)
    RESULT_LOG_PATH = path
    return path


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> NoReturn:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload.setdefault("log_path", _result_log_path())
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    append_jsonl(_result_log_path(), payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    why = payload.get("why")
    if why and not kind.endswith("_OK"):
        print(f"[FAIL] {why}", file=sys.stderr)
    code = RESULT_CODES.get(kind, RESULT_CODES["FAIL_UNHANDLED"]) if exit_code is None else exit_code
    raise SystemExit(code)


class _Parser(argparse.ArgumentParser):
    """Reports malformed arguments as a FAIL_USAGE result."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        _emit_result("FAIL_USAGE", extra={"why": message})


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{text!r} is not a whole number of GiB") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError(f"{text!r} must be greater than zero")
    return value


def _seconds(text: str) -> float:
    try:
        value = float(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{text!r} is not a number of seconds") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"{text!r} must not be negative")
    return value


def build_parser() -> argparse.ArgumentParser:
    defaults = Options(device="")
    parser = _Parser(
        prog="luksmedia",
        description="Partition, encrypt and prepare a removable drive for an encrypted Ubuntu install.",
    )
    parser.add_argument("device", help="whole-disk block device, e.g. /dev/sdb")
    parser.add_argument("--root-size", type=_positive_int, default=defaults.root_size_gib, metavar="GIB")
    parser.add_argument("--swap-size", type=_positive_int, default=defaults.swap_size_gib, metavar="GIB")
    parser.add_argument("--data-name", default=defaults.data_label, metavar="LABEL",
                        help="name of the exFAT data partition: up to 11 printable characters, "
                             "spaces allowed inside, none of \" * / : < > ? \\ |")
    parser.add_argument("--vg-name", default=defaults.vg_name)
    parser.add_argument("--target", default=defaults.target_root, metavar="DIR",
                        help="where the installer mounts the new system")
    parser.add_argument("--installer-timeout", type=_seconds, default=defaults.installer_timeout, metavar="SEC",
                        help="give up waiting for the installer after SEC seconds (0 waits forever)")
    parser.add_argument("--poll-interval", type=_seconds, default=defaults.poll_interval, metavar="SEC")
    parser.add_argument("--yes", dest="assume_yes", action="store_true",
                        help="do not ask before erasing the device")
    parser.add_argument("--overwrite", action="store_true",
                        help="replace existing LUKS headers")
    parser.add_argument("--plan", action="store_true", help="print the plan and exit")
    parser.add_argument("--dry-run", action="store_true", help="log every command without running it")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")
    return parser


def options_from_args(args: argparse.Namespace) -> Options:
    return Options(
        device=args.device,
        root_size_gib=args.root_size,
        swap_size_gib=args.swap_size,
        data_label=args.data_name,
        vg_name=args.vg_name,
        target_root=args.target,
        installer_timeout=args.installer_timeout,
        poll_interval=args.poll_interval,
        verbose=args.verbose,
        assume_yes=args.assume_yes,
        overwrite=args.overwrite,
        dry_run=args.dry_run,
        plan_only=args.plan,
    )


def _failure_extra(exc: BaseException, device: str) -> Dict[str, Any]:
    extra: Dict[str, Any] = {"device": device, "why": str(exc), "error": type(exc).__name__}
    step = getattr(exc, "step", None)
    if step:
        extra["step"] = step
    if isinstance(exc, ExternalToolFailure):
        extra["cmd"] = exc.cmd
        extra["rc"] = exc.rc
    return extra


def _main_impl(argv: Optional[list[str]] = None) -> NoReturn:
    parser = build_parser()
    args = parser.parse_args(argv)
    opts = options_from_args(args)
    executil.VERBOSE = opts.verbose
    if opts.poll_interval <= 0:
        _emit_result("FAIL_USAGE", extra={"why": "--poll-interval must be greater than zero"})

    trace(
        "cli.args",
        device=opts.device,
        root_size_gib=opts.root_size_gib,
        swap_size_gib=opts.swap_size_gib,
        data_label=opts.data_label,
        vg_name=opts.vg_name,
        target=opts.target_root,
        plan=opts.plan_only,
        dry_run=opts.dry_run,
        assume_yes=opts.assume_yes,
        overwrite=opts.overwrite,
    )

    ctx = new_context(opts)
    pipeline = Pipeline()
    try:
        if opts.plan_only:
            _emit_result("PLAN_OK", extra={"plan": plan_report(ctx, pipeline)})
        report = pipeline.run(ctx)
    except LuksMediaError as exc:
        _emit_result(exc.result, extra=_failure_extra(exc, opts.device))
    except KeyboardInterrupt:
        _emit_result("FAIL_UNHANDLED", extra={"device": opts.device, "why": "interrupted"})
    _emit_result("PROVISION_OK", extra={"device": opts.device, "report": report, "dry_run": opts.dry_run})


def main(argv: Optional[list[str]] = None) -> int:
    try:
        _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"why": str(exc), "error": type(exc).__name__})
    return 0


if __name__ == "__main__":
    sys.exit(main())
