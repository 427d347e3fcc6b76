"""adpool — run a command against an exclusively claimed Android device.

Usage:
    adpool run CMD [ARGS...]       Claim a device, run CMD with ANDROID_SERIAL set
    adpool CMD [ARGS...]           Same as run (backward compat)
    adpool status                  Show the ledger and semaphore as JSON
    adpool release SERIAL          Force a slot free (manual recovery)
"""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path

from adpool.config import PoolConfig
from adpool.device.runtime import AdbRuntime
from adpool.models import PoolError
from adpool.pool.allocator import DevicePool

logger = logging.getLogger("adpool.cli")

SUBCOMMANDS = {"run", "status", "release"}
# Global flags that consume the following argv token
_VALUE_FLAGS = {"--adb", "--runtime-dir", "--semaphore", "--env-var", "--boot-timeout"}


def _configure_logging(verbose: bool) -> None:
    debug = verbose or os.environ.get("ADPOOL_DEBUG", "") not in ("", "0")
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _exit_code(returncode: int) -> int:
    """Map a subprocess return code to a shell exit status."""
    if returncode < 0:
        # Killed by a signal
        return 128 - returncode
    return returncode


def _normalize_argv(argv: list[str]) -> list[str]:
    """Insert 'run' before the command when no subcommand was given."""
    i = 0
    while i < len(argv):
        token = argv[i]
        if token == "--":
            return argv[:i] + ["run"] + argv[i + 1:]
        if token in _VALUE_FLAGS:
            i += 2
            continue
        if token.startswith("-"):
            i += 1
            continue
        if token in SUBCOMMANDS:
            return argv
        return argv[:i] + ["run"] + argv[i:]
    return argv


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adpool",
        description="adpool — share attached Android devices between concurrent processes",
    )
    parser.add_argument("--adb", dest="adb_path", default=None, help="Path to adb (default: adb)")
    parser.add_argument(
        "--runtime-dir", type=Path, default=None,
        help="Directory holding the ledger file (default: $XDG_RUNTIME_DIR/adp)",
    )
    parser.add_argument(
        "--semaphore", dest="semaphore_name", default=None,
        help="Name of the shared semaphore (default: /adp)",
    )
    parser.add_argument(
        "--env-var", default=None,
        help="Environment variable that receives the serial (default: ANDROID_SERIAL)",
    )
    parser.add_argument(
        "--boot-timeout", dest="boot_attempts", type=int, default=None,
        help="Seconds to wait for each boot property (default: 60)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Claim a device and run a command on it")
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command and arguments")

    subparsers.add_parser("status", help="Show the ledger and semaphore state")

    release_parser = subparsers.add_parser("release", help="Force a device free in the ledger")
    release_parser.add_argument("serial", help="Serial of the device to free")

    return parser


def _make_pool(config: PoolConfig) -> DevicePool:
    return DevicePool(AdbRuntime(config.adb_path), config)


def _cmd_run(args: argparse.Namespace, config: PoolConfig) -> int:
    """Claim a device, run the command on it, release, forward its status."""
    cmd = list(args.cmd)
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]
    if not cmd:
        print("adpool: error: missing command", file=sys.stderr)
        return 2

    pool = _make_pool(config)
    resource = pool.acquire(os.getpid())
    env = dict(os.environ)
    env[config.env_var] = resource.serial
    logger.info("%s=%s %s", config.env_var, resource.serial, " ".join(cmd))

    try:
        result = subprocess.run(cmd, env=env)
    except OSError as e:
        print(f"adpool: error: failed to run {cmd[0]}: {e}", file=sys.stderr)
        return 127
    finally:
        resource.release()

    return _exit_code(result.returncode)


def _cmd_status(args: argparse.Namespace, config: PoolConfig) -> int:
    pool = _make_pool(config)
    print(pool.status().model_dump_json(indent=2))
    return 0


def _cmd_release(args: argparse.Namespace, config: PoolConfig) -> int:
    pool = _make_pool(config)
    logger.warning("Forcing release of %s", args.serial)
    pool.release_device(args.serial)
    print(f"Released {args.serial}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, dispatch, and return the process exit status."""
    if argv is None:
        argv = sys.argv[1:]
    parser = _build_parser()
    args = parser.parse_args(_normalize_argv(list(argv)))

    if args.command is None:
        parser.print_help(sys.stderr)
        return 2

    _configure_logging(args.verbose)

    config = PoolConfig.load(
        adb_path=args.adb_path,
        runtime_dir=args.runtime_dir,
        semaphore_name=args.semaphore_name,
        env_var=args.env_var,
        boot_attempts=args.boot_attempts,
    )

    try:
        if args.command == "run":
            return _cmd_run(args, config)
        elif args.command == "status":
            return _cmd_status(args, config)
        elif args.command == "release":
            return _cmd_release(args, config)
    except PoolError as e:
        print(f"adpool: error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 2


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
