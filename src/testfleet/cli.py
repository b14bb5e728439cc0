"""CLI entrypoint for testfleet."""

from __future__ import annotations

import asyncio
import shlex
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

import fire  # type: ignore[import-untyped]

from testfleet.config import ConfigError, YamlConfigResolver, load_config
from testfleet.devices.registry import DeviceRegistry, registry_namespaces_for
from testfleet.errors import MergeFailureError, TestfleetError
from testfleet.lifecycle.primary import PrimaryContext
from testfleet.logging_setup import configure_logging
from testfleet.logs.merge import LogMergePipeline
from testfleet.models.options import GlobalSetupOptions


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for CLI."""
    configure_logging(log_level=level)


async def _run_workers(command: list[str], workers: int) -> list[int]:
    processes = [
        await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "testfleet.lifecycle.worker",
            "--worker-index",
            str(index),
            "--",
            *command,
        )
        for index in range(1, workers + 1)
    ]
    return list(await asyncio.gather(*(process.wait() for process in processes)))


async def _run(config_path: Path, command: list[str], workers: int) -> int:
    context = PrimaryContext(config_resolver=YamlConfigResolver())
    try:
        await context.global_setup(
            GlobalSetupOptions(config_path=config_path, argv=tuple(sys.argv[1:]))
        )
        codes = await _run_workers(command, workers)
    finally:
        await context.global_teardown()
    failed = [code for code in codes if code != 0]
    return failed[0] if failed else 0


class Testfleet:
    """testfleet CLI - distributed end-to-end test run orchestration."""

    __test__ = False

    def run(self, config: str, command: str, workers: int = 1) -> None:
        """Run `command` in N worker processes coordinated by this process.

        Args:
            config: Path to YAML config file
            command: Test command for each worker (shell-quoted string)
            workers: Number of worker processes
        """
        if workers < 1:
            print("✗ workers must be >= 1", file=sys.stderr)
            sys.exit(2)
        try:
            code = asyncio.run(_run(Path(config), shlex.split(command), workers))
        except ConfigError as e:
            print(f"✗ Config invalid: {e}", file=sys.stderr)
            sys.exit(1)
        except TestfleetError as e:
            print(f"✗ Run aborted: {e}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            sys.exit(130)
        sys.exit(code)

    def validate(self, config: str) -> None:
        """Validate config file without running.

        Args:
            config: Path to YAML config file
        """
        config_path = Path(config)
        try:
            cfg = load_config(config_path)
        except ConfigError as e:
            print(f"✗ Config invalid: {e}", file=sys.stderr)
            sys.exit(1)

        print(f"✓ Config valid: {config_path}")
        print(f"  Device type: {cfg.device.type}")
        print(f"  Device pool: {cfg.device.devices}")
        print(f"  Keep lock file: {cfg.behavior.init.keep_lock_file}")
        print(f"  Relay auto-start: {cfg.session.auto_start} server={cfg.session.server}")
        print(f"  Artifacts: {cfg.artifacts.root_dir} (logs enabled={cfg.artifacts.logs_enabled})")

    def merge_logs(self, root_dir: str, *log_files: str, name: str = "testfleet") -> None:
        """Merge per-process JSON-lines logs into run artifacts.

        Args:
            root_dir: Directory receiving the merged outputs
            log_files: Per-process log files, primary first
            name: Base name of the output files
        """
        setup_logging()
        pipeline = LogMergePipeline(name=name)
        try:
            result = asyncio.run(pipeline.run(list(log_files), Path(root_dir)))
        except MergeFailureError as e:
            print(f"✗ Merge failed: {e}", file=sys.stderr)
            sys.exit(1)
        if result is None:
            print("Nothing to merge")
            return
        for output in result.outputs:
            print(f"✓ {output}")

    def reset_locks(self, device_type: str, registry_dir: str | None = None) -> None:
        """Clear device lock files for a device type.

        Args:
            device_type: Device type, e.g. ios.simulator or android.emulator
            registry_dir: Override the registry directory
        """
        setup_logging()
        directory = Path(registry_dir) if registry_dir else None

        async def _reset() -> None:
            for namespace in registry_namespaces_for(device_type.lower()):
                await DeviceRegistry.for_platform(namespace, directory).reset()

        try:
            asyncio.run(_reset())
        except TestfleetError as e:
            print(f"✗ Reset failed: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"✓ Device locks reset for {device_type}")


def main() -> None:
    """Main CLI entrypoint."""
    if len(sys.argv) == 2 and sys.argv[1] in ("--help", "-h"):
        sys.argv.pop()
    fire.Fire(Testfleet)


if __name__ == "__main__":
    main()
