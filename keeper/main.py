"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

from keeper.config.config import Settings
from keeper.config.config_store import ConfigStore
from keeper.config.config_validator import validate_and_log
from keeper.errors import ConfigValidationError, KeeperError, PreflightFailure
from keeper.factory import create_keeper
from keeper.infra.logging_cfg import build_logger
from keeper.monitoring.metrics import start_metrics_server
from keeper.orchestrator.keeper_orchestrator import KeeperState


async def main() -> int:
    """Run the keeper until a signal or a fault. Returns the process exit code."""
    try:
        cfg = Settings.load()
    except ConfigValidationError as exc:
        build_logger("keeper").error(json.dumps({"event": "config_invalid", "error": str(exc)}))
        return 1

    log = build_logger("keeper", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)
    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        return 1

    store = ConfigStore(cfg.deployment_state_path, cfg.keypair_dir)
    try:
        store.load()
        keeper = await create_keeper(cfg, store, logger=log)
    except KeeperError as exc:
        log.error(json.dumps({"event": "startup_failed", "kind": exc.kind, "error": str(exc)}))
        return 1

    srv = await start_metrics_server(keeper.metrics, cfg.metrics_port, health_checker=keeper.health)
    orchestrator = keeper.orchestrator

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.stop)
        except NotImplementedError:
            pass

    exit_code = 0
    try:
        await orchestrator.run_forever()
        if orchestrator.state is KeeperState.FAULTED:
            exit_code = 1
    except PreflightFailure as exc:
        log.error(json.dumps({
            "event": "preflight_failed",
            "error": str(exc),
            "artifact": str(keeper.preflight.artifact_path),
        }))
        exit_code = 1
    finally:
        log.info("Closing servers and connections...")
        srv.close()
        await srv.wait_closed()
        await keeper.close()
        log.info("Shutdown complete")
    return exit_code


def run() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nKeeper stopped by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    run()
