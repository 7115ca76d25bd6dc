#!/usr/bin/env python3
"""Voice-activated recorder daemon: wires configuration, devices and the controller."""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from yaptabber import config as config_module
from yaptabber.audio_source import CommandAudioSource
from yaptabber.blob_store import build_blob_store
from yaptabber.config import ConfigError
from yaptabber.controller import RecordingController, RecordingLimits
from yaptabber.devices import resolve_devices
from yaptabber.errors import StartupResolutionError
from yaptabber.events import FaultRaised
from yaptabber.ffmpeg_io import CaptureOptions
from yaptabber.level_monitor import AudioLevelMonitor
from yaptabber.process_supervisor import ProcessSupervisor
from yaptabber.session import DevicePair
from yaptabber.upload import UploadPipeline

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Voice-activated screen/webcam/audio recorder.")
    parser.add_argument("--endpoint", help="S3 endpoint")
    parser.add_argument("--region", help="S3 region")
    parser.add_argument("--key", help="AWS access key")
    parser.add_argument("--secret", help="AWS secret key")
    parser.add_argument("--bucket", help="Destination bucket (default from config).")
    parser.add_argument("--temp-dir", help="Temporary directory for recordings")
    parser.add_argument("--config", help="Path to a config.yaml (overrides YAPTABBER_CONFIG).")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    return parser


def cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    s3_values = {
        "endpoint": args.endpoint,
        "region": args.region,
        "access_key_id": args.key,
        "secret_access_key": args.secret,
    }
    s3_values = {k: v for k, v in s3_values.items() if v}
    if s3_values:
        overrides.setdefault("storage", {})["s3"] = s3_values
    if args.bucket:
        overrides.setdefault("storage", {})["bucket"] = args.bucket
    if args.temp_dir:
        overrides["paths"] = {"tmp_dir": args.temp_dir}
    return overrides


def load_config(args: argparse.Namespace) -> Dict[str, Any]:
    if args.config:
        os.environ["YAPTABBER_CONFIG"] = args.config
    config_module.reload_cfg()
    cfg = config_module.apply_overrides(cli_overrides(args))
    config_module.require_storage_credentials(cfg)
    return cfg


def build_controller(cfg: Dict[str, Any], devices: DevicePair) -> RecordingController:
    limits = RecordingLimits.from_cfg(cfg.get("recording"))
    storage_cfg = cfg.get("storage") or {}
    supervisor = ProcessSupervisor(
        options=CaptureOptions.from_cfg(cfg.get("capture")),
        force_kill_timeout=limits.force_kill_timeout_sec,
    )
    pipeline = UploadPipeline(build_blob_store(storage_cfg), bucket=str(storage_cfg.get("bucket")))
    return RecordingController(
        supervisor=supervisor,
        pipeline=pipeline,
        devices=devices,
        temp_root=Path(cfg["paths"]["tmp_dir"]),
        limits=limits,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    log = logging.getLogger("recorder")

    try:
        cfg = load_config(args)
    except ConfigError as exc:
        log.error("Failed to start recorder: %s", exc)
        return 1
    if cfg.get("logging", {}).get("dev_mode"):
        logging.getLogger().setLevel(logging.DEBUG)
    config_path = config_module.active_config_path()
    if config_path is not None:
        log.info("Using config %s", config_path)
    else:
        log.info(
            "No config file found (searched: %s)",
            ", ".join(str(p) for p in config_module.search_paths()),
        )

    log.info("Starting voice-activated recorder...")
    try:
        devices = resolve_devices(cfg.get("capture"), CaptureOptions.from_cfg(cfg.get("capture")))
        controller = build_controller(cfg, devices)
    except (StartupResolutionError, ConfigError) as exc:
        log.error("Failed to start recorder: %s", exc)
        return 1

    limits = controller.limits
    monitor = AudioLevelMonitor(
        controller.post,
        is_session_active=lambda: controller.session_active,
        scheduler=controller.scheduler,
        threshold_db=limits.level_threshold_db,
        grace_sec=limits.silence_grace_sec,
        on_fault=lambda exc: controller.post(FaultRaised(exc, "level_monitor")),
    )
    controller.attach_monitor(monitor)
    source = CommandAudioSource.from_cfg(cfg.get("audio"))

    def handle_signal(signum, frame):  # noqa
        log.info("received signal %s, cleaning up...", signum)
        controller.request_shutdown(f"signal {signum}", exit_code=0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    def handle_thread_exception(hook_args: threading.ExceptHookArgs) -> None:
        log.error("Unhandled exception in %s: %r", getattr(hook_args.thread, "name", "?"), hook_args.exc_value)
        controller.post(FaultRaised(hook_args.exc_value, "thread"))

    threading.excepthook = handle_thread_exception

    try:
        source.start()
        monitor.start(source)
        exit_code = controller.run()
    except Exception as exc:  # noqa: BLE001 - any escape is fatal
        log.exception("Uncaught exception: %r", exc)
        controller.shutdown(f"uncaught exception: {exc!r}", exit_code=1)
        exit_code = 1
    finally:
        monitor.stop()
        source.stop()
    log.info("recorder exited with status %s", exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
