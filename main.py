"""
Permalink Resolver — Entry Point

Usage:
    python main.py                      # one run, exit when it is back to idle
    python main.py --config path/to/config.yaml
    python main.py --status             # print the last persisted status snapshot
    python main.py --run-script         # trigger the remote extractor script
    python main.py --clear-drive        # trigger the remote drive cleanup script

With ``monitor_enabled: true`` the process keeps serving after the run so
further runs can be started from the dashboard.
"""

import argparse
import json
import signal
import sys
import threading

from playwright.sync_api import sync_playwright

from permalink_resolver.errors import ReportError
from permalink_resolver.monitor_server import start_monitor_server
from permalink_resolver.reporter import RemoteScriptClient
from permalink_resolver.scheduler import ResolutionScheduler
from permalink_resolver.status import StatusPublisher, read_status_file
from permalink_resolver.surface import PlaywrightSurface
from permalink_resolver.utils import setup_logging, load_config


def _print_status(status_file: str) -> int:
    state = read_status_file(status_file)
    if state is None:
        print(f"No status recorded yet ({status_file})")
        return 1
    print(json.dumps(state.to_dict(), indent=2))
    return 0


def _trigger_script(logger, config, action: str) -> int:
    client = RemoteScriptClient.from_config(config)
    try:
        body = client.trigger(action)
    except ReportError as e:
        logger.error(f"Script '{action}' failed: {e}")
        return 1
    logger.info(f"Script '{action}' OK: {body[:400]}")
    return 0


def main() -> int:
    # ── Parse arguments ──────────────────────────────────────────────
    parser = argparse.ArgumentParser(
        description="Resolve forum permalinks to their final URLs and report them"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--status", action="store_true", help="Print the last persisted status and exit")
    group.add_argument("--run-script", action="store_true", help="Trigger the remote extractor script")
    group.add_argument("--clear-drive", action="store_true", help="Trigger the remote drive cleanup script")
    args = parser.parse_args()

    # ── Setup ────────────────────────────────────────────────────────
    config = load_config(args.config)
    logger = setup_logging(debug=config.debug)

    if args.status:
        return _print_status(config.status_file)
    if args.run_script:
        return _trigger_script(logger, config, RemoteScriptClient.ACTION_RUN)
    if args.clear_drive:
        return _trigger_script(logger, config, RemoteScriptClient.ACTION_CLEAR)

    logger.info("Configuration loaded:")
    logger.info(f"  Link file:        {config.file_fetch_url}")
    logger.info(f"  Report endpoint:  {config.post_back_url or '(none)'}")
    logger.info(f"  Concurrency:      {config.max_concurrent}")
    logger.info(f"  Poll interval:    {config.check_interval_ms} ms")
    logger.info(f"  Window mode:      {config.window_mode}")
    logger.info(f"  Headless:         {config.headless}")
    logger.info(f"  Monitor:          {'enabled' if config.monitor_enabled else 'disabled'}")

    publisher = StatusPublisher(config.status_file)
    stop_event = threading.Event()

    with sync_playwright() as p:
        launch_args: list[str] = []
        if config.headless:
            # Prevent navigator.webdriver from returning true (bot detection)
            launch_args.append("--disable-blink-features=AutomationControlled")

        browser = p.chromium.launch(headless=config.headless, args=launch_args or None)
        scheduler = ResolutionScheduler(PlaywrightSurface(browser), config, publisher=publisher)

        # Ctrl+C: first press aborts the run, second one stops the loop.
        def _on_sigint(*_):
            if not scheduler.abort():
                stop_event.set()
            print("\n⚠ Ctrl+C pressed. Stopping...")

        signal.signal(signal.SIGINT, _on_sigint)

        try:
            if config.monitor_enabled:
                start_monitor_server(scheduler, publisher, host=config.monitor_host, port=config.monitor_port)
                scheduler.start()
                scheduler.serve(stop_event)
                final = scheduler.last_terminal
            else:
                final = scheduler.run_once(stop_event)
        finally:
            logger.info("Closing browser...")
            try:
                browser.close()
            except Exception:
                pass

    if final is None:
        logger.warning("Stopped before the run finished.")
        return 1
    logger.info(f"Final status: {final.phase} — {final.message}")
    return 0 if final.phase == "done" else 1


if __name__ == "__main__":
    sys.exit(main())
