"""
Monitor Server — local HTTP observer/control surface for the scheduler.

A lightweight Flask app running on a daemon thread next to the scheduler.
It only talks to the scheduler through its control surface
(start / abort / get_status) and to the publisher through subscribe();
the scheduler's own thread does all the browser work.

Endpoints:
    GET  /health         — liveness + uptime
    GET  /status         — latest RunState snapshot
    POST /start          — request a run
    POST /abort          — request an abort (idempotent)
    GET  /status/stream  — server-sent events, one per published snapshot
    GET  /dashboard      — HTML page showing the live snapshot
"""

import json
import logging
import os
import queue
import threading
import time

from flask import Flask, Response, jsonify, render_template

from permalink_resolver.status import ACTIVE_PHASES
from permalink_resolver.utils import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

_KEEPALIVE_S = 30


def create_app(scheduler, publisher) -> Flask:
    """Build the monitor app bound to one scheduler / publisher pair."""
    app = Flask(
        __name__,
        template_folder=os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates"),
    )
    started_at = time.time()

    # Suppress Flask's default request logging — we log manually
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    @app.route("/health", methods=["GET"])
    def health():
        """Health check — verifies the server is running."""
        return jsonify({"status": "ok", "uptime": int(time.time() - started_at)})

    @app.route("/status", methods=["GET"])
    def status():
        return jsonify(scheduler.get_status().to_dict())

    @app.route("/start", methods=["POST"])
    def start():
        """Request a run. 409 while one is already active."""
        current = scheduler.get_status()
        if current.phase in ACTIVE_PHASES:
            return jsonify({"ok": False, "error": f"run already {current.phase}"}), 409
        scheduler.start()
        logger.info("  [monitor] Start requested")
        return jsonify({"ok": True})

    @app.route("/abort", methods=["POST"])
    def abort():
        accepted = scheduler.abort()
        return jsonify({"ok": True, "accepted": accepted})

    @app.route("/status/stream")
    def status_stream():
        """SSE endpoint: stream every published snapshot to the browser."""

        def _generate():
            sub_q = publisher.subscribe()
            try:
                while True:
                    try:
                        snapshot = sub_q.get(timeout=_KEEPALIVE_S)
                        yield f"event: status\ndata: {json.dumps(snapshot.to_dict())}\n\n"
                    except queue.Empty:
                        # Send keepalive comment to prevent timeout
                        yield ": keepalive\n\n"
            except GeneratorExit:
                pass
            finally:
                publisher.unsubscribe(sub_q)

        return Response(_generate(), mimetype="text/event-stream",
                        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})

    @app.route("/dashboard")
    def dashboard():
        """Serve the dashboard with the current snapshot pre-rendered."""
        return render_template(
            "dashboard.html",
            state=scheduler.get_status(),
            uptime=int(time.time() - started_at),
        )

    return app


def start_monitor_server(scheduler, publisher, *, host: str = "127.0.0.1", port: int = 8099) -> threading.Thread:
    """Run the monitor app on a daemon thread; it dies with the main process."""
    app = create_app(scheduler, publisher)

    def _serve():
        # threaded=True so the SSE stream doesn't block /status polling
        app.run(host=host, port=port, threaded=True, use_reloader=False)

    thread = threading.Thread(target=_serve, daemon=True, name="monitor-server")
    thread.start()
    logger.info(f"  [monitor] Dashboard on http://{host}:{port}/dashboard")
    return thread
