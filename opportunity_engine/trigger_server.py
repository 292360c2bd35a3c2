"""
On-demand trigger server for the opportunity engine.

A small Flask app that:
1. Rebuilds one hunt, or every due hunt, on request
2. Runs a verification batch
3. Accepts crawl-run results from the crawlers

Every route returns the job's summary JSON. A store failure answers 503
so the caller retries later.
"""

import logging
from flask import Flask, jsonify, request

from .errors import HuntNotFoundError, StoreError
from .pipeline import get_pipeline

logger = logging.getLogger(__name__)

app = Flask(__name__)


@app.errorhandler(StoreError)
def handle_store_error(error: StoreError):
    logger.error(f"Store unavailable: {error}")
    return jsonify({"ok": False, "error": str(error), "operation": error.operation}), 503


@app.errorhandler(HuntNotFoundError)
def handle_hunt_not_found(error: HuntNotFoundError):
    return jsonify({"ok": False, "error": str(error)}), 404


@app.route("/hunts/<hunt_id>/rebuild", methods=["POST"])
def rebuild_hunt(hunt_id: str):
    summary = get_pipeline().rebuild_hunt(hunt_id)
    return jsonify({"ok": True, **summary})


@app.route("/hunts/rebuild-due", methods=["POST"])
def rebuild_due_hunts():
    summaries = get_pipeline().run_due_hunts()
    return jsonify({"ok": True, "hunts": summaries, "rebuilt": len(summaries)})


@app.route("/verify", methods=["POST"])
def verify():
    """Body (optional): {"limit": 50, "concurrency": 6}."""
    body = request.get_json(silent=True) or {}
    summary = get_pipeline().run_verification(
        limit=_optional_int(body.get("limit")),
        concurrency=_optional_int(body.get("concurrency")),
    )
    return jsonify({"ok": True, **summary})


@app.route("/crawl-runs/<source>", methods=["POST"])
def crawl_run(source: str):
    """
    Record a crawl run.

    Body: {"listings": [...], "succeeded": true, "error": null}
    """
    body = request.get_json(silent=True) or {}
    listings = body.get("listings") or []
    if not isinstance(listings, list):
        return jsonify({"ok": False, "error": "listings must be a list"}), 400
    summary = get_pipeline().ingest_crawl_run(
        source,
        [item for item in listings if isinstance(item, dict)],
        succeeded=bool(body.get("succeeded", True)),
        error=body.get("error"),
    )
    return jsonify({"ok": True, **summary})


@app.route("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


def _optional_int(value):
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def run_server(host: str = "0.0.0.0", port: int = 5000, debug: bool = False):
    """Run the Flask server."""
    app.run(host=host, port=port, debug=debug)


def main():
    """CLI entry point for the trigger server."""
    import argparse

    parser = argparse.ArgumentParser(description="Opportunity Engine Trigger Server")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=5000, help="Port to bind to")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )

    logger.info(f"Starting trigger server on {args.host}:{args.port}")
    run_server(args.host, args.port, args.debug)


if __name__ == "__main__":
    main()
