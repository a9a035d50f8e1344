"""Flask app exposing the URL Metrics store endpoint."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Optional

from flask import Flask, jsonify, request

from url_metrics.models.config import DetectiveConfig
from url_metrics.server.endpoint import StoreEndpoint, StoreRequest, StoreRequestError
from url_metrics.server.optimization import OptimizationContext
from url_metrics.storage.store import JSONFileURLMetricStore, URLMetricStore

logger = logging.getLogger(__name__)

STORE_ROUTE = "/url-metrics/store"
DETECT_ARGS_ROUTE = "/url-metrics/detect-args"


def create_app(
    config: DetectiveConfig,
    store: Optional[URLMetricStore] = None,
    on_cache_purge: Optional[Callable[[int], None]] = None,
) -> Flask:
    """Build the app. The requester lock map lives for the lifetime of the app."""
    app = Flask(__name__)
    if store is None:
        store = JSONFileURLMetricStore(Path(config.store_path))
    endpoint = StoreEndpoint(config, store, lock_storage={}, on_cache_purge=on_cache_purge)
    app.extensions["url_metrics_endpoint"] = endpoint

    @app.errorhandler(StoreRequestError)
    def handle_store_error(error: StoreRequestError):
        logger.info("Rejected URL Metric submission: %s (%s)", error.code, error.message)
        return jsonify(error.to_dict()), error.status

    # ============================================================
    # Store a URL Metric
    # ============================================================

    @app.route(STORE_ROUTE, methods=["POST"])
    def store_url_metric():
        store_request = StoreRequest(
            query=request.args.to_dict(),
            body=request.get_data(cache=False),
            content_encoding=request.headers.get("Content-Encoding"),
            requester_address=request.remote_addr or "",
        )
        return jsonify(endpoint.handle(store_request)), 200

    # ============================================================
    # Detection arguments for a page
    # ============================================================

    @app.route(DETECT_ARGS_ROUTE, methods=["GET"])
    def detect_args():
        url = request.args.get("url")
        if not url:
            error = StoreRequestError("rest_missing_param", "Missing parameter: url", 400)
            return jsonify(error.to_dict()), error.status
        context = OptimizationContext(url, config, store)
        return jsonify({
            "needsDetection": context.needs_detection,
            "generator": context.generator_meta_content(),
            "detectArgs": context.build_detect_args().to_json_dict(),
        })

    return app
