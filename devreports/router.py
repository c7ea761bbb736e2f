"""HTTP routes of the service."""

from __future__ import annotations

import json

from flask import Flask, Response, request

from devreports.handler import Handler

API_PREFIX = "/api/v1"


def _json_response(status: int, body: object) -> Response:
    return Response(
        json.dumps(body, ensure_ascii=False) + "\n",
        status=int(status),
        mimetype="application/json",
    )


def create_app(handler: Handler) -> Flask:
    """Build the WSGI application that serves the device API."""
    app = Flask(__name__)

    @app.get(f"{API_PREFIX}/devices/<unit_guid>")
    def get_device_messages(unit_guid: str) -> Response:
        status, body = handler.get_device_messages(unit_guid, request.args.to_dict())
        return _json_response(status, body)

    return app