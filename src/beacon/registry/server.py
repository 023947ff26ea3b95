#!/usr/bin/env python3
"""
HTTP API for the Service Registry

Maps requests onto ``Registry`` operations:

    GET    /services[?category=NAME]   list services
    POST   /services                   register
    GET    /services/search?q=TEXT     search name/description
    GET    /services/{id}              fetch one
    PUT    /services/{id}              full update
    DELETE /services/{id}              unregister
    GET    /services/{id}/heartbeat    heartbeat (POST also accepted)

Served by a ThreadingHTTPServer, one thread per request.
"""

import json
import sys
import threading
import time
import traceback
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional

from ..errors import NotFound, StoreError, ValidationError
from .core import Registry
from .models import RegisterRequest

ALLOWED_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization"


class _MethodNotAllowed(Exception):
    pass


def _make_handler(registry: Registry, log_requests: bool = True,
                  cors_allow_origin: Optional[str] = "*"):
    """Create a handler class bound to the given registry instance."""

    class RegistryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            # Silence default stderr logging; requests are logged in _dispatch
            pass

        def _send_cors_headers(self):
            if cors_allow_origin:
                self.send_header("Access-Control-Allow-Origin", cors_allow_origin)
                self.send_header("Access-Control-Allow-Methods", ALLOWED_METHODS)
                self.send_header("Access-Control-Allow-Headers", ALLOWED_HEADERS)

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self._send_cors_headers()
            self.end_headers()
            self.wfile.write(body)

        def _error_response(self, message: str, status: int):
            self._json_response({"error": message}, status=status)

        def _read_body(self) -> bytes:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            return self.rfile.read(length) if length > 0 else b""

        def _read_json(self) -> Any:
            try:
                return json.loads(self._body.decode() or "null")
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise ValidationError(f"Invalid JSON body: {exc}") from exc

        def _dispatch(self, method: str):
            parsed = urllib.parse.urlparse(self.path)
            path = parsed.path.rstrip("/")
            qs = urllib.parse.parse_qs(parsed.query)

            # Always consume the body so the connection closes cleanly
            self._body = self._read_body()

            start = time.monotonic()
            if log_requests:
                print(f"[http] {method} {parsed.path}", file=sys.stderr)
            try:
                self._route(method, path, qs)
            except ValidationError as exc:
                self._error_response(str(exc), 400)
            except NotFound:
                self._error_response("Service not found", 404)
            except _MethodNotAllowed:
                self._error_response("Method not allowed", 405)
            except StoreError as exc:
                print(f"[http] Store failure on {method} {parsed.path}: {exc}", file=sys.stderr)
                self._error_response("Registry store unavailable", 500)
            except Exception:
                traceback.print_exc(file=sys.stderr)
                self._error_response("Internal server error", 500)
            finally:
                if log_requests:
                    elapsed_ms = (time.monotonic() - start) * 1000
                    print(
                        f"[http] Completed {method} {parsed.path} in {elapsed_ms:.1f}ms",
                        file=sys.stderr,
                    )

        def _route(self, method: str, path: str, qs: dict):
            if path == "/services":
                if method == "GET":
                    category = qs.get("category", [None])[0]
                    services = registry.list_services(category=category)
                    self._json_response([s.to_dict() for s in services])
                elif method == "POST":
                    request = RegisterRequest.from_dict(self._read_json())
                    self._json_response(registry.register(request).to_dict(), status=201)
                else:
                    raise _MethodNotAllowed()

            elif path == "/services/search":
                if method != "GET":
                    raise _MethodNotAllowed()
                text = qs.get("q", [""])[0]
                if not text:
                    raise ValidationError("Query parameter 'q' is required")
                services = registry.search(text)
                self._json_response([s.to_dict() for s in services])

            elif path.startswith("/services/"):
                parts = path[len("/services/"):].split("/")
                service_id = urllib.parse.unquote(parts[0])

                if len(parts) == 2 and parts[1] == "heartbeat":
                    if method not in ("GET", "POST"):
                        raise _MethodNotAllowed()
                    registry.heartbeat(service_id)
                    self._json_response({"message": "Heartbeat received"})
                elif len(parts) != 1:
                    self._error_response("not found", 404)
                elif method == "GET":
                    self._json_response(registry.get(service_id).to_dict())
                elif method == "PUT":
                    request = RegisterRequest.from_dict(self._read_json())
                    self._json_response(registry.update(service_id, request).to_dict())
                elif method == "DELETE":
                    registry.unregister(service_id)
                    self._json_response({"message": "Service unregistered"})
                else:
                    raise _MethodNotAllowed()

            else:
                self._error_response("not found", 404)

        def do_GET(self):
            self._dispatch("GET")

        def do_POST(self):
            self._dispatch("POST")

        def do_PUT(self):
            self._dispatch("PUT")

        def do_DELETE(self):
            self._dispatch("DELETE")

        def do_OPTIONS(self):
            self.send_response(204)
            self._send_cors_headers()
            self.send_header("Content-Length", "0")
            self.end_headers()

    return RegistryHTTPHandler


def make_registry_server(
    registry: Registry,
    host: str = "0.0.0.0",
    port: int = 42069,
    log_requests: bool = True,
    cors_allow_origin: Optional[str] = "*",
) -> ThreadingHTTPServer:
    """Bind a ThreadingHTTPServer for the registry without starting it."""
    handler = _make_handler(registry, log_requests=log_requests,
                            cors_allow_origin=cors_allow_origin)
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    return server


def start_registry_server(
    registry: Registry,
    host: str = "0.0.0.0",
    port: int = 42069,
    log_requests: bool = True,
    cors_allow_origin: Optional[str] = "*",
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    server = make_registry_server(registry, host=host, port=port,
                                  log_requests=log_requests,
                                  cors_allow_origin=cors_allow_origin)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server
