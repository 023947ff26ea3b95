"""HTTP client for the registry API."""

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional

from ..errors import NotFound, RegistryError, ValidationError
from .models import Service


class ServiceRegistryClient:
    """Thin HTTP client that talks to the registry HTTP API."""

    def __init__(self, host: str = "localhost", port: int = 42069, timeout: float = 10):
        self._base = f"http://{host}:{port}"
        self._timeout = timeout
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def _request(self, method: str, path: str, payload: Any = None,
                 service_id: Optional[str] = None) -> Any:
        url = f"{self._base}{path}"
        data = None
        headers = {}
        if payload is not None:
            data = json.dumps(payload).encode()
            headers["Content-Type"] = "application/json"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with self._opener.open(req, timeout=self._timeout) as resp:
                return json.loads(resp.read().decode())
        except urllib.error.HTTPError as exc:
            message = _error_message(exc)
            if exc.code == 400:
                raise ValidationError(message) from exc
            if exc.code == 404:
                raise NotFound(service_id or path) from exc
            raise RegistryError(f"{method} {path} failed ({exc.code}): {message}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise RegistryError(f"Cannot reach registry at {self._base}: {exc}") from exc

    @staticmethod
    def _quote(service_id: str) -> str:
        return urllib.parse.quote(service_id, safe="")

    def register(self, payload: Dict[str, Any]) -> Service:
        return Service.from_dict(self._request("POST", "/services", payload))

    def get_service(self, service_id: str) -> Optional[Service]:
        try:
            data = self._request("GET", f"/services/{self._quote(service_id)}",
                                 service_id=service_id)
        except NotFound:
            return None
        return Service.from_dict(data)

    def list_services(self, category: Optional[str] = None) -> List[Service]:
        path = "/services"
        if category:
            path = f"/services?{urllib.parse.urlencode({'category': category})}"
        return [Service.from_dict(d) for d in self._request("GET", path)]

    def search(self, text: str) -> List[Service]:
        qs = urllib.parse.urlencode({"q": text})
        return [Service.from_dict(d) for d in self._request("GET", f"/services/search?{qs}")]

    def update(self, service_id: str, payload: Dict[str, Any]) -> Service:
        data = self._request("PUT", f"/services/{self._quote(service_id)}", payload,
                             service_id=service_id)
        return Service.from_dict(data)

    def heartbeat(self, service_id: str) -> None:
        self._request("POST", f"/services/{self._quote(service_id)}/heartbeat",
                      service_id=service_id)

    def unregister(self, service_id: str) -> None:
        self._request("DELETE", f"/services/{self._quote(service_id)}",
                      service_id=service_id)


def _error_message(exc: urllib.error.HTTPError) -> str:
    try:
        body = json.loads(exc.read().decode())
    except (ValueError, OSError):
        return exc.reason or str(exc.code)
    if isinstance(body, dict) and "error" in body:
        return str(body["error"])
    return exc.reason or str(exc.code)
