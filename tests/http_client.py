"""Minimal HTTP client using stdlib only (no requests dependency)."""

import json
import urllib.error
import urllib.request


def _request(method, url, json_body=None, headers=None):
    data = json.dumps(json_body).encode() if json_body is not None else None
    req = urllib.request.Request(url, data=data, method=method)
    if data is not None:
        req.add_header("Content-Type", "application/json")
    for name, value in (headers or {}).items():
        req.add_header(name, value)
    try:
        with urllib.request.urlopen(req, timeout=5) as r:
            raw = r.read().decode()
            return r.getcode(), json.loads(raw) if raw else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode()
        try:
            return e.code, json.loads(body)
        except ValueError:
            return e.code, {"detail": body}


def get(url, headers=None):
    code, body = _request("GET", url, headers=headers)
    return _Response(code, body)


def post(url, json_body=None, headers=None):
    code, body = _request("POST", url, json_body, headers)
    return _Response(code, body)


def put(url, json_body=None, headers=None):
    code, body = _request("PUT", url, json_body, headers)
    return _Response(code, body)


def delete(url, headers=None):
    code, body = _request("DELETE", url, headers=headers)
    return _Response(code, body)


def is_up(url):
    """True if the server answers at all."""
    try:
        _request("GET", url)
        return True
    except OSError:
        return False


class _Response:
    def __init__(self, status_code, json_body):
        self.status_code = status_code
        self._json = json_body

    def json(self):
        return self._json
