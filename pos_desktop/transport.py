"""
Minimal JSON-over-HTTP helpers for the register.

Network failures (DNS, refused connection, timeouts) raise; HTTP error
statuses do not, they come back as `(status, body)` so callers can tell
"server said no" apart from "server unreachable".
"""

import json
from urllib.error import HTTPError
from urllib.request import Request, urlopen

DEFAULT_TIMEOUT_S = 10.0


def _decode(raw: bytes):
    if not raw:
        return {}
    try:
        return json.loads(raw.decode("utf-8"))
    except ValueError:
        return {"raw": raw.decode("utf-8", errors="replace")}


def post_json(url, payload, headers=None, timeout_s: float = DEFAULT_TIMEOUT_S):
    data = json.dumps(payload, default=str).encode("utf-8")
    req = Request(url, data=data, headers=headers or {}, method="POST")
    req.add_header("Content-Type", "application/json")
    try:
        with urlopen(req, timeout=timeout_s) as resp:
            return resp.status, _decode(resp.read())
    except HTTPError as ex:
        return ex.code, _decode(ex.read() or b"")


def fetch_json(url, headers=None, timeout_s: float = DEFAULT_TIMEOUT_S):
    req = Request(url, headers=headers or {}, method="GET")
    with urlopen(req, timeout=timeout_s) as resp:
        return _decode(resp.read())


def device_headers(cfg):
    return {
        "X-Device-Id": cfg.get("device_id") or "",
        "X-Device-Token": cfg.get("device_token") or "",
    }
