from __future__ import annotations

import json
import os
import sys
import urllib.error
import urllib.request


def _describe(body: bytes) -> str:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return "unreadable health payload"
    state = payload.get("state", "?")
    error = payload.get("last_error") or "no error recorded"
    return f"detector link {state}: {error}"


def check(url: str, timeout: float = 3.0) -> int:
    """0 when the detector link is connected, 1 otherwise."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            return 0 if resp.status == 200 else 1
    except urllib.error.HTTPError as e:
        # 503: service is up but the detector link is down
        if e.code == 503:
            print(f"degraded: {_describe(e.read())}", file=sys.stderr)
        else:
            print(f"healthcheck failed: HTTP {e.code}", file=sys.stderr)
        return 1
    except (urllib.error.URLError, OSError) as e:
        print(f"service unreachable: {e}", file=sys.stderr)
        return 1


def main() -> int:
    host = os.getenv("HOST", "127.0.0.1")
    port = os.getenv("PORT", "8010")
    prefix = os.getenv("API_PREFIX", "").rstrip("/")
    return check(f"http://{host}:{port}{prefix}/health")


if __name__ == "__main__":
    raise SystemExit(main())
