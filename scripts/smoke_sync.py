#!/usr/bin/env python3
"""
Smoke test for the sync core against a running API.

Meant for a server started with DEMO_MODE=true, so no vendor tokens are
needed: triggers a tenant sync through the cron route and checks that
every resulting SyncLog succeeded.

Env vars:
  BASE_URL     (default http://localhost:8000)
  CRON_SECRET  (required)
  TENANT_ID    (optional; omit to sync every active tenant)
  PLATFORM     (optional; default all)
"""
from __future__ import annotations

import json
import os
import sys
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
CRON_SECRET = os.environ.get("CRON_SECRET", "")
TENANT_ID = os.environ.get("TENANT_ID", "")
PLATFORM = os.environ.get("PLATFORM", "all")


class SmokeError(Exception):
    pass


def _req(method: str, path: str, auth: bool = False) -> dict:
    headers = {"Accept": "application/json"}
    if auth:
        headers["Authorization"] = f"Bearer {CRON_SECRET}"
    req = Request(f"{BASE_URL}{path}", headers=headers, method=method)
    try:
        with urlopen(req, timeout=300) as resp:
            raw = resp.read().decode()
            return json.loads(raw) if raw else {}
    except HTTPError as e:
        raise SmokeError(f"{method} {path} → {e.code}: {e.read().decode()[:500]}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def main() -> int:
    if not CRON_SECRET:
        print("CRON_SECRET is required", file=sys.stderr)
        return 2

    try:
        _req("GET", "/ping")
        query = f"platform={PLATFORM}" + (f"&tenant_id={TENANT_ID}" if TENANT_ID else "")
        result = _req("POST", f"/api/cron/sync?{query}", auth=True)
        print(f"sync: {json.dumps(result.get('result', result))[:400]}")
        if result.get("queued"):
            print("sync was queued to Celery; check the worker logs")
            return 0

        logs_query = f"?tenant_id={TENANT_ID}" if TENANT_ID else ""
        logs = _req("GET", f"/api/sync/logs{logs_query}")
    except SmokeError as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    print(f"logs: success={logs['success']} failed={logs['failed']} running={logs['running']}")
    for log in logs["logs"]:
        if log["status"] == "failed":
            print(f"  account {log['social_account_id']} ({log['platform']}): {log['error_message']}")
    return 1 if logs["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
