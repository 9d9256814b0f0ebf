from __future__ import annotations

import argparse
import os
import sys
import time
from typing import Any

import httpx

from hue_xpl.config import DEFAULT_USERNAME
from hue_xpl.hue_client import ERROR_LINK_BUTTON, ERROR_UNAUTHORIZED


def _bridge_url(host: str, port: int | None) -> str:
    return f"http://{host}:{port}" if port else f"http://{host}"


def _register(client: httpx.Client, url: str, devicetype: str) -> Any:
    resp = client.post(f"{url}/api", json={"devicetype": devicetype}, timeout=10.0)
    try:
        return resp.json()
    except ValueError:
        return {"raw": resp.text, "status": resp.status_code}


def _parse_pairing(payload: Any) -> tuple[str | None, dict[str, Any] | None]:
    """Returns (username, error) from a v1 `[{"success": ...}]` / `[{"error": ...}]` reply."""
    if isinstance(payload, list) and payload:
        first = payload[0]
        if isinstance(first, dict):
            success = first.get("success")
            if isinstance(success, dict) and isinstance(success.get("username"), str):
                return success["username"], None
            error = first.get("error")
            if isinstance(error, dict):
                return None, error
    return None, {"description": f"unexpected response: {payload}"}


def _user_is_valid(client: httpx.Client, url: str, username: str) -> bool:
    resp = client.get(f"{url}/api/{username}/lights", timeout=10.0)
    try:
        payload = resp.json()
    except ValueError:
        return False
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        error = payload[0].get("error")
        if isinstance(error, dict) and error.get("type") == ERROR_UNAUTHORIZED:
            return False
    return resp.status_code == 200


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="hue-xpl-pair", description="Create a user on the Hue bridge.")
    parser.add_argument("--bridge-host", default=os.getenv("HUE_BRIDGE_HOST"))
    parser.add_argument("--bridge-port", type=int, default=int(os.getenv("HUE_BRIDGE_PORT") or 0) or None)
    parser.add_argument("--username", default=os.getenv("HUE_USERNAME") or DEFAULT_USERNAME)
    parser.add_argument("--devicetype", default="hue-xpl#bridge")
    parser.add_argument("--timeout-seconds", type=int, default=60)
    parser.add_argument("--interval-ms", type=int, default=1500)
    args = parser.parse_args(argv)

    if not args.bridge_host:
        print("Missing bridge host. Provide --bridge-host (or set HUE_BRIDGE_HOST).", file=sys.stderr)
        raise SystemExit(2)

    url = _bridge_url(args.bridge_host, args.bridge_port)

    with httpx.Client() as client:
        try:
            if args.username and _user_is_valid(client, url, args.username):
                print(f"User '{args.username}' is already authorized.")
                raise SystemExit(0)
        except httpx.HTTPError as exc:
            print(f"Failed to reach bridge at {url}: {exc}", file=sys.stderr)
            raise SystemExit(1)

        print("Pairing requires the physical Hue bridge button.")
        print("Press the bridge button now. Pairing attempts will run until success or timeout.")

        deadline = time.time() + args.timeout_seconds
        attempt = 0
        while time.time() < deadline:
            attempt += 1
            try:
                payload = _register(client, url, args.devicetype)
            except httpx.HTTPError as exc:
                print(f"Failed to reach bridge at {url}: {exc}", file=sys.stderr)
                raise SystemExit(1)

            username, error = _parse_pairing(payload)
            if username:
                print(f"User '{username}' created !")
                print(f"Set HUE_USERNAME={username} before starting the bridge.")
                raise SystemExit(0)

            if error and error.get("type") == ERROR_LINK_BUTTON:
                remaining = int(deadline - time.time())
                print(f"[{attempt}] Button not pressed yet. Retrying… ({remaining}s left)")
                time.sleep(max(0.1, args.interval_ms / 1000.0))
                continue

            print(f"Pairing failed: {error}", file=sys.stderr)
            raise SystemExit(1)

    raise SystemExit(1)


if __name__ == "__main__":
    main()
