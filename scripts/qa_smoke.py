#!/usr/bin/env python3
"""Ensemble Explorer smoke checks against a running server (non-visual).

Usage:
  python3 scripts/qa_smoke.py [--base http://127.0.0.1:8502] [--store /tmp/demo-store]
"""

from __future__ import annotations

import argparse

import requests


def assert_ok(cond: bool, msg: str):
    if not cond:
        raise AssertionError(msg)


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default="http://127.0.0.1:8502")
    ap.add_argument("--store", default=None, help="store URL to initialize with (default: server config)")
    args = ap.parse_args()
    base = args.base.rstrip("/")

    # 1) Health
    r = requests.get(base + "/api/health", timeout=20)
    assert_ok(r.status_code == 200, f"/api/health returned {r.status_code}")

    # 2) Initialize (optional) and discovery
    if args.store:
        r = requests.post(base + "/api/initialize", json={"store_url": args.store}, timeout=120)
        assert_ok(r.status_code == 200, f"/api/initialize returned {r.status_code}: {r.text[:200]}")
    r = requests.get(base + "/api/hierarchy", timeout=30)
    assert_ok(r.status_code == 200, f"/api/hierarchy returned {r.status_code}")
    h = r.json()
    for k in ("models", "experiments", "variables", "depth", "grid"):
        assert_ok(k in h, f"/api/hierarchy missing {k}")
    assert_ok(len(h["variables"]) > 0, "No variables discovered")

    # 3) Load all panels
    r = requests.post(base + "/api/panels/load_all", timeout=120)
    assert_ok(r.status_code == 200, f"/api/panels/load_all returned {r.status_code}")
    st = r.json()
    panels = st.get("panels", [])
    assert_ok(len(panels) > 0, "No panels in state")
    for k in ("activePanelId", "settings", "slider", "grid"):
        assert_ok(k in st, f"/api/state missing {k}")
    loaded = [p for p in panels if p["status"] == "loaded"]

    # 4) Panel image
    if loaded:
        pid = loaded[0]["id"]
        ri = requests.get(f"{base}/api/panels/{pid}/image.png", timeout=60)
        assert_ok(ri.status_code == 200, f"image.png failed: {ri.status_code}")
        assert_ok(ri.content[:8] == b"\x89PNG\r\n\x1a\n", "image.png is not a PNG")
        assert_ok("X-Bitmap-Generation" in ri.headers, "image.png missing X-Bitmap-Generation")

        # 5) Hover values at the grid centre
        g = h["grid"]
        rv = requests.get(base + "/api/value", params={"gx": g["width"] // 2, "gy": g["height"] // 2}, timeout=20)
        assert_ok(rv.status_code == 200, f"/api/value failed: {rv.status_code}")
        assert_ok(len(rv.json().get("values", [])) == len(panels), "/api/value missing panel values")

    # 6) Time change (waits for the debounced reload)
    rt = requests.post(base + "/api/time", params={"wait": "true"}, json={"index": 1}, timeout=120)
    assert_ok(rt.status_code == 200, f"/api/time failed: {rt.status_code}")
    assert_ok(rt.json()["settings"]["timeIndex"] == 1, "time index not applied")

    # 7) Error contract
    re_ = requests.post(base + "/api/panels/nope/active", timeout=20)
    assert_ok(re_.status_code == 404, f"unknown panel should 404, got {re_.status_code}")
    assert_ok("requestId" in re_.json(), "error payload missing requestId")

    print("PASS: Ensemble Explorer smoke checks passed")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception as e:
        print(f"FAIL: {e}")
        raise
