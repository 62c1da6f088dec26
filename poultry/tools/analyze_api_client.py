"""Quick local client to test the Analyze API response.

Run from repo root (server in another terminal):
  python -m poultry.services.analyze_service
  python -m poultry.tools.analyze_api_client path/to/droppings.jpg

Endpoint contract:
  - POST /analyze (multipart/form-data)
  - fields: image (required)
"""

from __future__ import annotations

import argparse
import json
import mimetypes
import sys
import time
from pathlib import Path
from typing import List, Optional

import httpx


def _guess_mime_type(path: Path) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Send one photo to the analyze endpoint")
    p.add_argument("image", type=Path)
    p.add_argument("--base-url", type=str, default="http://127.0.0.1:3000")
    # Classifier calls can take a while on slow networks.
    p.add_argument("--timeout", type=float, default=30.0)
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    image_path: Path = args.image
    if not image_path.exists():
        print(f"[error] Image not found: {image_path}", file=sys.stderr)
        return 2

    url = f"{args.base_url.rstrip('/')}/analyze"
    mime = _guess_mime_type(image_path)
    t0 = time.perf_counter()
    try:
        with image_path.open("rb") as f:
            files = {"image": (image_path.name, f, mime)}
            resp = httpx.post(url, files=files, timeout=args.timeout)
    except httpx.HTTPError as exc:
        print(f"[error] Request failed: {exc}", file=sys.stderr)
        return 3

    dt_ms = int(round((time.perf_counter() - t0) * 1000.0))
    print(f"HTTP {resp.status_code} ({dt_ms} ms) -> {url}")

    if "application/json" not in resp.headers.get("content-type", ""):
        print(resp.text)
        return 0

    body = resp.json()
    print(json.dumps(body, indent=2, ensure_ascii=False))

    if "error" in body:
        print("\n[tips]")
        for tip in body.get("tips", []):
            print(f"- {tip}")
        return 1

    print(f"\n[{body.get('label')}] {body.get('diagnosis')}")
    recommendation = body.get("recommendation")
    if isinstance(recommendation, list):
        print("\n".join(recommendation))
    else:
        print(recommendation)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
