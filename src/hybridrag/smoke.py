"""Post-deployment smoke check against a running HybridRAG API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Sequence
from uuid import uuid4

import httpx

from hybridrag.services.prompts import SOURCES_DELIMITER

DEFAULT_API_URL = "http://localhost:8000"
SMOKE_TEXT = "HybridRAG smoke check: the deployment answers questions with cited sources."


class SmokeFailure(RuntimeError):
    """Raised when a smoke step returns an unexpected response."""


def _expect(response: httpx.Response, status_code: int, step: str) -> httpx.Response:
    if response.status_code != status_code:
        raise SmokeFailure(f"{step}: expected {status_code}, got {response.status_code}: {response.text[:200]}")
    return response


def run_smoke(client: httpx.Client, *, user_id: str = "smoke-check") -> list[str]:
    """Run every step against ``client``; returns one line per passed step."""

    headers = {"X-User-ID": user_id}
    api_key = os.getenv("HYBRIDRAG_API_KEY")
    if api_key:
        headers["X-API-Key"] = api_key
    workspace_id = f"smoke-{uuid4().hex[:8]}"
    passed: list[str] = []

    _expect(client.get("/healthz"), 200, "/healthz")
    passed.append("/healthz ok")
    ready = _expect(client.get("/healthz/ready"), 200, "/healthz/ready").json()
    if ready.get("status") != "ready":
        raise SmokeFailure(f"/healthz/ready: {ready}")
    passed.append("/healthz/ready ok")

    ingested = _expect(
        client.post(
            "/documents/text",
            json={"title": "smoke.txt", "text": SMOKE_TEXT, "workspace_id": workspace_id},
            headers=headers,
        ),
        201,
        "ingest",
    ).json()
    document_id = ingested["document_id"]
    passed.append(f"ingest ok ({ingested['embedded']}/{ingested['chunks']} embedded)")

    try:
        chat = _expect(
            client.post(
                "/chat",
                json={"question": "What does the smoke check say?", "workspace_id": workspace_id},
                headers=headers,
            ),
            200,
            "chat",
        )
        answer, delimiter, trailer = chat.text.partition(SOURCES_DELIMITER)
        if not delimiter or not answer.strip():
            raise SmokeFailure("chat: stream is missing the answer or the sources trailer")
        try:
            sources = json.loads(trailer)
        except json.JSONDecodeError as exc:
            raise SmokeFailure(f"chat: sources trailer is not JSON ({exc})") from exc
        passed.append(f"chat ok ({len(sources)} sources)")
    finally:
        _expect(client.delete(f"/documents/{document_id}", headers=headers), 204, "delete")
    passed.append("delete ok")
    return passed


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Smoke-check a running HybridRAG API.")
    parser.add_argument(
        "--base-url",
        default=os.getenv("HYBRIDRAG_API_URL", DEFAULT_API_URL),
        help="API base URL (defaults to $HYBRIDRAG_API_URL)",
    )
    parser.add_argument("--timeout", type=float, default=30.0, help="Per-request timeout in seconds")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        with httpx.Client(base_url=args.base_url.rstrip("/"), timeout=args.timeout) as client:
            for line in run_smoke(client):
                print(line)
    except (SmokeFailure, httpx.HTTPError) as exc:
        print(f"Smoke check failed: {exc}", file=sys.stderr)
        return 1
    print("Smoke check passed.")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
