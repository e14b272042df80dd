#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Tuple
from urllib import request as urllib_request
from urllib.error import HTTPError


class CityIndexClient:
    """Minimal HTTP client for the City Index API."""

    def __init__(self, *, base_url: str, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def upload(self, path: Path) -> Dict[str, Any]:
        body, content_type = _multipart_file("file", path.name, path.read_bytes())
        return self._request("POST", "/cities", body=body, headers={"Content-Type": content_type})

    def job(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/cities/jobs/{job_id}")

    def jobs(self, limit: int) -> Dict[str, Any]:
        return self._request("GET", f"/cities/jobs?limit={limit}")

    def cancel(self, job_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/cities/jobs/{job_id}")

    def telemetry(self) -> Dict[str, Any]:
        return self._request("GET", "/telemetry/metrics")

    def _request(self, method: str, path: str, *, body: bytes | None = None, headers: Dict[str, str] | None = None):
        req = urllib_request.Request(f"{self._base_url}{path}", data=body, method=method, headers=headers or {})
        try:
            with urllib_request.urlopen(req, timeout=self._timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise SystemExit(f"{method} {path} failed ({exc.code}): {detail}") from exc


def _multipart_file(field: str, filename: str, payload: bytes) -> Tuple[bytes, str]:
    boundary = uuid.uuid4().hex
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="{filename}"\r\n'
        "Content-Type: application/json\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + payload + tail, f"multipart/form-data; boundary={boundary}"


def cmd_upload(client: CityIndexClient, args: argparse.Namespace) -> Dict[str, Any]:
    return client.upload(Path(args.path))


def cmd_status(client: CityIndexClient, args: argparse.Namespace) -> Dict[str, Any]:
    return client.job(args.job_id)


def cmd_jobs(client: CityIndexClient, args: argparse.Namespace) -> Dict[str, Any]:
    return client.jobs(args.limit)


def cmd_cancel(client: CityIndexClient, args: argparse.Namespace) -> Dict[str, Any]:
    return client.cancel(args.job_id)


def cmd_telemetry(client: CityIndexClient, args: argparse.Namespace) -> Dict[str, Any]:
    return client.telemetry()


def main() -> None:
    parser = argparse.ArgumentParser(description="City Index CLI helper")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--timeout", type=float, default=30.0)
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload_parser = subparsers.add_parser("upload", help="Upload a JSON array of city records")
    upload_parser.add_argument("path")
    upload_parser.set_defaults(func=cmd_upload)

    status_parser = subparsers.add_parser("status", help="Inspect one ingestion job")
    status_parser.add_argument("job_id")
    status_parser.set_defaults(func=cmd_status)

    jobs_parser = subparsers.add_parser("jobs", help="List recent ingestion jobs")
    jobs_parser.add_argument("--limit", type=int, default=20)
    jobs_parser.set_defaults(func=cmd_jobs)

    cancel_parser = subparsers.add_parser("cancel", help="Request cancellation of a running job")
    cancel_parser.add_argument("job_id")
    cancel_parser.set_defaults(func=cmd_cancel)

    telemetry_parser = subparsers.add_parser("telemetry", help="Show telemetry metrics")
    telemetry_parser.set_defaults(func=cmd_telemetry)

    args = parser.parse_args()
    client = CityIndexClient(base_url=args.base_url, timeout=args.timeout)
    print(json.dumps(args.func(client, args), indent=2, default=str))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(130)
