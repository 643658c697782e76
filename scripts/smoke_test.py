from __future__ import annotations

import argparse
import sys
from typing import Optional

import httpx


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise RuntimeError(message)


def _json(response: httpx.Response) -> Optional[dict]:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test for the WhatsApp inbox API.")
    parser.add_argument("--base-url", required=True)
    parser.add_argument("--auth-mode", choices=["enabled", "disabled"], default="enabled")
    parser.add_argument("--token", default="")
    parser.add_argument("--queue-secret", default="")
    args = parser.parse_args()

    token = args.token.strip()
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    with httpx.Client(base_url=args.base_url.rstrip("/"), timeout=20.0) as client:
        response = client.get("/health")
        data = _json(response)
        assert_true(response.status_code == 200, f"/health expected 200, got {response.status_code}")
        assert_true(data is not None and data.get("status") == "ok", "/health invalid payload")
        print("OK /health")

        response = client.get("/health/ready")
        data = _json(response)
        assert_true(
            response.status_code == 200 and data is not None and data.get("status") == "ready",
            f"/health/ready expected ready, got {response.status_code}",
        )
        print("OK /health/ready")

        response = client.get("/metrics")
        assert_true(response.status_code == 200, f"/metrics expected 200, got {response.status_code}")
        assert_true(
            "whatsapp_inbox_requests_total" in response.text, "/metrics missing requests counter"
        )
        print("OK /metrics")

        protected = client.get("/inbox", headers=headers).status_code
        if args.auth_mode == "enabled" and not token:
            assert_true(protected in {401, 403}, f"/inbox without token expected 401/403, got {protected}")
            print("OK /inbox unauthorized")
        else:
            assert_true(protected == 200, f"/inbox expected 200, got {protected}")
            print("OK /inbox")

        if args.queue_secret:
            response = client.post(
                "/queue/process", headers={"Authorization": f"Bearer {args.queue_secret}"}
            )
            assert_true(
                response.status_code == 200, f"/queue/process expected 200, got {response.status_code}"
            )
            print(f"OK /queue/process {response.json()['summary']}")

    print("Smoke test passed.")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        sys.exit(1)
