from __future__ import annotations

import argparse
import json
import sys
import time

import httpx

from backend.app.services.webhooks import sign_payload


def inbound_event(instance_id: str, index: int, body: str) -> dict:
    phone = f"55119{index:08d}"
    return {
        "event": "message.received",
        "instanceId": instance_id,
        "data": {
            "from": f"{phone}@c.us",
            "to": "5511999990000@c.us",
            "body": body,
            "type": "chat",
            "timestamp": int(time.time()),
            "id": f"wamid.mock.{index}",
            "sender": {"pushname": f"Cliente {index}"},
        },
    }


def status_event(instance_id: str, message_id: str, status: str) -> dict:
    return {
        "event": "message.status",
        "instanceId": instance_id,
        "data": {"id": message_id, "status": status},
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Send mock WhatsApp gateway webhooks to a local API.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--instance-id", required=True, help="Gateway instance id registered in the API.")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--body", default="Oi, qual o preço?")
    parser.add_argument("--status", choices=["delivered", "read", "failed"], default=None)
    parser.add_argument("--message-id", default=None, help="Gateway message id for --status events.")
    parser.add_argument("--secret", default="", help="WHATSAPP_WEBHOOK_SECRET used to sign bodies.")
    args = parser.parse_args()

    if args.status:
        if not args.message_id:
            parser.error("--status requires --message-id")
        events = [status_event(args.instance_id, args.message_id, args.status)]
    else:
        events = [
            inbound_event(args.instance_id, index, args.body)
            for index in range(args.start_index, args.start_index + args.count)
        ]

    endpoint = f"{args.base_url.rstrip('/')}/webhooks/whatsapp"
    with httpx.Client(timeout=15.0) as client:
        for event in events:
            body = json.dumps(event, separators=(",", ":")).encode("utf-8")
            headers = {"Content-Type": "application/json"}
            if args.secret:
                headers["X-Hub-Signature-256"] = sign_payload(body, args.secret)
            response = client.post(endpoint, content=body, headers=headers)
            print(f"{response.status_code} {event['data']['id']} {response.text}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
