#!/usr/bin/env python3
"""
Webhook Replay Script

Signs a saved `orders/paid` payload with the webhook secret and posts it to a
running instance several times. The first delivery should fulfill the order;
every later one should come back `already_processed`.

Usage:
    python scripts/replay_webhook.py <payload_file> [--url URL] [--times N]

Example:
    python scripts/replay_webhook.py last-webhook.json
    python scripts/replay_webhook.py order.json --times 3 --shop test-shop.myshopify.com
"""

import argparse
import sys
from pathlib import Path

import httpx

from esim_fulfillment.config import settings
from esim_fulfillment.core.security import WEBHOOK_SIGNATURE_HEADER, compute_webhook_signature

DEFAULT_URL = "http://localhost:8000/webhooks/order-paid"


def send_once(client: httpx.Client, url: str, raw: bytes, headers: dict[str, str], label: str) -> int:
    """Post the exact payload bytes and print the response."""
    response = client.post(url, content=raw, headers=headers)
    print(f"\n{label} -> status {response.status_code}")
    if response.text:
        print(response.text[:500])
    return response.status_code


def main():
    parser = argparse.ArgumentParser(
        description="Replay a signed order webhook against a running instance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Replay twice against a local server
    %(prog)s last-webhook.json

    # Simulate three concurrent-looking redeliveries with an explicit secret
    %(prog)s order.json --times 3 --secret shpss_xxx
        """,
    )
    parser.add_argument(
        "payload_file",
        type=Path,
        help="Raw webhook body saved from a real delivery",
    )
    parser.add_argument("--url", default=DEFAULT_URL, help=f"Webhook URL (default: {DEFAULT_URL})")
    parser.add_argument("--times", type=int, default=2, help="Number of deliveries (default: 2)")
    parser.add_argument(
        "--shop",
        default=settings.shopify_shop_domain or "test-shop.myshopify.com",
        help="Value of the X-Shopify-Shop-Domain header",
    )
    parser.add_argument(
        "--secret",
        default=settings.shopify_webhook_secret,
        help="Webhook secret (default: SHOPIFY_WEBHOOK_SECRET)",
    )

    args = parser.parse_args()

    if not args.secret.strip():
        print("Error: no webhook secret. Set SHOPIFY_WEBHOOK_SECRET or pass --secret.")
        sys.exit(1)

    if not args.payload_file.exists():
        print(f"Error: File not found: {args.payload_file}")
        sys.exit(1)

    # Sign the bytes exactly as stored; re-serializing would change the signature
    raw = args.payload_file.read_bytes()
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": "orders/paid",
        "X-Shopify-Shop-Domain": args.shop,
        WEBHOOK_SIGNATURE_HEADER: compute_webhook_signature(raw, args.secret.strip()),
    }

    failures = 0
    with httpx.Client(timeout=settings.http_timeout) as client:
        for i in range(1, args.times + 1):
            try:
                status = send_once(client, args.url, raw, headers, f"Replay #{i}")
            except httpx.RequestError as e:
                print(f"\nReplay #{i} -> transport error: {e}")
                failures += 1
                continue
            if status >= 400:
                failures += 1

    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
