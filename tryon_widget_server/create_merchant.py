"""
Register a merchant from the command line and print its credentials.

Usage:
    python -m tryon_widget_server.create_merchant --email shop@example.com \\
        --name "Example Shop" --plan starter --domain example.com --domain "*.example.com"

Uses the storage configured by DATABASE_URL. Without a database the merchant
only lives for the duration of the command, which is still useful for
checking key formats and domain validation.
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from tryon_widget_server.config import settings
from tryon_widget_server.domain import Plan
from tryon_widget_server.errors import WidgetError
from tryon_widget_server.merchants import CredentialStore
from tryon_widget_server.services import build_storage
from tryon_widget_server.storage import StorageError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a try-on widget merchant")
    parser.add_argument("--email", required=True, help="Merchant contact email (unique)")
    parser.add_argument("--name", required=True, help="Business name")
    parser.add_argument(
        "--plan",
        default=Plan.FREE.value,
        choices=[plan.value for plan in Plan],
        help="Subscription plan (sets the monthly quota)",
    )
    parser.add_argument(
        "--domain",
        action="append",
        default=[],
        help="Allowed domain, repeatable (example.com or *.example.com)",
    )
    parser.add_argument("--webhook-url", default=None, help="Default webhook URL")
    return parser


async def create_merchant(args: argparse.Namespace, store: Optional[CredentialStore] = None):
    storage = None
    if store is None:
        storage = build_storage(settings)
        store = CredentialStore(storage)
    try:
        return await store.register_merchant(
            email=args.email,
            business_name=args.name,
            plan=Plan(args.plan),
            allowed_domains=args.domain,
            webhook_url=args.webhook_url,
        )
    finally:
        if storage is not None:
            await storage.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        merchant = asyncio.run(create_merchant(args))
    except WidgetError as e:
        print(f"Error: {e.code}: {e.message}", file=sys.stderr)
        return 1
    except (StorageError, SQLAlchemyError) as e:
        print(f"Error: STORAGE_ERROR: {e}", file=sys.stderr)
        return 1

    print("Merchant created successfully!")
    print(f"  ID:             {merchant.id}")
    print(f"  Email:          {merchant.email}")
    print(f"  Plan:           {merchant.plan.value}")
    print(f"  Monthly quota:  {merchant.monthly_quota if merchant.monthly_quota is not None else 'unlimited'}")
    print(f"  Domains:        {', '.join(merchant.allowed_domains) or '(none)'}")
    print(f"  Live key:       {merchant.live_key}")
    print(f"  Test key:       {merchant.test_key}")
    print(f"  Webhook secret: {merchant.webhook_secret}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
