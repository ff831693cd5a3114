#!/usr/bin/env python3
"""Show a user's stored subscription next to what Mercado Pago knows.

Usage:
  python scripts/inspect_subscription.py --uid <firebase-uid>
  python scripts/inspect_subscription.py --email someone@example.com
"""
from __future__ import annotations

import argparse

from app.core.exceptions import ProdAIException
from app.core.logger import init_logging
from app.models.models import SubscriptionRecord
from app.services.container import build_services


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect one user's subscription")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--uid")
    group.add_argument("--email")
    args = parser.parse_args(argv)

    init_logging()
    services = build_services()
    try:
        doc = services.store.get(args.uid) if args.uid else services.store.find_by_email(args.email)
        if doc is None:
            print(f"User not found: {args.uid or args.email}")
            return 1
        record = SubscriptionRecord.from_document(doc.uid, doc.data)
        print("=" * 60)
        print(f"uid:                {record.uid}")
        print(f"email:              {record.email or 'N/A'}")
        print(f"plan:               {record.plan.value} (isPlus={record.is_plus})")
        print(f"status:             {record.subscription_status.value if record.subscription_status else '-'}")
        print(f"agreement:          {record.external_agreement_id or '-'}")
        print(f"expires at:         {record.expires_at or '-'}")
        print(f"remaining messages: {record.remaining_messages}")
        print("-" * 60)
        try:
            preapprovals = services.gateway.search_preapprovals(record.uid)
        except ProdAIException as exc:
            print(f"Mercado Pago lookup failed: {exc}")
            return 1
        if not preapprovals:
            print("No preapprovals at Mercado Pago for this uid.")
        for preapproval in preapprovals:
            marker = "*" if preapproval.id == record.external_agreement_id else " "
            print(f"{marker} {preapproval.id}  status={preapproval.status}  next_payment={preapproval.next_payment_date}")
        return 0
    finally:
        services.close()


if __name__ == "__main__":
    raise SystemExit(main())
