"""
RepairDesk CRM - One-shot: repair lead <-> invoice back-links.
Same job as the nightly scheduler run, with a printed report.
Run: cd backend && python3 scripts/reconcile_invoice_links.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import config
from services.invoice_generator import reconcile_invoice_links
from services.store import Store


async def reconcile():
    report = await reconcile_invoice_links(Store(config.db))
    config.client.close()

    print("\n════════════════════════════════════")
    print("  RECONCILIATION REPORT")
    print("════════════════════════════════════")
    print(f"  Invoices checked: {report['checked']}")
    print(f"  Links repaired:   {report['repaired']}")
    print(f"  Conflicts:        {len(report['conflicts'])}")
    print(f"  Missing leads:    {len(report['missing_leads'])}")
    print(f"  Dangling links:   {len(report['dangling_links'])}")
    print("════════════════════════════════════")

    for c in report["conflicts"][:20]:
        print(f"  conflict: {c['invoice_number']} -> lead={c['lead_id']} (linked to {c['linked_invoice_id']})")
    for m in report["missing_leads"][:20]:
        print(f"  missing lead: {m['invoice_number']} -> lead={m['lead_id']}")
    for d in report["dangling_links"][:20]:
        print(f"  dangling: lead={d['lead_id']} -> invoice={d['invoice_id']}")

    return report


if __name__ == "__main__":
    asyncio.run(reconcile())
