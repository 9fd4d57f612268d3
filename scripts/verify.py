"""
Sales Ledger Verification Script

Checks the Excel sales ledger written by the Celery export task.
Run from project root: python scripts/verify.py
"""

import sys
from datetime import datetime

import pandas as pd

from fulfillment.services.excel_manager import ExcelManager


def verify_ledger() -> bool:
    """Verify ledger integrity after a run."""
    ledger = ExcelManager()

    print("=" * 60)
    print("🔍 SALES LEDGER VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {ledger.ledger_file}")
    print("=" * 60)

    if not ledger.ledger_file.exists():
        print("\n❌ Ledger file not found!")
        print("   Finalize some bills with the Celery worker running first.")
        return False

    try:
        df = pd.read_excel(ledger.ledger_file, engine='openpyxl')
        print("\n✅ File loaded successfully!")
    except Exception as e:
        print(f"\n❌ Could not read ledger: {e}")
        return False

    print("\n📊 STATISTICS:")
    print(f"   Bills: {len(df)}")

    missing = [col for col in ExcelManager.LEDGER_COLUMNS if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
        return False
    print("✅ All ledger columns present")

    ok = True
    duplicates = df['order_id'].duplicated().sum()
    if duplicates > 0:
        print(f"⚠️ {duplicates} orders exported more than once (task retries?)")
    else:
        print("✅ No duplicate order IDs")

    expected = (df['pre_discount_total'] - df['discount_amount']).clip(lower=0).round(2)
    mismatched = df[(expected - df['grand_total']).abs() > 0.005]
    if len(mismatched):
        ok = False
        print(f"❌ {len(mismatched)} bills where grand_total != pre_discount_total - discount")
    else:
        print("✅ Every grand total matches its discount")

    line_sum = (df['subtotal'] + df['gst_total']).round(2)
    if ((line_sum - df['pre_discount_total']).abs() > 0.005).any():
        ok = False
        print("❌ Some bills where subtotal + GST != pre-discount total")
    else:
        print("✅ subtotal + GST == pre-discount total on every bill")

    print("\n💰 REVENUE:")
    print(f"   Total: {df['grand_total'].sum():.2f}")
    print(f"   By payment method: {df.groupby('payment_method')['grand_total'].sum().round(2).to_dict()}")

    print("\n📋 RECENT BILLS:")
    print("-" * 60)
    cols = ['order_id', 'vendor_id', 'channel', 'payment_method', 'grand_total']
    print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "❌ VERIFICATION FAILED")
    print("=" * 60)
    return ok


if __name__ == "__main__":
    sys.exit(0 if verify_ledger() else 1)
