"""
Excel Verification Script

Verifies data integrity of the shift export workbook.
Run from project root: python scripts/verify.py

Author: Khalil Bannouri
Version: 4.0.0
"""

import os
import sys
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pandas as pd

from app.services.excel_manager import SHIFTS_FILE

REQUIRED_COLUMNS = ['shift_id', 'cashier_id', 'cash_in_amount', 'cash_out_amount', 'difference']


def verify_excel(path=SHIFTS_FILE) -> bool:
    """Verify the shift workbook after a simulation run."""

    print("=" * 60)
    print("🔍 EXCEL VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {path}")
    print("=" * 60)

    # Check if file exists
    if not os.path.exists(path):
        print("\n❌ Excel file not found!")
        print("   Close a shift first, or run: python scripts/simulate.py")
        return False

    # Load Excel file
    try:
        df = pd.read_excel(path, engine='openpyxl')
        print(f"\n✅ File loaded successfully!")
    except Exception as e:
        print(f"\n❌ Could not read Excel file: {e}")
        return False

    # Statistics
    print(f"\n📊 STATISTICS:")
    print(f"   Total Shifts: {len(df)}")
    print(f"   Columns: {len(df.columns)}")

    ok = True

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        print(f"\n⚠️ Missing Columns: {missing}")
        return False
    print(f"\n✅ All required columns present")

    # Check duplicates
    duplicates = df['shift_id'].duplicated().sum()
    if duplicates > 0:
        print(f"\n⚠️ {duplicates} duplicate shift IDs found!")
        ok = False
    else:
        print(f"✅ No duplicate shift IDs")

    # Recompute differences
    expected = (df['cash_out_amount'] - df['cash_in_amount']).round(2)
    mismatched = df[(expected - df['difference'].round(2)).abs() > 0.009]
    if len(mismatched) > 0:
        print(f"\n⚠️ {len(mismatched)} shifts with a wrong difference: {mismatched['shift_id'].tolist()}")
        ok = False
    else:
        print(f"✅ All differences match cash out - cash in")

    # Per-cashier totals
    print(f"\n💰 DIFFERENCE BY CASHIER:")
    for cashier, total in df.groupby('cashier_id')['difference'].sum().items():
        print(f"   {cashier}: {total:.2f}")

    # Sample data
    print(f"\n📋 RECENT SHIFTS:")
    print("-" * 60)
    if len(df) > 0:
        cols = ['shift_id', 'cashier_username', 'cash_in_amount', 'cash_out_amount', 'difference']
        cols = [c for c in cols if c in df.columns]
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "❌ VERIFICATION FOUND PROBLEMS")
    print("=" * 60)

    return ok


if __name__ == "__main__":
    sys.exit(0 if verify_excel() else 1)
