"""
Offline Queue Verification Script

Inspects the durable offline mutation queue: depth, retry counts, last
errors, and duplicate entries.
Run from project root: python scripts/verify.py [--path data/kot-pending-queue.json]

Version: 1.0.0
"""

import argparse
import os
import sys
from collections import Counter
from datetime import datetime
from typing import Optional

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kot_engine.core.config import get_settings
from kot_engine.offline_queue import OfflineMutationQueue


def verify_queue(path: Optional[str] = None) -> bool:
    """Print a report of the offline queue."""
    queue = OfflineMutationQueue(path)

    print("=" * 60)
    print("🔍 OFFLINE QUEUE REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {queue.path}")
    print("=" * 60)

    if not queue.path.exists():
        print("\n✅ No queue file: nothing pending")
        return True

    entries = queue.entries()

    print(f"\n📊 STATISTICS:")
    print(f"   Pending mutations: {len(entries)}")

    if not entries:
        print("\n✅ Queue is empty")
        return True

    by_kind = Counter(entry.kind.value for entry in entries)
    for kind, count in sorted(by_kind.items()):
        print(f"   {kind}: {count}")

    retries = [entry.retry_count for entry in entries]
    print(f"\n🔁 RETRIES:")
    print(f"   Max retry count: {max(retries)}")
    print(f"   Average: {sum(retries) / len(retries):.1f}")

    ids = Counter(entry.id for entry in entries)
    duplicates = [mutation_id for mutation_id, count in ids.items() if count > 1]
    if duplicates:
        print(f"\n⚠️ {len(duplicates)} duplicate queue ids found!")
    else:
        print("✅ No duplicate queue ids")

    print(f"\n📋 OLDEST ENTRIES:")
    print("-" * 60)
    for entry in entries[:5]:
        print(
            f"   {entry.id}  {entry.kind.value:<14} {entry.entity_id or '-':<22} "
            f"retries={entry.retry_count}  {entry.last_error or ''}"
        )

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE")
    print("=" * 60)

    return not duplicates


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect the offline mutation queue")
    parser.add_argument("--path", default=None, help=f"Queue file (default: {get_settings().queue_path})")
    args = parser.parse_args()

    sys.exit(0 if verify_queue(args.path) else 1)
