#!/usr/bin/env python3
"""
Bulk import of offline donations exported from the Siyuan system
Usage: python -m giving_service.importer <export.csv> [--env production|sandbox] [--dry-run]

Rows paid through TapPay are skipped since they already arrive through the
settlement queue. Each remaining row becomes an imported DonationRecord keyed
by its Siyuan id, and the whole file is written in one transaction.
"""
import argparse
import csv
import io
import logging
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from common.schemas import DonationRecord

logger = logging.getLogger(__name__)

GATEWAY_NOTE_RE = re.compile(r"tappay", re.IGNORECASE)
HEADER_RE = re.compile(r"捐款編號|Hope")
IMPORT_TZ = ZoneInfo("Asia/Taipei")
MIN_COLUMNS = 9

CAMPUS_PATTERNS = [
    (re.compile(r"^台北分部\s*Taipei Campus$", re.IGNORECASE), "台北分部"),
    (re.compile(r"^台中分部\s*Taichung Campus$", re.IGNORECASE), "台中分部"),
    (re.compile(r"^線上分部\s*Online Campus \(Hope Nation\)$", re.IGNORECASE), "線上分部"),
]

@dataclass
class ImportResult:
    records: List[DonationRecord] = field(default_factory=list)
    skipped_gateway: int = 0
    errors: List[Dict[str, object]] = field(default_factory=list)

def normalize_campus(raw: Optional[str]) -> str:
    campus = re.sub(r"\s+", " ", raw or "").strip()
    for pattern, name in CAMPUS_PATTERNS:
        if pattern.match(campus):
            return name
    return "其他"

def parse_local_datetime(raw: Optional[str]) -> Optional[datetime]:
    """`YYYY/MM/DD HH:MM[:SS]` in Taipei time, returned as an aware datetime"""
    parts = (raw or "").split()
    if len(parts) < 2:
        return None
    try:
        year, month, day = (int(x) for x in parts[0].split("/"))
        time_parts = parts[1].split(":")
        hour, minute = int(time_parts[0]), int(time_parts[1])
        second = int(time_parts[2]) if len(time_parts) > 2 else 0
        return datetime(year, month, day, hour, minute, second, tzinfo=IMPORT_TZ)
    except (ValueError, IndexError):
        return None

def clean_amount(raw: Optional[str]) -> Optional[int]:
    cleaned = (raw or "").replace(",", "").strip()
    match = re.match(r"^[+-]?\d+", cleaned)
    if not match:
        return None
    amount = int(match.group(0))
    return amount if amount > 0 else None

def parse_import_csv(text: str, env: str = "production") -> ImportResult:
    env = "sandbox" if env == "sandbox" else "production"
    result = ImportResult()

    lines = [line.strip() for line in (text or "").splitlines()]
    numbered = [(number, line) for number, line in enumerate(lines, start=1) if line]
    if not numbered:
        result.errors.append({"line": 0, "reason": "Empty CSV"})
        return result

    if HEADER_RE.search(numbered[0][1]):
        numbered = numbered[1:]

    seen_ids = set()
    for line_number, line in numbered:
        cells = [cell.strip() for cell in next(csv.reader(io.StringIO(line)))]

        if len(cells) < MIN_COLUMNS:
            result.errors.append({"line": line_number, "reason": f"Expected at least {MIN_COLUMNS} columns"})
            continue

        note = cells[8]
        if GATEWAY_NOTE_RE.search(note):
            result.skipped_gateway += 1
            continue

        import_id = cells[1]
        if not import_id:
            result.errors.append({"line": line_number, "reason": "Missing or invalid siyuan_id"})
            continue
        if import_id in seen_ids:
            result.errors.append({"line": line_number, "reason": "Duplicate siyuan_id in upload"})
            continue
        seen_ids.add(import_id)

        amount = clean_amount(cells[5])
        if amount is None:
            result.errors.append({"line": line_number, "reason": "Invalid amount"})
            continue

        ordered_at = parse_local_datetime(cells[6])
        if ordered_at is None:
            result.errors.append({"line": line_number, "reason": "Invalid order date"})
            continue

        result.records.append(DonationRecord(
            name=f"Siyuan-{import_id}",
            amount=amount,
            currency="TWD",
            date=ordered_at.date(),
            phone_number="N/A",
            payment_type=cells[7],
            upload="siyuan_csv",
            note=note,
            campus=normalize_campus(cells[3]),
            tp_trade_id=f"siyuan-{import_id}",
            is_success=True,
            env=env,
            imported=True,
            external_import_id=import_id,
            created_at=ordered_at.astimezone(timezone.utc).replace(tzinfo=None),
        ))

    return result

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Import Siyuan donation CSV exports")
    parser.add_argument("csv_path", help="Path to the exported CSV file")
    parser.add_argument("--env", choices=["production", "sandbox"], default="production")
    parser.add_argument("--dry-run", action="store_true", help="Parse and report without writing")
    args = parser.parse_args(argv)

    from common.settings import settings
    from .db import create_db_engine, create_session_factory
    from .models import Base
    from .repository import DonationRepository

    logging.basicConfig(level=settings.log_level)

    with open(args.csv_path, encoding="utf-8-sig") as f:
        parsed = parse_import_csv(f.read(), args.env)

    for error in parsed.errors:
        print(f"❌ line {error['line']}: {error['reason']}")
    print(f"📄 {len(parsed.records)} rows parsed, {parsed.skipped_gateway} TapPay rows skipped, "
          f"{len(parsed.errors)} rows rejected")

    if args.dry_run or not parsed.records:
        return 0 if not parsed.errors else 1

    engine = create_db_engine()
    Base.metadata.create_all(bind=engine)
    outcome = DonationRepository(create_session_factory(engine)).persist_batch(parsed.records)
    if outcome.get("error"):
        print(f"❌ Import rolled back: {outcome['error']}")
        return 1
    print(f"✅ Imported {outcome['inserted']} rows")
    return 0

if __name__ == "__main__":
    sys.exit(main())
