"""Export utilities for referral data."""

import csv
import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from referral_engine.logging_config import get_logger

logger = get_logger(__name__)

REFERRAL_EXPORT_FIELDS = [
    "id",
    "status",
    "click_date",
    "signup_date",
    "conversion_date",
    "conversion_type",
    "conversion_value",
    "referral_code",
    "referrer_id",
]


def _format_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return value


def export_to_csv(rows: list[dict[str, Any]], output_path: Path) -> None:
    """Export referral rows to CSV format.

    Args:
        rows: Rows from ReferralService.export_referral_data
        output_path: Output file path
    """
    if not rows:
        logger.warning("no_referrals_to_export")
        return

    with open(output_path, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=REFERRAL_EXPORT_FIELDS)
        writer.writeheader()

        for row in rows:
            writer.writerow({
                field: "" if row.get(field) is None else _format_value(row[field])
                for field in REFERRAL_EXPORT_FIELDS
            })

    logger.info("csv_export_completed", path=str(output_path), count=len(rows))


def export_to_jsonl(rows: list[dict[str, Any]], output_path: Path) -> None:
    """Export referral rows to JSONL format (one JSON object per line).

    Args:
        rows: Rows from ReferralService.export_referral_data
        output_path: Output file path
    """
    if not rows:
        logger.warning("no_referrals_to_export")
        return

    with open(output_path, "w", encoding="utf-8") as jsonlfile:
        for row in rows:
            record = {field: _format_value(row.get(field)) for field in REFERRAL_EXPORT_FIELDS}
            jsonlfile.write(json.dumps(record, ensure_ascii=False) + "\n")

    logger.info("jsonl_export_completed", path=str(output_path), count=len(rows))
