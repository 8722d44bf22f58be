"""
Sample quality check job.

Validates that the latest extract is present, fresh and large enough. A failed
check raises JobExecutionError so the job's retry strategy kicks in.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path

from foreman.errors import JobExecutionError
from foreman.jobs import JobExecutionContext


logger = logging.getLogger("foreman.workers.quality_check_demo")


def check_quality(context: JobExecutionContext) -> str:
    data = context.job_data_map
    extracted_path = Path(data.get_str("extracted_file", "workers/sample/state/extracted_orders.json"))
    max_age_hours = data.get_int("max_age_hours", 24)
    min_records = data.get_int("min_records", 1)
    warn_average_below = float(data.get("warn_average_below", 25.0))

    if not extracted_path.exists():
        raise JobExecutionError(f"extracted file not found: {extracted_path}")

    extracted = json.loads(extracted_path.read_text(encoding="utf-8"))
    records = extracted.get("records", [])
    if len(records) < min_records:
        raise JobExecutionError(f"record_count={len(records)} is below min_records={min_records}")

    generated_at = datetime.fromisoformat(extracted["generated_at"])
    if generated_at.tzinfo is None:
        generated_at = generated_at.replace(tzinfo=timezone.utc)
    age = datetime.now(tz=timezone.utc) - generated_at.astimezone(timezone.utc)
    if age > timedelta(hours=max_age_hours):
        raise JobExecutionError(f"latest extract is stale (age={age}, max_age_hours={max_age_hours})")

    avg_order = sum(float(r["order_total"]) for r in records) / len(records) if records else 0.0
    status = "WARN" if avg_order < warn_average_below else "OK"
    logger.info(
        "[%s] %s: quality checks passed, records=%s, avg_order=%.2f, age=%s",
        context.run_id,
        status,
        len(records),
        avg_order,
        age,
    )
    return status
