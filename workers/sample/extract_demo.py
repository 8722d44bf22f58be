"""
Sample extract job.

Generates synthetic order records for local testing. Settings come from the
job data map (``output``, ``records``, ``source``, ``seed``, ``sleep_seconds``).
"""

from __future__ import annotations

import json
import logging
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

from foreman.errors import JobExecutionError
from foreman.jobs import JobExecutionContext


logger = logging.getLogger("foreman.workers.extract_demo")

DEFAULT_OUTPUT = "workers/sample/state/extracted_orders.json"


def generate_records(records: int, seed: int) -> List[Dict[str, object]]:
    rng = random.Random(seed)
    channels = ["organic", "paid-search", "email", "direct", "social"]
    products = ["coffee", "tea", "mug", "grinder", "filter"]
    out: List[Dict[str, object]] = []
    now = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    for idx in range(records):
        amount = round(rng.uniform(9.5, 145.0), 2)
        item_count = rng.randint(1, 8)
        out.append(
            {
                "order_id": f"DEMO-{seed}-{idx + 1:05d}",
                "event_time": now,
                "channel": rng.choice(channels),
                "product": rng.choice(products),
                "item_count": item_count,
                "order_total": amount,
                "currency": "USD",
            }
        )
    return out


class ExtractJob:
    def execute(self, context: JobExecutionContext) -> Dict[str, object]:
        data = context.job_data_map
        records = data.get_int("records", 25)
        source = data.get_str("source", "demo-orders-api")
        seed = data.get_int("seed", 42)
        output_path = Path(data.get_str("output", DEFAULT_OUTPUT))
        sleep_seconds = float(data.get("sleep_seconds", 0.5))

        logger.info("[%s] extract_demo started (source=%s, records=%s)", context.run_id, source, records)
        if records <= 0:
            raise JobExecutionError("records must be >= 1")
        if sleep_seconds > 0:
            time.sleep(sleep_seconds)

        payload = {
            "batch_id": f"extract-{int(time.time())}",
            "source": source,
            "generated_at": datetime.now(tz=timezone.utc).isoformat(),
            "record_count": records,
            "attempt": context.attempt,
            "records": generate_records(records, seed),
        }
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info("[%s] Extract complete: records=%s, output=%s", context.run_id, records, output_path)
        return {"output": str(output_path), "record_count": records}
