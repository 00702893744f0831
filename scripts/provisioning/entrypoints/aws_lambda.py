"""AWS Lambda handler for the provisioning pipeline.

Triggered by an EventBridge schedule or invoked manually.

Event format:
  {"action": "run", "batchSize": 50, "cursor": "<token>"}
  {"action": "run", "drain": true}
  {"action": "sweep"}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from scripts.provisioning.config import load_config
from scripts.provisioning.logging_config import configure_logging
from scripts.provisioning.runtime import Runtime, build_runtime

logger = logging.getLogger("provisioning.lambda")

# Seconds reserved for writing the last record and the run row.
_SAFETY_MARGIN_S = 10.0


def _deadline_s(context) -> Optional[float]:
    get_remaining = getattr(context, "get_remaining_time_in_millis", None)
    if get_remaining is None:
        return None
    return max(get_remaining() / 1000.0 - _SAFETY_MARGIN_S, 1.0)


def process_event(runtime: Runtime, event: dict, deadline_s: Optional[float]) -> dict[str, Any]:
    action = event.get("action", "run")
    if action == "sweep":
        return {"statusCode": 200, "body": json.dumps(runtime.sweeper.sweep())}
    if action != "run":
        return {"statusCode": 400, "body": f"Unknown action {action!r}"}

    batch_size = event.get("batchSize")
    try:
        if batch_size is not None:
            batch_size = int(batch_size)
    except (TypeError, ValueError):
        return {"statusCode": 400, "body": json.dumps({"error": f"invalid batchSize {batch_size!r}"})}

    try:
        summary = runtime.run_tracked(
            "lambda",
            batch_size=batch_size,
            cursor=event.get("cursor"),
            drain=bool(event.get("drain", False)),
            deadline_s=deadline_s,
        )
    except ValueError as exc:
        return {"statusCode": 400, "body": json.dumps({"error": str(exc)})}
    status_code = 503 if summary.aborted else 200
    return {"statusCode": status_code, "body": json.dumps(summary.to_dict())}


def handler(event: dict, context) -> dict:
    """Lambda entry point."""
    configure_logging()
    logger.info("Lambda invoked with action=%s", event.get("action", "run"))

    runtime = build_runtime(load_config())
    try:
        return process_event(runtime, event, _deadline_s(context))
    except Exception as exc:
        logger.error("Provisioning failed: %s", exc, exc_info=True)
        return {"statusCode": 500, "body": json.dumps({"error": str(exc)})}
    finally:
        runtime.close()
