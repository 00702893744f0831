"""GCP Cloud Run Job entry point for the provisioning pipeline.

Deployed as a Cloud Run Job triggered by Cloud Scheduler. PROVISIONING_ACTION
selects the work; the job's task timeout should be mirrored in
PROVISIONING_DEADLINE_S so batches stop before the platform kills them.

Usage:
  PROVISIONING_ACTION=run python -m scripts.provisioning.entrypoints.gcp_cloudrun
  PROVISIONING_ACTION=sweep python -m scripts.provisioning.entrypoints.gcp_cloudrun
"""

from __future__ import annotations

import logging
import os
import sys

from scripts.provisioning.config import load_config
from scripts.provisioning.logging_config import configure_logging
from scripts.provisioning.runtime import build_runtime

logger = logging.getLogger("provisioning.cloudrun")


def main() -> None:
    configure_logging()

    action = os.environ.get("PROVISIONING_ACTION", "run")
    if action not in ("run", "sweep"):
        logger.error("PROVISIONING_ACTION must be 'run' or 'sweep', got %r", action)
        sys.exit(1)

    logger.info("Cloud Run Job started for action=%s", action)
    runtime = build_runtime(load_config())

    try:
        if action == "sweep":
            results = runtime.sweeper.sweep()
            logger.info("Orphan sweep complete: %s", results)
            return
        summary = runtime.run_tracked("cloudrun", drain=True)
        if summary.aborted:
            logger.error("Provisioning aborted: record store unavailable")
            sys.exit(1)
    except Exception as exc:
        logger.error("Provisioning failed for %s: %s", action, exc, exc_info=True)
        sys.exit(1)
    finally:
        runtime.close()


if __name__ == "__main__":
    main()
