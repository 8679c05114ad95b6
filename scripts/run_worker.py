#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from taxflow.main import queue_backend, services
from taxflow.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the resident worker for sync batches and queue drains.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    runtime = create_worker_runtime_from_env(
        queue_backend=queue_backend,
        sync_handler=services.handle_sync_message,
        ingest_handler=services.handle_ingest_message,
    )
    stats = runtime.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    print(json.dumps({"success": True, "stats": stats.as_dict()}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
