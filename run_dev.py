import logging
import os
import sys

from src.api.server import run_server
from src.config.settings import Settings
from src.runtime.pipeline_runtime import PipelineRuntime


def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    print("Initializing DEV environment...")

    # 1. Settings (empty DATABASE_URL / SCORER_URL keep everything in-process)
    dev_settings = Settings()

    # 2. Runtime with one queued source per platform
    runtime = PipelineRuntime.from_settings(
        dev_settings,
        sources=("telegram", "instagram", "whatsapp"),
    )
    backend = "postgres" if dev_settings.DATABASE_URL else "in-memory"
    scorer = dev_settings.SCORER_URL or "heuristic only"
    print(f"Store: {backend}, scorer: {scorer}")

    # 3. Serve
    port = int(sys.argv[1]) if len(sys.argv) > 1 else int(os.getenv("PORT", "8000"))
    print(f"Serving on :{port}")
    run_server(runtime, host="127.0.0.1", port=port)
    print("Dev run complete.")


if __name__ == "__main__":
    main()
