import uvicorn

from src.api.http_api import create_app
from src.runtime.pipeline_runtime import PipelineRuntime


def run_server(runtime: PipelineRuntime, host: str = "0.0.0.0", port: int = 8000) -> None:
    runtime.start()
    try:
        uvicorn.run(create_app(runtime), host=host, port=port)
    finally:
        runtime.stop()
