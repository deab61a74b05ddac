from typing import List, Optional, Tuple

import uvicorn
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from relay.fetch_gateway.cache import response_cache
from relay.routes import router
from relay.vars import (
    FETCH_CACHE_ENABLED,
    FETCH_CACHE_TTL,
    HOST,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PORT,
    SERVICE_NAME,
)


def parse_otlp_headers(value: Optional[str]) -> Optional[List[Tuple[str, str]]]:
    """Comma separated ``key=value`` pairs, as in OTEL_EXPORTER_OTLP_HEADERS."""
    if not value:
        return None
    headers = []
    for item in value.split(","):
        key, sep, val = item.partition("=")
        if sep and key.strip():
            headers.append((key.strip().lower(), val.strip()))
    return headers or None


app = FastAPI()
instrumentator = Instrumentator()

instrumentator.instrument(app).expose(app)

# One cache per application, handed to the fetch gateway through a dependency
app.state.fetch_cache = response_cache(enabled=FETCH_CACHE_ENABLED, ttl=FETCH_CACHE_TTL)

trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=parse_otlp_headers(OTLP_HEADERS),
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

FastAPIInstrumentor.instrument_app(app, excluded_urls="metrics")

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

app.include_router(router)


def main():
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
