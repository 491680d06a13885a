import os

# Keep tests from installing a global tracer provider.
os.environ.setdefault("SC_OTEL_ENABLED", "false")
