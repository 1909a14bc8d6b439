"""
Shared utilities for the Orders Service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators and backoff helpers
- base_service: FastAPI application scaffold and uvicorn runner

Do not import from service_* packages into shared/.
"""
