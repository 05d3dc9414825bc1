# tests/test_middleware.py
"""Request ID, access log and last-resort error handling."""
from __future__ import annotations

import logging

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from casedispatch.infra.metrics import get_metrics_collector
from casedispatch.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)

MW_LOGGER = "casedispatch.transport.middleware"


def _mw_records(caplog) -> list[logging.LogRecord]:
    """Records from the middleware only; the test client logs its own requests too."""
    return [r for r in caplog.records if r.name == MW_LOGGER]


def _client(*, log_requests: bool = False) -> TestClient:
    api = FastAPI()
    api.add_middleware(ErrorHandlingMiddleware)
    api.add_middleware(RequestLoggingMiddleware, enabled=log_requests)
    api.add_middleware(RequestIDMiddleware)

    @api.get("/cases/{case_id}")
    def read_case(case_id: str):
        if case_id == "explode":
            raise RuntimeError("pool exhausted on host db-1")
        return {"caseId": case_id}

    @api.get("/health")
    def health():
        return {"status": "healthy"}

    return TestClient(api, raise_server_exceptions=False)


class TestRequestId:
    def test_generated_when_absent(self):
        resp = _client().get("/cases/c1")
        assert resp.status_code == 200
        assert len(resp.headers["X-Request-ID"]) == 32

    def test_caller_id_echoed(self):
        resp = _client().get("/cases/c1", headers={"X-Request-ID": "gw-7f3a:01"})
        assert resp.headers["X-Request-ID"] == "gw-7f3a:01"

    @pytest.mark.parametrize("bad", ["has spaces", "x" * 129, "semi;colon"])
    def test_malformed_id_replaced(self, bad):
        resp = _client().get("/cases/c1", headers={"X-Request-ID": bad})
        assert resp.headers["X-Request-ID"] != bad
        assert len(resp.headers["X-Request-ID"]) == 32


class TestAccessLog:
    def test_success_logged_at_info(self, caplog):
        with caplog.at_level(logging.INFO, logger=MW_LOGGER):
            _client(log_requests=True).get("/cases/c1")
        [record] = [r for r in _mw_records(caplog) if "GET /cases/c1" in r.getMessage()]
        assert "status=200" in record.getMessage()
        assert record.levelno == logging.INFO
        assert len(record.request_id) == 32

    def test_not_found_logged_at_warning(self, caplog):
        with caplog.at_level(logging.INFO, logger=MW_LOGGER):
            _client(log_requests=True).get("/nowhere")
        [record] = [r for r in _mw_records(caplog) if "status=404" in r.getMessage()]
        assert record.levelno == logging.WARNING

    def test_health_checks_not_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger=MW_LOGGER):
            _client(log_requests=True).get("/health")
        assert not any("/health" in r.getMessage() for r in _mw_records(caplog))

    def test_disabled(self, caplog):
        with caplog.at_level(logging.DEBUG, logger=MW_LOGGER):
            _client(log_requests=False).get("/cases/c1")
        assert not any("Request completed" in r.getMessage() for r in _mw_records(caplog))

    def test_metrics_recorded_when_logging_disabled(self):
        client = _client(log_requests=False)
        client.get("/cases/c1")
        client.get("/nowhere")

        collector = get_metrics_collector()
        assert collector.get_counter("http_requests_total", method="GET", status=200) == 1
        assert collector.get_counter("http_requests_total", method="GET", status=400) == 1
        histograms = collector.get_metrics()["histograms"]
        assert histograms["http_request_duration_seconds{method=GET}"]["count"] == 2


class TestUnhandledErrors:
    def test_becomes_internal_500(self):
        resp = _client().get("/cases/explode", headers={"X-Request-ID": "req-42"})
        assert resp.status_code == 500
        assert resp.json() == {
            "success": False,
            "error": {"code": "INTERNAL", "message": "Internal server error"},
            "requestId": "req-42",
        }

    def test_exception_text_stays_in_logs(self, caplog):
        with caplog.at_level(logging.ERROR, logger=MW_LOGGER):
            resp = _client().get("/cases/explode")
        assert "db-1" not in resp.text
        assert any(r.exc_info and "db-1" in str(r.exc_info[1]) for r in _mw_records(caplog))

    def test_counted_as_server_error(self):
        _client().get("/cases/explode")
        assert get_metrics_collector().get_counter("http_requests_total", method="GET", status=500) == 1
