from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace.export import ConsoleSpanExporter

from couponhub_api.observability.tracing import _build_exporter, _parse_headers


def test_exporter_can_be_disabled(monkeypatch):
    monkeypatch.setenv("OTEL_TRACES_EXPORTER", "none")
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318/v1/traces")

    assert _build_exporter() is None


def test_exporter_prefers_otlp_endpoint(monkeypatch):
    monkeypatch.delenv("OTEL_TRACES_EXPORTER", raising=False)
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://collector:4318/v1/traces")

    assert isinstance(_build_exporter(), OTLPSpanExporter)

    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    assert isinstance(_build_exporter(), ConsoleSpanExporter)


def test_parse_headers_skips_malformed_pairs():
    assert _parse_headers("") is None
    assert _parse_headers("api-key = abc,broken,x-team=entitlements") == {
        "api-key": "abc",
        "x-team": "entitlements",
    }
