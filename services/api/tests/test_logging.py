"""Unit tests for secret redaction and request logging."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from social_connector.middleware.logging import LoggingMiddleware, redact_event, redact_params, redact_secret


class TestRedactSecret:
    def test_keeps_first_four_chars(self):
        assert redact_secret("EAABsbCS1iHgBAKZC") == "EAAB***"

    def test_empty(self):
        assert redact_secret("") == ""
        assert redact_secret(None) == ""


class TestRedactParams:
    def test_masks_tokens_in_urls(self):
        url = "https://graph.test/me?fields=id&access_token=EAABsecret&appsecret_proof=x"
        redacted = redact_params(url)
        assert "EAABsecret" not in redacted
        assert "access_token=[REDACTED]" in redacted
        assert "fields=id" in redacted

    def test_masks_every_secret_param(self):
        text = "client_secret=s1 fb_exchange_token=s2 code=s3 app_secret=s4"
        redacted = redact_params(text)
        for secret in ("s1", "s2", "s3", "s4"):
            assert f"={secret}" not in redacted

    def test_case_insensitive(self):
        assert "abc" not in redact_params("ACCESS_TOKEN=abc")

    def test_plain_text_untouched(self):
        assert redact_params("Invalid OAuth access token.") == "Invalid OAuth access token."


class TestLoggingMiddleware:
    def test_sets_request_id_header(self):
        app = FastAPI()
        app.add_middleware(LoggingMiddleware)

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        response = TestClient(app).get("/ping", headers={"X-Tenant-ID": "tenant-a"})

        assert response.status_code == 200
        assert len(response.headers["X-Request-ID"]) == 8


class TestRedactEvent:
    def test_redacts_string_fields_only(self):
        event = {"event": "GET https://graph.test/me?access_token=EAABsecret", "status": 200}
        redacted = redact_event(None, "info", event)
        assert "EAABsecret" not in redacted["event"]
        assert redacted["status"] == 200
